"""YAML configuration loading for calendar accounts and timeline settings."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any

import yaml

from .grouping import DEFAULT_COLOR, MergePolicy, normalize_color

logger = logging.getLogger("shark-timeline")

CONFIG_PATH = os.environ.get("TIMELINE_CONFIG", "/config/timeline.yaml")

VALID_TYPES = {"ews", "google", "caldav"}
METADATA_KEYS = ("name", "label", "type", "color")

DEFAULT_MERGE_TOLERANCE_MINUTES = 15.0
DEFAULT_REFRESH_INTERVAL = 900.0


@dataclass
class CalendarAccount:
    """A single calendar account configuration."""

    name: str
    label: str
    type: str  # ews, google, caldav
    config: dict[str, Any] = field(default_factory=dict)
    color: str = DEFAULT_COLOR


@dataclass
class TimelineSettings:
    """Settings that control grouping and refresh."""

    merge_tolerance_minutes: float = DEFAULT_MERGE_TOLERANCE_MINUTES
    refresh_interval_seconds: float = DEFAULT_REFRESH_INTERVAL
    include_all_day: bool = False
    selected_calendars: list[str] = field(default_factory=list)

    @property
    def merge_policy(self) -> MergePolicy:
        return MergePolicy.from_minutes(self.merge_tolerance_minutes)

    @property
    def refresh_interval(self) -> float:
        # Unset or non-positive intervals fall back to 15 minutes
        if self.refresh_interval_seconds <= 0:
            return DEFAULT_REFRESH_INTERVAL
        return self.refresh_interval_seconds

    @property
    def selection(self) -> set[str] | None:
        """Selected calendar names, or None when every calendar is shown."""
        return set(self.selected_calendars) or None


@dataclass
class TimelineConfig:
    accounts: dict[str, CalendarAccount] = field(default_factory=dict)
    settings: TimelineSettings = field(default_factory=TimelineSettings)


def _require_env_pair(name: str, cal_type: str, config: dict[str, Any]) -> None:
    if "username_env" not in config or "password_env" not in config:
        raise ValueError(f"Calendar '{name}' ({cal_type}): 'username_env' and 'password_env' are required")
    for env_key in ("username_env", "password_env"):
        env_var = config[env_key]
        if not os.environ.get(env_var):
            logger.warning("Calendar '%s': env var '%s' not set", name, env_var)


def parse_account(entry: dict[str, Any]) -> CalendarAccount:
    """Validate one entry of the ``calendars`` list."""
    name = str(entry.get("name", "")).strip()
    if not name:
        raise ValueError("Calendar missing 'name' field")

    cal_type = str(entry.get("type", "")).strip().lower()
    if cal_type not in VALID_TYPES:
        raise ValueError(f"Calendar '{name}': unknown type '{cal_type}'. Must be one of: {VALID_TYPES}")

    label = entry.get("label", name)
    color = normalize_color(entry.get("color"))

    # Everything except metadata fields is backend-specific
    config = {k: v for k, v in entry.items() if k not in METADATA_KEYS}

    if cal_type == "ews":
        if "ews_url" not in config:
            raise ValueError(f"Calendar '{name}' (ews): 'ews_url' is required")
        _require_env_pair(name, cal_type, config)
    elif cal_type == "google":
        if "credentials_file" not in config:
            raise ValueError(f"Calendar '{name}' (google): 'credentials_file' is required")
    elif cal_type == "caldav":
        if "url" not in config:
            raise ValueError(f"Calendar '{name}' (caldav): 'url' is required")
        _require_env_pair(name, cal_type, config)

    return CalendarAccount(name=name, label=label, type=cal_type, config=config, color=color)


def parse_settings(raw: dict[str, Any] | None) -> TimelineSettings:
    """Validate the optional ``timeline`` section."""
    raw = raw or {}
    try:
        tolerance = float(raw.get("merge_tolerance_minutes", DEFAULT_MERGE_TOLERANCE_MINUTES))
        interval = float(raw.get("refresh_interval_seconds", DEFAULT_REFRESH_INTERVAL))
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid timeline setting: {e}") from e
    if tolerance <= 0:
        raise ValueError(f"'merge_tolerance_minutes' must be positive, got {tolerance}")

    selected = raw.get("selected_calendars") or []
    if not isinstance(selected, list):
        raise ValueError("'selected_calendars' must be a list of calendar names")

    return TimelineSettings(
        merge_tolerance_minutes=tolerance,
        refresh_interval_seconds=interval,
        include_all_day=bool(raw.get("include_all_day", False)),
        selected_calendars=[str(s) for s in selected],
    )


def load_config() -> TimelineConfig:
    """Load and validate the timeline YAML file at CONFIG_PATH.

    A missing file or an empty ``calendars`` key yields an empty config.
    """
    path = CONFIG_PATH
    if not os.path.isfile(path):
        logger.warning("Config file not found: %s", path)
        return TimelineConfig()

    with open(path, "r") as f:
        raw = yaml.safe_load(f) or {}

    settings = parse_settings(raw.get("timeline"))

    if "calendars" not in raw:
        logger.warning("No 'calendars' key in config file")
        return TimelineConfig(settings=settings)

    accounts: dict[str, CalendarAccount] = {}
    for entry in raw["calendars"] or []:
        account = parse_account(entry)
        if account.name in accounts:
            raise ValueError(f"Duplicate calendar name: '{account.name}'")
        accounts[account.name] = account

    for name in settings.selected_calendars:
        if name not in accounts:
            logger.warning("Selected calendar '%s' is not configured", name)

    return TimelineConfig(accounts=accounts, settings=settings)
