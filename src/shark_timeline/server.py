#!/usr/bin/env python3
"""
shark-timeline — grouped day timeline over your calendars, served via MCP.

Reads today's events from the configured calendars (Exchange EWS, Google
Calendar, CalDAV), clusters them into merged timeline bars and keeps the
result fresh with a background refresh loop.

Environment variables:
    TIMELINE_CONFIG — Path to timeline.yaml (default: /config/timeline.yaml)
"""

import dataclasses
import logging
import sys
from contextlib import asynccontextmanager
from datetime import date
from typing import Any

from mcp.server.fastmcp import FastMCP

from . import config as config_module
from .backends.base import CalendarEvent
from .config import TimelineConfig, TimelineSettings, load_config
from .grouping import Event, EventGroup, InvalidEventError
from .refresh import TimelineRefresher, TimelineSnapshot
from .source import BackendPool, day_bounds, fetch_calendar_records, fetch_day_events
from .source import select_calendars as resolve_selection

# MCP stdio servers must NEVER write to stdout — log to stderr only.
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stderr,
)
logger = logging.getLogger("shark-timeline")


# ---------------------------------------------------------------------------
# Module-level state
# ---------------------------------------------------------------------------

_config: TimelineConfig = TimelineConfig()
_pool: BackendPool = BackendPool({})
_refresher: TimelineRefresher | None = None


def _install_config(cfg: TimelineConfig) -> None:
    """Replace accounts, backends and refresher for a freshly loaded config."""
    global _config, _pool, _refresher
    _config = cfg
    _pool = BackendPool(cfg.accounts)
    _refresher = None


async def _fetch_day(day: date, settings: TimelineSettings) -> tuple[list[Event], list[str]]:
    return await fetch_day_events(
        _pool,
        day,
        selected=settings.selection,
        include_all_day=settings.include_all_day,
    )


def _get_refresher() -> TimelineRefresher:
    global _refresher
    if _refresher is None:
        _refresher = TimelineRefresher(_fetch_day, _config.settings)
    return _refresher


def _validate_calendar(calendar: str) -> dict | None:
    """Return error dict if calendar is invalid, None if valid."""
    if not _config.accounts:
        return {"error": "No calendars configured. Set TIMELINE_CONFIG env var."}
    if calendar not in _config.accounts:
        return {"error": f"Unknown calendar '{calendar}'. Available: {list(_config.accounts.keys())}"}
    return None


def _parse_day(value: str) -> date:
    """Parse an ISO 8601 date (or datetime) string to a date."""
    from dateutil.parser import parse as parse_dt
    return parse_dt(value).date()


def _record_to_dict(record: CalendarEvent) -> dict[str, Any]:
    """Convert a backend record to a JSON-friendly dict."""
    return {
        "id": record.id,
        "calendar": record.calendar,
        "title": record.title,
        "start": record.start.isoformat(),
        "end": record.end.isoformat(),
        "description": record.description,
        "location": record.location,
        "all_day": record.all_day,
    }


def _event_to_dict(event: Event) -> dict[str, Any]:
    return {
        "id": event.id,
        "title": event.title,
        "start": event.start.isoformat(),
        "end": event.end.isoformat(),
        "color": event.color,
        "notes": event.notes,
        "calendar": event.calendar_name,
    }


def _group_to_dict(group: EventGroup) -> dict[str, Any]:
    return {
        "start": group.start.isoformat(),
        "end": group.end.isoformat(),
        "color": group.color,
        "count": len(group),
        "events": [_event_to_dict(e) for e in group.events],
    }


def _snapshot_to_dict(snapshot: TimelineSnapshot) -> dict[str, Any]:
    result: dict[str, Any] = {
        "day": snapshot.day.isoformat(),
        "generated_at": snapshot.generated_at.isoformat(),
        "reason": snapshot.reason,
        "event_count": len(snapshot.events),
        "group_count": len(snapshot.groups),
        "groups": [_group_to_dict(g) for g in snapshot.groups],
    }
    if snapshot.errors:
        result["errors"] = list(snapshot.errors)
    return result


# ---------------------------------------------------------------------------
# MCP Server + Tools
# ---------------------------------------------------------------------------

@asynccontextmanager
async def _lifespan(server: FastMCP):
    refresher = _get_refresher()
    refresher.start()
    try:
        yield {}
    finally:
        await refresher.stop()


mcp = FastMCP("shark-timeline", lifespan=_lifespan)


@mcp.tool()
async def list_calendars() -> dict:
    """List all configured calendar accounts.

    Returns name, label, type, color and whether the calendar is shown on the timeline.
    """
    if not _config.accounts:
        return {"error": "No calendars configured"}
    shown = set(resolve_selection(_config.accounts, _config.settings.selection))
    return {
        "calendars": [
            {
                "name": a.name,
                "label": a.label,
                "type": a.type,
                "color": a.color,
                "selected": a.name in shown,
            }
            for a in _config.accounts.values()
        ]
    }


@mcp.tool()
async def list_events(calendar: str = "", day: str = "") -> dict:
    """List the raw events of one day from one or all calendars.

    If calendar is empty, returns merged events from ALL calendars sorted chronologically.

    Args:
        calendar: Calendar name (e.g. "work", "family"). Empty = all calendars.
        day: Day to list (ISO 8601, e.g. "2026-02-13"). Default: today.
    """
    if day:
        try:
            target = _parse_day(day)
        except (ValueError, OverflowError):
            return {"error": f"Invalid day: {day}"}
    else:
        target = date.today()

    if calendar:
        err = _validate_calendar(calendar)
        if err:
            return err
        calendars_to_query = [calendar]
    else:
        calendars_to_query = list(_config.accounts.keys())

    start, end = day_bounds(target)
    records, errors = await fetch_calendar_records(_pool, calendars_to_query, start, end)

    result: dict[str, Any] = {
        "calendars_queried": calendars_to_query,
        "day": target.isoformat(),
        "count": len(records),
        "events": [_record_to_dict(r) for r in records],
    }
    if errors:
        result["errors"] = errors
    return result


@mcp.tool()
async def get_timeline(day: str = "", refresh: bool = False) -> dict:
    """Get the grouped timeline: events merged into non-overlapping bars.

    Today's timeline is served from the last published refresh unless refresh is set.

    Args:
        day: Day to group (ISO 8601, e.g. "2026-02-13"). Default: today.
        refresh: Fetch and regroup now instead of using the published timeline.
    """
    refresher = _get_refresher()
    today = date.today()
    if day:
        try:
            target = _parse_day(day)
        except (ValueError, OverflowError):
            return {"error": f"Invalid day: {day}"}
    else:
        target = today

    if target != today:
        try:
            snapshot = await refresher.build_snapshot(target, "query")
        except InvalidEventError as e:
            return {"error": f"Failed to group events: {e}"}
        return _snapshot_to_dict(snapshot)

    snapshot = refresher.snapshot
    if refresh or snapshot is None or snapshot.day != today:
        snapshot = await refresher.refresh_once("manual")
    if snapshot is None:
        return {"error": "Timeline not available"}
    return _snapshot_to_dict(snapshot)


@mcp.tool()
async def refresh_timeline() -> dict:
    """Request a refresh of today's timeline.

    With the background loop running the request is queued; otherwise it runs immediately.
    """
    refresher = _get_refresher()
    if refresher.running:
        queued = refresher.request_refresh("manual")
        last = refresher.snapshot.generated_at.isoformat() if refresher.snapshot else None
        return {"success": True, "queued": queued, "last_refresh": last}

    snapshot = await refresher.refresh_once("manual")
    if snapshot is None:
        return {"error": "Refresh failed"}
    return {"success": True, "queued": False, "last_refresh": snapshot.generated_at.isoformat()}


@mcp.tool()
async def select_calendars(calendars: list[str]) -> dict:
    """Choose which calendars appear on the timeline.

    Args:
        calendars: Calendar names to show. Empty list = all calendars.
    """
    unknown = [c for c in calendars if c not in _config.accounts]
    if unknown:
        return {"error": f"Unknown calendar(s) {unknown}. Available: {list(_config.accounts.keys())}"}

    settings = dataclasses.replace(_config.settings, selected_calendars=list(calendars))
    _config.settings = settings
    refresher = _get_refresher()
    refresher.update_settings(settings)
    if not refresher.running:
        await refresher.refresh_once("settings")
    return {
        "success": True,
        "selected": resolve_selection(_config.accounts, settings.selection),
    }


# ---------------------------------------------------------------------------
# Google OAuth2 CLI helper
# ---------------------------------------------------------------------------

def _run_google_auth(calendar_name: str) -> None:
    """Interactive OAuth2 flow for Google Calendar. Run once to obtain token."""
    accounts = _config.accounts
    if calendar_name not in accounts:
        print(f"Unknown calendar: {calendar_name}. Available: {list(accounts.keys())}", file=sys.stderr)
        sys.exit(1)

    account = accounts[calendar_name]
    if account.type != "google":
        print(f"Calendar '{calendar_name}' is type '{account.type}', not 'google'", file=sys.stderr)
        sys.exit(1)

    from .backends.google import run_auth_flow

    try:
        token_file = run_auth_flow(calendar_name, account.config)
    except ValueError as e:
        print(str(e), file=sys.stderr)
        sys.exit(1)

    print(f"Token saved to {token_file}", file=sys.stderr)
    print("Google Calendar authentication complete.", file=sys.stderr)


def _arg_after(flag: str) -> str:
    if flag not in sys.argv:
        return ""
    idx = sys.argv.index(flag)
    return sys.argv[idx + 1] if idx + 1 < len(sys.argv) else ""


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main():
    """Entry point for console script and python -m."""
    _install_config(load_config())

    # Handle --auth flag for Google OAuth2 setup
    if "--auth" in sys.argv:
        provider = _arg_after("--auth")
        if provider != "google":
            print(f"Only --auth google is supported, got: {provider}", file=sys.stderr)
            sys.exit(1)
        cal_name = _arg_after("--calendar")
        if not cal_name:
            # First google calendar
            cal_name = next((n for n, a in _config.accounts.items() if a.type == "google"), "")
        if not cal_name:
            print("No Google calendar found in config", file=sys.stderr)
            sys.exit(1)
        _run_google_auth(cal_name)
        return

    if _config.accounts:
        logger.info("Loaded %d calendar(s): %s", len(_config.accounts), list(_config.accounts.keys()))
    else:
        logger.warning("No calendars loaded (TIMELINE_CONFIG=%s)", config_module.CONFIG_PATH)
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
