"""Event source: collects one day's events from the configured calendars."""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import Iterable

from .backends.base import CalendarBackend, CalendarEvent
from .config import CalendarAccount
from .grouping import Event

logger = logging.getLogger("shark-timeline")


def init_backend(account: CalendarAccount) -> CalendarBackend:
    """Create backend instance for a calendar account."""
    if account.type == "ews":
        from .backends.ews import EWSBackend
        return EWSBackend(account.name, account.config)
    elif account.type == "google":
        from .backends.google import GoogleCalendarBackend
        return GoogleCalendarBackend(account.name, account.config)
    elif account.type == "caldav":
        from .backends.caldav_backend import CalDAVBackend
        return CalDAVBackend(account.name, account.config)
    else:
        raise ValueError(f"Unknown backend type: {account.type}")


class BackendPool:
    """Backends keyed by calendar name, created lazily on first access."""

    def __init__(self, accounts: dict[str, CalendarAccount]):
        self.accounts = accounts
        self._backends: dict[str, CalendarBackend] = {}

    def get(self, calendar: str) -> CalendarBackend | None:
        if calendar not in self.accounts:
            return None
        if calendar not in self._backends:
            self._backends[calendar] = init_backend(self.accounts[calendar])
        return self._backends[calendar]

    def install(self, calendar: str, backend: CalendarBackend) -> None:
        self._backends[calendar] = backend


def day_bounds(day: date | None = None) -> tuple[datetime, datetime]:
    """Start of the day and start of the following day, as naive local datetimes."""
    day = day or date.today()
    start = datetime(day.year, day.month, day.day)
    return start, start + timedelta(days=1)


def to_timeline_event(record: CalendarEvent, account: CalendarAccount) -> Event:
    return Event(
        title=record.title,
        start=record.start,
        end=record.end,
        color=account.color,
        notes=record.description or None,
        calendar_name=account.label,
    )


def select_calendars(accounts: dict[str, CalendarAccount], selected: Iterable[str] | None) -> list[str]:
    """Names of the calendars to query, in configuration order."""
    if not selected:
        return list(accounts)
    wanted = set(selected)
    for name in sorted(wanted - set(accounts)):
        logger.warning("Ignoring unknown calendar in selection: '%s'", name)
    return [name for name in accounts if name in wanted]


async def fetch_calendar_records(
    pool: BackendPool,
    calendars: list[str],
    start: datetime,
    end: datetime,
) -> tuple[list[CalendarEvent], list[str]]:
    """Raw backend records for a window. Failing calendars are reported, not raised."""
    records: list[CalendarEvent] = []
    errors: list[str] = []
    for cal_name in calendars:
        try:
            backend = pool.get(cal_name)
            if not backend:
                errors.append(f"Backend not available: {cal_name}")
                continue
            records.extend(await backend.list_events(start, end))
        except Exception as e:
            logger.warning("Failed to fetch events from '%s': %s", cal_name, e)
            errors.append(f"{cal_name}: {e}")
    records.sort(key=lambda r: r.start)
    return records, errors


async def fetch_day_events(
    pool: BackendPool,
    day: date | None = None,
    *,
    selected: Iterable[str] | None = None,
    include_all_day: bool = False,
) -> tuple[list[Event], list[str]]:
    """Collect the day's events as timeline Events, sorted by start.

    All-day events are skipped unless ``include_all_day`` is set. Events
    that end at or before their start are skipped with a warning so that
    only well-formed events reach the grouping step.
    """
    start, end = day_bounds(day)
    calendars = select_calendars(pool.accounts, selected)
    records, errors = await fetch_calendar_records(pool, calendars, start, end)

    events: list[Event] = []
    for record in records:
        if record.all_day and not include_all_day:
            continue
        if record.end <= record.start:
            logger.warning(
                "Skipping event '%s' from '%s': end %s is not after start %s",
                record.title, record.calendar, record.end.isoformat(), record.start.isoformat(),
            )
            continue
        if record.end <= start or record.start >= end:
            continue
        account = pool.accounts.get(record.calendar)
        if account is None:
            logger.warning("Skipping event '%s': unknown calendar '%s'", record.title, record.calendar)
            continue
        events.append(to_timeline_event(record, account))

    logger.info("Fetched %d events from %d calendar(s) for %s", len(events), len(calendars), start.date())
    return events, errors
