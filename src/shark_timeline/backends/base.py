"""Base types and protocol for calendar backends."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Protocol, runtime_checkable


@dataclass
class CalendarEvent:
    """Event record as delivered by a backend, before timeline conversion."""

    id: str
    calendar: str  # Account name (work, family, ...)
    title: str
    start: datetime
    end: datetime
    description: str = ""
    location: str = ""
    all_day: bool = False


@runtime_checkable
class CalendarBackend(Protocol):
    """Read-only protocol that all calendar backends must satisfy."""

    async def list_events(self, start: datetime, end: datetime) -> list[CalendarEvent]: ...


def to_naive(value: datetime) -> datetime:
    """Convert an aware datetime to naive local time; naive values pass through."""
    if value.tzinfo is None:
        return value
    return value.astimezone().replace(tzinfo=None)


def date_to_datetime(value: date) -> datetime:
    """Midnight of a date; datetimes are returned unchanged."""
    if isinstance(value, datetime):
        return value
    return datetime(value.year, value.month, value.day)
