"""Grouped day timeline over calendar events."""

from .grouping import (
    DEFAULT_POLICY,
    Event,
    EventGroup,
    InvalidEventError,
    MergePolicy,
    group_events,
    should_merge,
)

__version__ = "0.1.0"

__all__ = [
    "DEFAULT_POLICY",
    "Event",
    "EventGroup",
    "InvalidEventError",
    "MergePolicy",
    "group_events",
    "should_merge",
]
