"""Event grouping: merge predicate and connected-component clustering."""

from __future__ import annotations

import bisect
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, Iterator

logger = logging.getLogger("shark-timeline")

DEFAULT_MERGE_TOLERANCE = timedelta(minutes=15)
DEFAULT_COLOR = "blue"


class InvalidEventError(ValueError):
    """Raised when an event cannot enter the grouping step (end <= start)."""


def normalize_color(color: str | None) -> str:
    """Reduce a color value to a comparable tag ("#1E90FF " -> "#1e90ff")."""
    tag = (color or "").strip().lower()
    return tag or DEFAULT_COLOR


@dataclass(frozen=True)
class Event:
    """A single timed calendar entry, identified by a process-local id."""

    title: str = field(compare=False)
    start: datetime = field(compare=False)
    end: datetime = field(compare=False)
    color: str = field(default=DEFAULT_COLOR, compare=False)
    notes: str | None = field(default=None, compare=False)
    calendar_name: str = field(default="", compare=False)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def duration(self) -> timedelta:
        return self.end - self.start


@dataclass(frozen=True)
class MergePolicy:
    """Thresholds used by the merge predicate."""

    tolerance: timedelta = DEFAULT_MERGE_TOLERANCE

    def __post_init__(self):
        if self.tolerance <= timedelta(0):
            raise ValueError(f"Merge tolerance must be positive, got {self.tolerance}")

    @classmethod
    def from_minutes(cls, minutes: float) -> MergePolicy:
        return cls(tolerance=timedelta(minutes=minutes))


DEFAULT_POLICY = MergePolicy()


def _sort_key(event: Event) -> tuple:
    # Full key so equal-start events keep one order regardless of input order.
    return (event.start, event.end, event.title, event.calendar_name, event.color, event.id)


def _ranges_merge(
    color_a: str,
    start_a: datetime,
    end_a: datetime,
    color_b: str,
    start_b: datetime,
    end_b: datetime,
    policy: MergePolicy,
) -> bool:
    if color_a == color_b:
        # Touching endpoints are not an overlap.
        return start_a < end_b and start_b < end_a
    return (
        abs(start_a - start_b) < policy.tolerance
        and abs(end_a - end_b) < policy.tolerance
    )


def should_merge(a: Event, b: Event, policy: MergePolicy = DEFAULT_POLICY) -> bool:
    """Return True if two events belong in the same visual cluster.

    Same-colored events merge on any strict overlap. Differently-colored
    events merge only when both their starts and their ends lie within
    ``policy.tolerance`` of each other. The relation is symmetric but not
    transitive.
    """
    return _ranges_merge(a.color, a.start, a.end, b.color, b.start, b.end, policy)


def validate_event(event: Event) -> Event:
    if event.end <= event.start:
        raise InvalidEventError(
            f"Event '{event.title}' ({event.calendar_name or 'unknown calendar'}) "
            f"ends at {event.end.isoformat()} which is not after its start {event.start.isoformat()}"
        )
    return event


def validate_events(events: Iterable[Event]) -> list[Event]:
    """Validate every event, returning them as a list."""
    return [validate_event(e) for e in events]


class EventGroup:
    """A start-ordered cluster of events rendered as one merged bar.

    Created from a seed event and grown with :meth:`add_event`. Once
    :meth:`finalize` has been called the group is read-only.
    """

    def __init__(self, event: Event):
        self.id = uuid.uuid4().hex
        self._events: list[Event] = [event]
        self.start: datetime = event.start
        self.end: datetime = event.end
        self._final = False

    @classmethod
    def from_events(cls, events: Iterable[Event]) -> EventGroup:
        """Build a finalized group from a non-empty collection, sorting once."""
        ordered = sorted(events, key=_sort_key)
        if not ordered:
            raise ValueError("An event group needs at least one event")
        group = cls(ordered[0])
        for event in ordered[1:]:
            group.add_event(event)
        return group.finalize()

    @property
    def events(self) -> tuple[Event, ...]:
        return tuple(self._events)

    @property
    def color(self) -> str:
        return self._events[0].color

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    @property
    def is_final(self) -> bool:
        return self._final

    def add_event(self, event: Event) -> None:
        if self._final:
            raise RuntimeError("Cannot add events to a finalized group")
        bisect.insort_right(self._events, event, key=_sort_key)
        self.start = min(self.start, event.start)
        self.end = max(self.end, event.end)

    def should_merge(self, event: Event, policy: MergePolicy = DEFAULT_POLICY) -> bool:
        """Group-level form of the merge rule, against the group's bounds and color."""
        return _ranges_merge(
            self.color, self.start, self.end, event.color, event.start, event.end, policy
        )

    def finalize(self) -> EventGroup:
        self._final = True
        return self

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self) -> Iterator[Event]:
        return iter(tuple(self._events))

    def __contains__(self, event: object) -> bool:
        return event in self._events

    def __repr__(self) -> str:
        return (
            f"EventGroup(start={self.start.isoformat()}, end={self.end.isoformat()}, "
            f"events={[e.title for e in self._events]!r})"
        )


def _adjacency(events: list[Event], policy: MergePolicy) -> list[list[int]]:
    adj: list[list[int]] = [[] for _ in events]
    for i in range(len(events)):
        for j in range(i + 1, len(events)):
            if should_merge(events[i], events[j], policy):
                adj[i].append(j)
                adj[j].append(i)
    # Fixed neighbor order keeps traversal deterministic.
    for neighbors in adj:
        neighbors.sort()
    return adj


def group_events(events: Iterable[Event], policy: MergePolicy = DEFAULT_POLICY) -> list[EventGroup]:
    """Partition events into groups of events linked by the merge predicate.

    Every pair of events is compared, so an event can join a group through a
    chain of links to members it does not merge with directly. The result
    covers every input event exactly once and is ordered by group start.

    Raises InvalidEventError if any event ends at or before its start.
    """
    ordered = sorted(validate_events(events), key=_sort_key)
    if not ordered:
        return []

    adj = _adjacency(ordered, policy)
    visited = [False] * len(ordered)
    groups: list[EventGroup] = []

    for seed in range(len(ordered)):
        if visited[seed]:
            continue
        visited[seed] = True
        component: list[int] = []
        stack = [seed]
        while stack:
            idx = stack.pop()
            component.append(idx)
            for neighbor in adj[idx]:
                if not visited[neighbor]:
                    visited[neighbor] = True
                    stack.append(neighbor)
        groups.append(EventGroup.from_events(ordered[i] for i in component))

    groups.sort(key=lambda g: (g.start, _sort_key(g.events[0])))
    logger.debug("Grouped %d events into %d groups", len(ordered), len(groups))
    return groups


def flatten_groups(groups: Iterable[EventGroup]) -> list[Event]:
    """All member events of the given groups, sorted by start."""
    return sorted((e for g in groups for e in g.events), key=_sort_key)
