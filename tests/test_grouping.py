"""Tests for the merge predicate and event clustering."""

import dataclasses
import random
from collections import Counter
from datetime import datetime, timedelta

import pytest

from shark_timeline.grouping import (
    DEFAULT_POLICY,
    Event,
    EventGroup,
    InvalidEventError,
    MergePolicy,
    flatten_groups,
    group_events,
    normalize_color,
    should_merge,
    validate_event,
)


DAY = datetime(2026, 2, 13)


def at(hour: int, minute: int = 0) -> datetime:
    return DAY.replace(hour=hour, minute=minute)


def ev(
    title: str,
    start: datetime,
    end: datetime,
    color: str = "blue",
    calendar: str = "work",
) -> Event:
    return Event(title=title, start=start, end=end, color=color, calendar_name=calendar)


def _ids(groups: list[EventGroup]) -> list[list[str]]:
    return [[e.id for e in g.events] for g in groups]


def _partition(groups: list[EventGroup]) -> set[frozenset[str]]:
    return {frozenset(e.id for e in g.events) for g in groups}


def _random_events(seed: int) -> list[Event]:
    rng = random.Random(seed)
    colors = ["blue", "red", "green"]
    events = []
    for i in range(rng.randint(0, 30)):
        start = DAY + timedelta(minutes=rng.randrange(0, 20 * 60, 5))
        end = start + timedelta(minutes=rng.randrange(5, 180, 5))
        events.append(ev(f"e{i}", start, end, rng.choice(colors)))
    return events


# ---------------------------------------------------------------------------
# Merge predicate
# ---------------------------------------------------------------------------

class TestShouldMerge:
    def test_same_color_overlap(self):
        assert should_merge(ev("a", at(9), at(10)), ev("b", at(9, 30), at(10, 30)))

    def test_same_color_touching_does_not_merge(self):
        assert not should_merge(ev("a", at(9), at(10)), ev("b", at(10), at(11)))

    def test_same_color_contained(self):
        assert should_merge(ev("a", at(8), at(18)), ev("b", at(12), at(12, 5)))

    def test_different_color_close_bounds(self):
        assert should_merge(ev("a", at(9), at(10), "red"), ev("b", at(9, 10), at(10, 5), "blue"))

    def test_different_color_far_start(self):
        assert not should_merge(ev("a", at(9), at(10), "red"), ev("b", at(9, 20), at(10), "blue"))

    def test_different_color_far_end(self):
        assert not should_merge(ev("a", at(9), at(10), "red"), ev("b", at(9), at(10, 30), "blue"))

    def test_different_color_overlap_is_not_enough(self):
        # Large overlap, but bounds differ by more than the tolerance
        assert not should_merge(ev("a", at(9), at(12), "red"), ev("b", at(10), at(11), "blue"))

    def test_exact_tolerance_on_start_disqualifies(self):
        assert not should_merge(ev("a", at(9), at(10), "red"), ev("b", at(9, 15), at(10), "blue"))

    def test_exact_tolerance_on_end_disqualifies(self):
        assert not should_merge(ev("a", at(9), at(10), "red"), ev("b", at(9), at(10, 15), "blue"))

    def test_different_color_merge_without_overlap(self):
        # Short events with close bounds fuse even when they do not overlap
        a = ev("a", at(9), at(9, 5), "red")
        b = ev("b", at(9, 6), at(9, 12), "blue")
        assert should_merge(a, b)

    def test_custom_tolerance(self):
        policy = MergePolicy(tolerance=timedelta(minutes=30))
        a = ev("a", at(9), at(10), "red")
        b = ev("b", at(9, 20), at(10), "blue")
        assert should_merge(a, b, policy)
        assert not should_merge(a, b, DEFAULT_POLICY)

    def test_policy_from_minutes(self):
        assert MergePolicy.from_minutes(15) == DEFAULT_POLICY

    def test_non_positive_tolerance_rejected(self):
        with pytest.raises(ValueError):
            MergePolicy(tolerance=timedelta(0))

    @pytest.mark.parametrize("seed", range(10))
    def test_symmetric(self, seed):
        events = _random_events(seed)
        for a in events:
            for b in events:
                assert should_merge(a, b) == should_merge(b, a)

    def test_not_transitive(self):
        a = ev("a", at(9), at(10))
        b = ev("b", at(9, 30), at(11))
        c = ev("c", at(10, 30), at(11, 30))
        assert should_merge(a, b)
        assert should_merge(b, c)
        assert not should_merge(a, c)


# ---------------------------------------------------------------------------
# Event and validation
# ---------------------------------------------------------------------------

class TestEvent:
    def test_identity_by_id(self):
        a = ev("Standup", at(9), at(9, 15))
        b = ev("Standup", at(9), at(9, 15))
        assert a != b
        assert dataclasses.replace(a, title="Renamed") == a
        assert len({a, b}) == 2

    def test_duration(self):
        assert ev("a", at(9), at(10, 30)).duration == timedelta(minutes=90)

    def test_normalize_color(self):
        assert normalize_color(" #1E90FF ") == "#1e90ff"
        assert normalize_color(None) == "blue"
        assert normalize_color("") == "blue"

    def test_validate_zero_duration(self):
        with pytest.raises(InvalidEventError, match="not after its start"):
            validate_event(ev("a", at(9), at(9)))

    def test_validate_negative_duration(self):
        with pytest.raises(ValueError):
            validate_event(ev("a", at(10), at(9)))

    def test_group_events_rejects_malformed(self):
        with pytest.raises(InvalidEventError):
            group_events([ev("ok", at(9), at(10)), ev("bad", at(11), at(11))])


# ---------------------------------------------------------------------------
# EventGroup
# ---------------------------------------------------------------------------

class TestEventGroup:
    def test_seed(self):
        e = ev("a", at(9), at(10))
        group = EventGroup(e)
        assert group.events == (e,)
        assert group.start == e.start
        assert group.end == e.end
        assert group.color == "blue"
        assert len(group) == 1

    def test_add_event_updates_bounds_and_order(self):
        late = ev("late", at(11), at(12))
        early = ev("early", at(9), at(10))
        middle = ev("middle", at(10), at(13))
        group = EventGroup(late)
        group.add_event(early)
        group.add_event(middle)
        assert [e.title for e in group.events] == ["early", "middle", "late"]
        assert group.start == at(9)
        assert group.end == at(13)
        assert group.duration == timedelta(hours=4)

    def test_finalized_group_is_read_only(self):
        group = EventGroup(ev("a", at(9), at(10))).finalize()
        assert group.is_final
        with pytest.raises(RuntimeError):
            group.add_event(ev("b", at(9), at(10)))

    def test_from_events_requires_members(self):
        with pytest.raises(ValueError):
            EventGroup.from_events([])

    def test_from_events_sorts_once(self):
        a = ev("a", at(10), at(11))
        b = ev("b", at(9), at(9, 30))
        group = EventGroup.from_events([a, b])
        assert group.events == (b, a)
        assert group.is_final

    def test_group_level_merge_uses_group_bounds(self):
        group = EventGroup(ev("a", at(9), at(10)))
        group.add_event(ev("b", at(9, 30), at(11)))
        candidate = ev("c", at(9, 5), at(10, 55), "red")
        assert group.should_merge(candidate)
        assert not should_merge(group.events[0], candidate)

    def test_contains_and_iter(self):
        a = ev("a", at(9), at(10))
        group = EventGroup(a)
        assert a in group
        assert list(group) == [a]


# ---------------------------------------------------------------------------
# Clustering scenarios
# ---------------------------------------------------------------------------

class TestGroupEvents:
    def test_same_color_overlap_single_group(self):
        groups = group_events([ev("a", at(9), at(10)), ev("b", at(9, 30), at(10, 30))])
        assert len(groups) == 1
        assert groups[0].start == at(9)
        assert groups[0].end == at(10, 30)

    def test_touching_events_stay_apart(self):
        groups = group_events([ev("a", at(9), at(10)), ev("b", at(10), at(11))])
        assert len(groups) == 2

    def test_different_colors_near_identical_merge(self):
        groups = group_events([ev("a", at(9), at(10), "red"), ev("b", at(9, 10), at(10, 5), "blue")])
        assert len(groups) == 1
        assert groups[0].end == at(10, 5)

    def test_different_colors_far_start_stay_apart(self):
        groups = group_events([ev("a", at(9), at(10), "red"), ev("b", at(9, 20), at(10), "blue")])
        assert len(groups) == 2

    def test_empty(self):
        assert group_events([]) == []

    def test_single_event(self):
        e = ev("a", at(9), at(10))
        groups = group_events([e])
        assert len(groups) == 1
        assert groups[0].events == (e,)
        assert groups[0].start == e.start
        assert groups[0].end == e.end

    def test_chain_lands_in_one_group(self):
        a = ev("a", at(9), at(10))
        b = ev("b", at(9, 30), at(11))
        c = ev("c", at(10, 30), at(11, 30))
        groups = group_events([c, a, b])
        assert len(groups) == 1
        assert groups[0].events == (a, b, c)

    def test_links_to_earlier_non_adjacent_event(self):
        a = ev("a", at(9), at(10), "red")
        b = ev("b", at(9, 30), at(9, 45), "blue")
        c = ev("c", at(9, 45), at(10, 30), "red")
        groups = group_events([a, b, c])
        assert [[e.title for e in g.events] for g in groups] == [["a", "c"], ["b"]]
        assert groups[0].end == at(10, 30)

    def test_groups_ordered_by_start(self):
        events = [
            ev("late", at(15), at(16)),
            ev("early", at(8), at(9)),
            ev("mid", at(12), at(13), "red"),
        ]
        groups = group_events(events)
        assert [g.start for g in groups] == [at(8), at(12), at(15)]

    def test_custom_policy(self):
        events = [ev("a", at(9), at(10), "red"), ev("b", at(9, 20), at(10), "blue")]
        assert len(group_events(events, MergePolicy.from_minutes(30))) == 1

    def test_groups_are_finalized(self):
        groups = group_events([ev("a", at(9), at(10))])
        assert all(g.is_final for g in groups)

    def test_equal_starts_ordered_regardless_of_input(self):
        a = ev("a", at(9), at(10))
        b = ev("b", at(9), at(10))
        assert _ids(group_events([a, b])) == _ids(group_events([b, a]))


# ---------------------------------------------------------------------------
# Properties over random days
# ---------------------------------------------------------------------------

class TestGroupingProperties:
    @pytest.mark.parametrize("seed", range(25))
    def test_partition_complete(self, seed):
        events = _random_events(seed)
        groups = group_events(events)
        seen = Counter(e.id for g in groups for e in g.events)
        assert seen == Counter(e.id for e in events)
        assert all(len(g) > 0 for g in groups)

    @pytest.mark.parametrize("seed", range(25))
    def test_members_connected(self, seed):
        for group in group_events(_random_events(seed)):
            members = list(group.events)
            reached = {members[0].id}
            frontier = [members[0]]
            while frontier:
                current = frontier.pop()
                for other in members:
                    if other.id not in reached and should_merge(current, other):
                        reached.add(other.id)
                        frontier.append(other)
            assert reached == {e.id for e in members}

    @pytest.mark.parametrize("seed", range(25))
    def test_no_links_across_groups(self, seed):
        groups = group_events(_random_events(seed))
        for i, g1 in enumerate(groups):
            for g2 in groups[i + 1:]:
                for a in g1.events:
                    for b in g2.events:
                        assert not should_merge(a, b)

    @pytest.mark.parametrize("seed", range(25))
    def test_bounds_and_ordering(self, seed):
        groups = group_events(_random_events(seed))
        for group in groups:
            assert group.start == min(e.start for e in group.events)
            assert group.end == max(e.end for e in group.events)
            starts = [e.start for e in group.events]
            assert starts == sorted(starts)
        assert [g.start for g in groups] == sorted(g.start for g in groups)

    @pytest.mark.parametrize("seed", range(25))
    def test_idempotent(self, seed):
        groups = group_events(_random_events(seed))
        regrouped = group_events(flatten_groups(groups))
        assert _partition(regrouped) == _partition(groups)

    @pytest.mark.parametrize("seed", range(25))
    def test_deterministic_under_shuffle(self, seed):
        events = _random_events(seed)
        expected = _ids(group_events(events))
        rng = random.Random(seed + 1000)
        for _ in range(5):
            shuffled = events[:]
            rng.shuffle(shuffled)
            assert _ids(group_events(shuffled)) == expected
