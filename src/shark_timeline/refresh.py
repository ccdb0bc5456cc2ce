"""Refresh loop that owns and republishes the grouped timeline.

External triggers (timer ticks, manual refresh, settings changes) only put a
request on a queue. A single consumer task fetches, groups and replaces the
published snapshot in one assignment, so readers always see a complete
grouping.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Awaitable, Callable

from .config import TimelineSettings
from .grouping import Event, EventGroup, InvalidEventError, group_events

logger = logging.getLogger("shark-timeline")

FetchDay = Callable[[date, TimelineSettings], Awaitable[tuple[list[Event], list[str]]]]


@dataclass(frozen=True)
class TimelineSnapshot:
    """Result of one fetch-and-group cycle."""

    day: date
    generated_at: datetime
    reason: str
    events: tuple[Event, ...]
    groups: tuple[EventGroup, ...]
    errors: tuple[str, ...] = ()


class TimelineRefresher:
    def __init__(
        self,
        fetch: FetchDay,
        settings: TimelineSettings | None = None,
        *,
        today: Callable[[], date] = date.today,
    ):
        self._fetch = fetch
        self.settings = settings or TimelineSettings()
        self._today = today
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._cycle_lock = asyncio.Lock()
        self._loop_task: asyncio.Task | None = None
        self._timer_task: asyncio.Task | None = None
        self.snapshot: TimelineSnapshot | None = None

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def request_refresh(self, reason: str = "manual") -> bool:
        """Queue a recompute. Returns False if one is already pending."""
        if not self._queue.empty():
            logger.debug("Refresh request '%s' coalesced with a pending one", reason)
            return False
        self._queue.put_nowait(reason)
        return True

    async def build_snapshot(self, day: date, reason: str) -> TimelineSnapshot:
        """Fetch and group one day without publishing the result."""
        settings = self.settings
        events, errors = await self._fetch(day, settings)
        groups = group_events(events, settings.merge_policy)
        return TimelineSnapshot(
            day=day,
            generated_at=datetime.now(),
            reason=reason,
            events=tuple(events),
            groups=tuple(groups),
            errors=tuple(errors),
        )

    async def refresh_once(self, reason: str = "manual") -> TimelineSnapshot | None:
        """Run one cycle for today and publish it.

        If grouping rejects the fetched events the previous snapshot stays
        published and is returned.
        """
        async with self._cycle_lock:
            try:
                snapshot = await self.build_snapshot(self._today(), reason)
            except InvalidEventError as e:
                logger.warning("Refresh (%s) rejected: %s", reason, e)
                return self.snapshot
            self.snapshot = snapshot
        logger.info(
            "Timeline refreshed (%s): %d events in %d groups",
            reason, len(snapshot.events), len(snapshot.groups),
        )
        return snapshot

    async def run(self) -> None:
        """Consume refresh requests until cancelled."""
        while True:
            reason = await self._queue.get()
            try:
                await self.refresh_once(reason)
            except Exception:
                logger.exception("Refresh (%s) failed", reason)
            finally:
                self._queue.task_done()

    async def _tick(self) -> None:
        while True:
            await asyncio.sleep(self.settings.refresh_interval)
            self.request_refresh("timer")

    def _restart_timer(self) -> None:
        if self._timer_task is not None:
            self._timer_task.cancel()
        self._timer_task = asyncio.get_running_loop().create_task(self._tick())
        logger.info("Refresh interval set to %.0f seconds", self.settings.refresh_interval)

    def update_settings(self, settings: TimelineSettings) -> None:
        """Swap settings, restart the timer and queue a recompute."""
        self.settings = settings
        if self.running:
            self._restart_timer()
        self.request_refresh("settings")

    def start(self) -> None:
        if self.running:
            return
        self._loop_task = asyncio.get_running_loop().create_task(self.run())
        self._restart_timer()
        self.request_refresh("startup")

    async def wait_idle(self) -> None:
        """Wait until every queued request has been processed."""
        await self._queue.join()

    async def stop(self) -> None:
        tasks = [t for t in (self._loop_task, self._timer_task) if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._loop_task = None
        self._timer_task = None
