"""CalDAV backend (Nextcloud, ownCloud, Radicale, iCloud, etc.)."""

from __future__ import annotations

import asyncio
import logging
import os
from datetime import date, datetime
from typing import Any

from .base import CalendarEvent, date_to_datetime, to_naive

logger = logging.getLogger("shark-timeline")


class CalDAVBackend:
    """Calendar backend for CalDAV servers."""

    def __init__(self, calendar_name: str, config: dict[str, Any]):
        self._name = calendar_name
        self._config = config
        self._calendar = None  # Lazy init

    def _get_calendar(self):
        """Lazy-initialize CalDAV client and calendar."""
        if self._calendar is not None:
            return self._calendar

        import caldav

        username = os.environ.get(self._config["username_env"], "")
        password = os.environ.get(self._config["password_env"], "")
        if not username or not password:
            raise ValueError(
                f"Calendar '{self._name}': CalDAV credentials not set "
                f"({self._config['username_env']}, {self._config['password_env']})"
            )

        url = self._config["url"]
        client = caldav.DAVClient(url=url, username=username, password=password)

        # Either look the calendar up by display name or treat the URL as the calendar itself
        calendar_name_filter = self._config.get("calendar_name")
        if calendar_name_filter:
            calendars = client.principal().calendars()
            for cal in calendars:
                if cal.name == calendar_name_filter:
                    self._calendar = cal
                    break
            if self._calendar is None:
                available = [c.name for c in calendars]
                raise ValueError(
                    f"Calendar '{self._name}': CalDAV calendar '{calendar_name_filter}' not found. "
                    f"Available: {available}"
                )
        else:
            self._calendar = caldav.Calendar(client=client, url=url)

        logger.info("CalDAV connected: %s → %s", self._name, url)
        return self._calendar

    def _parse_vevent(self, vevent: Any) -> CalendarEvent:
        """Parse a VEVENT component into a CalendarEvent."""
        summary = str(vevent.get("summary")) if vevent.get("summary") else "(No title)"
        description = str(vevent.get("description")) if vevent.get("description") else ""
        location = str(vevent.get("location")) if vevent.get("location") else ""

        dtstart = vevent.get("dtstart")
        dtend = vevent.get("dtend")
        duration = vevent.get("duration")

        ev_start = dtstart.dt if dtstart else datetime.now()
        if dtend:
            ev_end = dtend.dt
        elif duration:
            ev_end = ev_start + duration.dt
        else:
            ev_end = ev_start

        # All-day events carry a date without time
        all_day = isinstance(ev_start, date) and not isinstance(ev_start, datetime)

        ev_start = to_naive(date_to_datetime(ev_start))
        ev_end = to_naive(date_to_datetime(ev_end))

        uid = str(vevent.get("uid")) if vevent.get("uid") else ""

        return CalendarEvent(
            id=uid,
            calendar=self._name,
            title=summary,
            start=ev_start,
            end=ev_end,
            description=description,
            location=location,
            all_day=all_day,
        )

    def _list_events_sync(self, start: datetime, end: datetime) -> list[CalendarEvent]:
        cal = self._get_calendar()
        results = cal.search(start=start, end=end, event=True, expand=True)

        events = []
        for event_obj in results:
            for vevent in event_obj.icalendar_instance.walk("VEVENT"):
                events.append(self._parse_vevent(vevent))

        events.sort(key=lambda e: e.start)
        return events

    async def list_events(self, start: datetime, end: datetime) -> list[CalendarEvent]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._list_events_sync, start, end)
