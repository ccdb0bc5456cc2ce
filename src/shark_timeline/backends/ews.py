"""Exchange Web Services (EWS) backend via exchangelib."""

from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime
from typing import Any

from .base import CalendarEvent, date_to_datetime, to_naive

logger = logging.getLogger("shark-timeline")


class EWSBackend:
    """Calendar backend for Microsoft Exchange via EWS."""

    def __init__(self, calendar_name: str, config: dict[str, Any]):
        self._name = calendar_name
        self._config = config
        self._account = None  # Lazy init

    def _get_account(self):
        """Lazy-initialize exchangelib Account."""
        if self._account is not None:
            return self._account

        from exchangelib import DELEGATE, Account, Configuration, Credentials

        username = os.environ.get(self._config["username_env"], "")
        password = os.environ.get(self._config["password_env"], "")
        if not username or not password:
            raise ValueError(
                f"Calendar '{self._name}': EWS credentials not set "
                f"({self._config['username_env']}, {self._config['password_env']})"
            )

        ews_url = self._config["ews_url"]
        ews_config = Configuration(
            server=ews_url.split("//")[1].split("/")[0],  # Extract hostname
            credentials=Credentials(username=username, password=password),
            service_endpoint=ews_url,
        )

        self._account = Account(
            primary_smtp_address=self._config.get("email", username),
            config=ews_config,
            autodiscover=False,
            access_type=DELEGATE,
        )
        logger.info("EWS connected: %s → %s", self._name, ews_url)
        return self._account

    def _to_event(self, item: Any) -> CalendarEvent:
        all_day = bool(getattr(item, "is_all_day", False))
        return CalendarEvent(
            id=item.id,
            calendar=self._name,
            title=item.subject or "(No title)",
            start=to_naive(date_to_datetime(item.start)),
            end=to_naive(date_to_datetime(item.end)),
            description=str(item.body) if getattr(item, "body", None) else "",
            location=getattr(item, "location", None) or "",
            all_day=all_day,
        )

    def _list_events_sync(self, start: datetime, end: datetime) -> list[CalendarEvent]:
        from exchangelib import EWSDateTime, EWSTimeZone

        account = self._get_account()
        tz = EWSTimeZone.localzone()
        ews_start = EWSDateTime.from_datetime(start.astimezone(tz))
        ews_end = EWSDateTime.from_datetime(end.astimezone(tz))

        # view() expands recurring series into occurrences
        items = account.calendar.view(start=ews_start, end=ews_end).order_by("start")
        return [self._to_event(item) for item in items if item.start and item.end]

    async def list_events(self, start: datetime, end: datetime) -> list[CalendarEvent]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._list_events_sync, start, end)
