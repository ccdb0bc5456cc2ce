"""Google Calendar API backend."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from datetime import datetime
from typing import Any

from dateutil.parser import parse as parse_dt

from .base import CalendarEvent, to_naive

logger = logging.getLogger("shark-timeline")

SCOPES = ["https://www.googleapis.com/auth/calendar.readonly"]
DEFAULT_TOKEN_FILE = "/data/google_calendar_token.json"


class GoogleCalendarBackend:
    """Calendar backend for Google Calendar via Google API."""

    def __init__(self, calendar_name: str, config: dict[str, Any]):
        self._name = calendar_name
        self._config = config
        self._service = None  # Lazy init
        self._calendar_id = config.get("calendar_id", "primary")

    def _get_service(self):
        """Lazy-initialize Google Calendar API service with auto-refresh."""
        if self._service is not None:
            return self._service

        from google.auth.transport.requests import Request
        from google.oauth2.credentials import Credentials
        from googleapiclient.discovery import build

        creds = None
        token_file = self._config.get("token_file", DEFAULT_TOKEN_FILE)
        credentials_file = self._config["credentials_file"]

        if os.path.isfile(token_file):
            with open(token_file, "r") as f:
                token_data = json.load(f)
            creds = Credentials.from_authorized_user_info(token_data, SCOPES)

        if not creds or not creds.valid:
            if creds and creds.expired and creds.refresh_token:
                creds.refresh(Request())
                with open(token_file, "w") as f:
                    json.dump(json.loads(creds.to_json()), f)
                logger.info("Google token refreshed for '%s'", self._name)
            elif os.path.isfile(credentials_file):
                raise ValueError(
                    f"Calendar '{self._name}': Google token not found or expired. "
                    f"Run: python -m shark_timeline --auth google --calendar {self._name}"
                )
            else:
                raise ValueError(
                    f"Calendar '{self._name}': credentials file not found: {credentials_file}"
                )

        self._service = build("calendar", "v3", credentials=creds)
        logger.info("Google Calendar connected: %s (calendar_id=%s)", self._name, self._calendar_id)
        return self._service

    def _parse_item(self, item: dict[str, Any]) -> CalendarEvent:
        start_raw = item.get("start", {})
        end_raw = item.get("end", {})

        # All-day events use 'date', timed events use 'dateTime'
        all_day = "date" in start_raw and "dateTime" not in start_raw
        if all_day:
            ev_start = parse_dt(start_raw["date"])
            ev_end = parse_dt(end_raw.get("date", start_raw["date"]))
        else:
            ev_start = parse_dt(start_raw["dateTime"])
            ev_end = parse_dt(end_raw.get("dateTime", start_raw["dateTime"]))

        return CalendarEvent(
            id=item["id"],
            calendar=self._name,
            title=item.get("summary", "(No title)"),
            start=to_naive(ev_start),
            end=to_naive(ev_end),
            description=item.get("description", ""),
            location=item.get("location", ""),
            all_day=all_day,
        )

    def _list_events_sync(self, start: datetime, end: datetime) -> list[CalendarEvent]:
        service = self._get_service()
        time_min = start.isoformat() if start.tzinfo else start.astimezone().isoformat()
        time_max = end.isoformat() if end.tzinfo else end.astimezone().isoformat()

        events = []
        page_token = None
        while True:
            events_result = (
                service.events()
                .list(
                    calendarId=self._calendar_id,
                    timeMin=time_min,
                    timeMax=time_max,
                    singleEvents=True,
                    orderBy="startTime",
                    maxResults=250,
                    pageToken=page_token,
                )
                .execute()
            )
            for item in events_result.get("items", []):
                if item.get("status") == "cancelled":
                    continue
                events.append(self._parse_item(item))
            page_token = events_result.get("nextPageToken")
            if not page_token:
                break
        return events

    async def list_events(self, start: datetime, end: datetime) -> list[CalendarEvent]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._list_events_sync, start, end)


def run_auth_flow(calendar_name: str, config: dict[str, Any]) -> str:
    """Interactive OAuth2 installed-app flow. Returns the token file path."""
    from google_auth_oauthlib.flow import InstalledAppFlow

    credentials_file = config["credentials_file"]
    token_file = config.get("token_file", DEFAULT_TOKEN_FILE)
    if not os.path.isfile(credentials_file):
        raise ValueError(f"Calendar '{calendar_name}': credentials file not found: {credentials_file}")

    flow = InstalledAppFlow.from_client_secrets_file(credentials_file, SCOPES)
    creds = flow.run_local_server(port=0)

    os.makedirs(os.path.dirname(token_file) or ".", exist_ok=True)
    with open(token_file, "w") as f:
        json.dump(json.loads(creds.to_json()), f)
    return token_file
