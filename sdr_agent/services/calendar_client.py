"""Google Calendar REST client (free/busy, event insert, event delete).

Google Calendar API docs: https://developers.google.com/calendar/api/v3/reference
Requests are authenticated with a service-account bearer token that is
refreshed on demand.  The scheduling engine only depends on the
``CalendarBackend`` protocol, so tests substitute an in-memory calendar.
"""

from __future__ import annotations

import base64
import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol
from urllib.parse import quote

from sdr_agent.config import GOOGLE_CALENDAR_BASE_URL, GOOGLE_SERVICE_ACCOUNT_FILE, TIMEZONE
from sdr_agent.services.http import ExternalAPIError, RetryingClient

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/calendar"]


class CalendarAPIError(ExternalAPIError):
    """Raised when a Google Calendar call fails after all retries."""


@dataclass(frozen=True)
class BusyInterval:
    start: datetime
    end: datetime

    def overlaps(self, start: datetime, end: datetime) -> bool:
        """Half-open overlap test against ``[start, end)``."""
        return self.start < end and self.end > start


@dataclass(frozen=True)
class CreatedEvent:
    event_id: str
    join_link: str | None


class CalendarBackend(Protocol):
    def free_busy(
        self, calendar_ids: list[str], start: datetime, end: datetime,
    ) -> dict[str, list[BusyInterval]]: ...

    def create_event(
        self,
        calendar_id: str,
        summary: str,
        description: str,
        start: datetime,
        end: datetime,
    ) -> CreatedEvent: ...

    def delete_event(self, calendar_id: str, event_id: str) -> None: ...


def _parse_rfc3339(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def new_event_id() -> str:
    """Random event id in the base32hex alphabet Google requires."""
    return base64.b32hexencode(uuid.uuid4().bytes).decode().rstrip("=").lower()


class GoogleCalendarClient(RetryingClient):
    """Thin wrapper around the Google Calendar v3 API."""

    service_name = "google_calendar"
    error_class = CalendarAPIError

    def __init__(
        self,
        service_account_file: str | None = None,
        base_url: str | None = None,
        *,
        credentials=None,
    ):
        super().__init__(
            base_url or GOOGLE_CALENDAR_BASE_URL,
            headers={"Content-Type": "application/json"},
        )
        self._service_account_file = service_account_file or GOOGLE_SERVICE_ACCOUNT_FILE
        # Injectable for tests; loaded lazily otherwise
        self._credentials = credentials
        self._credentials_lock = threading.Lock()

    # ── Auth ─────────────────────────────────────────────────────────

    def _auth_headers(self) -> dict[str, str]:
        with self._credentials_lock:
            if self._credentials is None:
                from google.oauth2 import service_account

                self._credentials = service_account.Credentials.from_service_account_file(
                    self._service_account_file, scopes=SCOPES,
                )
            if not self._credentials.valid:
                from google.auth.transport.requests import Request

                self._credentials.refresh(Request())
            return {"Authorization": f"Bearer {self._credentials.token}"}

    # ── Public API ───────────────────────────────────────────────────

    def free_busy(
        self, calendar_ids: list[str], start: datetime, end: datetime,
    ) -> dict[str, list[BusyInterval]]:
        """Return busy intervals per calendar over ``[start, end)``.

        A calendar the API reports errors for (e.g. not shared with the
        service account) is treated as fully busy so nobody is booked
        onto a calendar we cannot see.
        """
        if not calendar_ids:
            return {}
        data = self._request(
            "POST",
            "/freeBusy",
            json_body={
                "timeMin": start.isoformat(),
                "timeMax": end.isoformat(),
                "timeZone": TIMEZONE,
                "items": [{"id": cid} for cid in calendar_ids],
            },
        )
        calendars: dict[str, Any] = data.get("calendars", {})
        result: dict[str, list[BusyInterval]] = {}
        for cid in calendar_ids:
            entry = calendars.get(cid, {})
            if entry.get("errors"):
                logger.warning("freeBusy errors for calendar %s: %s", cid, entry["errors"])
                result[cid] = [BusyInterval(start, end)]
                continue
            result[cid] = [
                BusyInterval(_parse_rfc3339(b["start"]), _parse_rfc3339(b["end"]))
                for b in entry.get("busy", [])
            ]
        return result

    def create_event(
        self,
        calendar_id: str,
        summary: str,
        description: str,
        start: datetime,
        end: datetime,
    ) -> CreatedEvent:
        """Insert an event with an auto-generated Google Meet link.

        The event id is chosen here, so a retried insert whose first attempt
        reached Google gets a 409 instead of creating a second event; the
        event already stored under that id is returned.
        """
        event_id = new_event_id()
        body = {
            "id": event_id,
            "summary": summary,
            "description": description,
            "start": {"dateTime": start.isoformat(), "timeZone": TIMEZONE},
            "end": {"dateTime": end.isoformat(), "timeZone": TIMEZONE},
            "reminders": {
                "useDefault": False,
                "overrides": [
                    {"method": "email", "minutes": 60},
                    {"method": "popup", "minutes": 15},
                ],
            },
            "guestsCanModify": False,
            "guestsCanInviteOthers": False,
            "status": "confirmed",
            "conferenceData": {
                "createRequest": {
                    "requestId": f"sdr-{event_id}",
                    "conferenceSolutionKey": {"type": "hangoutsMeet"},
                },
            },
        }
        try:
            data = self._request(
                "POST",
                f"/calendars/{quote(calendar_id, safe='')}/events",
                params={"conferenceDataVersion": 1},
                json_body=body,
            )
        except CalendarAPIError as exc:
            if exc.status_code != 409:
                raise
            logger.warning("Event %s already inserted by an earlier attempt", event_id)
            data = self._request("GET", self._event_path(calendar_id, event_id))
        if not data.get("id"):
            raise CalendarAPIError("Calendar event insert returned no id")
        event_id = data["id"]

        join_link = next(
            (
                ep.get("uri")
                for ep in data.get("conferenceData", {}).get("entryPoints", [])
                if ep.get("entryPointType") == "video"
            ),
            None,
        )
        logger.info("Calendar event created: %s (meet=%s)", event_id, join_link)
        return CreatedEvent(event_id=event_id, join_link=join_link)

    @staticmethod
    def _event_path(calendar_id: str, event_id: str) -> str:
        return f"/calendars/{quote(calendar_id, safe='')}/events/{quote(event_id, safe='')}"

    def delete_event(self, calendar_id: str, event_id: str) -> None:
        """Delete an event.  An event that is already gone counts as deleted."""
        try:
            self._request("DELETE", self._event_path(calendar_id, event_id))
        except CalendarAPIError as exc:
            if exc.status_code in (404, 410):
                logger.info("Calendar event %s already deleted", event_id)
                return
            raise
        logger.info("Calendar event deleted: %s", event_id)
