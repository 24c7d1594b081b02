"""
Google Calendar API provider for CareerVine.

Wraps the Calendar v3 API behind the CalendarProvider interface.
"""
import logging
import uuid
from datetime import datetime
from typing import Optional

from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from api.services.calendar import CalendarAPIError, CalendarProvider
from api.services.google_auth import GoogleOAuthClient, get_google_auth

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 2500


def _http_error_message(error: HttpError) -> str:
    status = getattr(error.resp, "status", "?")
    reason = error.reason if hasattr(error, "reason") else str(error)
    return f"Google Calendar API error (HTTP {status}): {reason}"


class GoogleCalendarProvider(CalendarProvider):
    """Calendar provider backed by the Google Calendar v3 API."""

    def __init__(self, user_id: str, auth: Optional[GoogleOAuthClient] = None):
        """
        Initialize provider.

        Args:
            user_id: CareerVine user whose Google tokens to use
            auth: OAuth client (default singleton)
        """
        self.user_id = user_id
        self.auth = auth or get_google_auth()
        self._service = None

    @property
    def service(self):
        """Get or create Calendar API service."""
        if self._service is None:
            credentials = self.auth.get_credentials(self.user_id)
            self._service = build("calendar", "v3", credentials=credentials, cache_discovery=False)
        return self._service

    def list_events(self, calendar_id: str, time_min: datetime, time_max: datetime) -> list[dict]:
        """List expanded events overlapping [time_min, time_max), following pagination."""
        items: list[dict] = []
        page_token = None
        try:
            while True:
                result = self.service.events().list(
                    calendarId=calendar_id,
                    timeMin=time_min.isoformat(),
                    timeMax=time_max.isoformat(),
                    singleEvents=True,
                    showDeleted=False,
                    orderBy="startTime",
                    maxResults=MAX_PAGE_SIZE,
                    pageToken=page_token,
                ).execute()
                items.extend(result.get("items", []))
                page_token = result.get("nextPageToken")
                if not page_token:
                    break
        except HttpError as e:
            raise CalendarAPIError(_http_error_message(e))

        logger.debug(f"Fetched {len(items)} events from {calendar_id} for user {self.user_id}")
        return items

    def list_calendars(self) -> list[dict]:
        """List calendars on the user's calendar list."""
        calendars: list[dict] = []
        page_token = None
        try:
            while True:
                result = self.service.calendarList().list(pageToken=page_token).execute()
                calendars.extend(result.get("items", []))
                page_token = result.get("nextPageToken")
                if not page_token:
                    break
        except HttpError as e:
            raise CalendarAPIError(_http_error_message(e))
        return calendars

    def insert_event(self, body: dict, with_meet: bool = False, calendar_id: str = "primary") -> dict:
        """Create an event, sending invitations to attendees."""
        body = dict(body)
        kwargs = {}
        if with_meet:
            body["conferenceData"] = {
                "createRequest": {
                    "requestId": uuid.uuid4().hex,
                    "conferenceSolutionKey": {"type": "hangoutsMeet"},
                }
            }
            kwargs["conferenceDataVersion"] = 1

        try:
            return self.service.events().insert(
                calendarId=calendar_id,
                body=body,
                sendUpdates="all" if body.get("attendees") else "none",
                **kwargs,
            ).execute()
        except HttpError as e:
            raise CalendarAPIError(_http_error_message(e))

    def patch_event(self, event_id: str, body: dict, calendar_id: str = "primary") -> dict:
        """Update the given fields of an event."""
        try:
            return self.service.events().patch(
                calendarId=calendar_id,
                eventId=event_id,
                body=body,
                sendUpdates="all",
            ).execute()
        except HttpError as e:
            raise CalendarAPIError(_http_error_message(e))

    def delete_event(self, event_id: str, calendar_id: str = "primary") -> None:
        """Delete an event. An already-deleted event counts as success."""
        try:
            self.service.events().delete(
                calendarId=calendar_id,
                eventId=event_id,
                sendUpdates="all",
            ).execute()
        except HttpError as e:
            if getattr(e.resp, "status", None) in (404, 410):
                logger.info(f"Event {event_id} already gone from {calendar_id}")
                return
            raise CalendarAPIError(_http_error_message(e))


def get_calendar_provider(user_id: str) -> CalendarProvider:
    """Get the remote calendar provider for a user."""
    return GoogleCalendarProvider(user_id)
