"""
Calendar models for CareerVine.

Defines the cached CalendarEvent record, parsing of Google Calendar API
payloads into it, and the CalendarProvider interface that remote calendar
clients implement.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from config.settings import settings

logger = logging.getLogger(__name__)

PRIVATE_VISIBILITIES = {"private", "confidential"}
BUSY_TITLE = "Busy"


class CalendarAPIError(Exception):
    """Error returned by the remote calendar API."""
    pass


def _make_aware(dt: datetime) -> datetime:
    """Ensure datetime is timezone-aware (UTC if naive)."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_iso_datetime(value: str) -> datetime:
    """Parse an ISO 8601 string (accepting a trailing Z) into an aware datetime."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return _make_aware(datetime.fromisoformat(value))


@dataclass
class Attendee:
    """An invitee on a calendar event."""
    email: str
    name: str = ""
    response_status: str = "needsAction"  # needsAction, accepted, declined, tentative
    is_self: bool = False

    def to_dict(self) -> dict:
        return {
            "email": self.email,
            "name": self.name or self.email,
            "response_status": self.response_status,
            "is_self": self.is_self,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Attendee":
        return cls(
            email=data.get("email", ""),
            name=data.get("name") or data.get("email", ""),
            response_status=data.get("response_status", "needsAction"),
            is_self=bool(data.get("is_self", False)),
        )


@dataclass
class CalendarEvent:
    """
    A cached copy of a remote calendar event.

    Identity is (user_id, google_event_id). Private events keep their time
    range but never their title, description, location or attendees.
    """
    user_id: str
    google_event_id: str
    start_at: datetime
    end_at: datetime
    calendar_id: str = "primary"
    title: Optional[str] = None
    description: Optional[str] = None
    all_day: bool = False
    location: Optional[str] = None
    meet_link: Optional[str] = None
    status: str = "confirmed"
    transparency: str = "opaque"
    is_private: bool = False
    recurring_event_id: Optional[str] = None
    attendees: list[Attendee] = field(default_factory=list)
    source_gmail_thread_id: Optional[str] = None
    source_gmail_message_id: Optional[str] = None
    synced_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def display_title(self) -> str:
        """Title safe to show to the user ("Busy" for private events)."""
        if self.is_private:
            return BUSY_TITLE
        return self.title or "(No title)"

    @property
    def declined_by_self(self) -> bool:
        """Check if the calendar owner declined this event."""
        return any(a.is_self and a.response_status == "declined" for a in self.attendees)

    def blocks_time(self) -> bool:
        """
        Check if this event should count as busy time.

        All-day events, free ("transparent") events, cancelled events and
        events the owner declined do not block availability.
        """
        if self.all_day or self.status == "cancelled":
            return False
        if self.transparency == "transparent":
            return False
        return not self.declined_by_self

    def to_dict(self) -> dict:
        """Convert to dict for API responses."""
        return {
            "google_event_id": self.google_event_id,
            "calendar_id": self.calendar_id,
            "title": self.display_title,
            "description": None if self.is_private else self.description,
            "start_at": self.start_at.isoformat(),
            "end_at": self.end_at.isoformat(),
            "all_day": self.all_day,
            "location": None if self.is_private else self.location,
            "meet_link": None if self.is_private else self.meet_link,
            "status": self.status,
            "is_private": self.is_private,
            "recurring_event_id": self.recurring_event_id,
            "attendees": [] if self.is_private else [a.to_dict() for a in self.attendees],
            "source_gmail_thread_id": self.source_gmail_thread_id,
            "source_gmail_message_id": self.source_gmail_message_id,
            "synced_at": self.synced_at.isoformat(),
        }


def _parse_event_time(value: dict, fallback_tz: str) -> tuple[Optional[datetime], bool]:
    """
    Parse a Google start/end object.

    Returns (datetime, is_all_day). All-day dates become local midnight in
    the event's (or the fallback) timezone.
    """
    if value.get("dateTime"):
        return parse_iso_datetime(value["dateTime"]), False
    if value.get("date"):
        tz_name = value.get("timeZone") or fallback_tz
        day = date.fromisoformat(value["date"])
        return datetime.combine(day, time.min, tzinfo=ZoneInfo(tz_name)), True
    return None, False


def _extract_meet_link(item: dict) -> Optional[str]:
    """Get the video conferencing link from a Google event, if any."""
    if item.get("hangoutLink"):
        return item["hangoutLink"]
    conference = item.get("conferenceData") or {}
    for entry in conference.get("entryPoints", []):
        if entry.get("entryPointType") == "video" and entry.get("uri"):
            return entry["uri"]
    return None


def parse_google_event(
    item: dict,
    user_id: str,
    calendar_id: str = "primary",
    fallback_tz: Optional[str] = None,
) -> Optional[CalendarEvent]:
    """
    Parse a Google Calendar API event resource into a CalendarEvent.

    Private and confidential events are masked: only the time range and
    bookkeeping fields are kept.

    Returns:
        CalendarEvent, or None if the resource has no usable time range
    """
    event_id = item.get("id")
    if not event_id:
        return None

    fallback_tz = fallback_tz or settings.default_timezone
    start_at, all_day = _parse_event_time(item.get("start", {}), fallback_tz)
    end_at, _ = _parse_event_time(item.get("end", {}), fallback_tz)
    if start_at is None or end_at is None:
        logger.warning(f"Skipping event {event_id} without start/end")
        return None

    is_private = item.get("visibility", "default") in PRIVATE_VISIBILITIES

    attendees = [
        Attendee(
            email=a.get("email", ""),
            name=a.get("displayName") or a.get("email", ""),
            response_status=a.get("responseStatus", "needsAction"),
            is_self=bool(a.get("self", False)),
        )
        for a in item.get("attendees", [])
    ]

    event = CalendarEvent(
        user_id=user_id,
        google_event_id=event_id,
        calendar_id=calendar_id,
        start_at=start_at,
        end_at=end_at,
        all_day=all_day,
        status=item.get("status", "confirmed"),
        transparency=item.get("transparency", "opaque"),
        is_private=is_private,
        recurring_event_id=item.get("recurringEventId"),
    )

    if is_private:
        # Keep the owner's RSVP so declined private events stay non-blocking
        event.attendees = [a for a in attendees if a.is_self]
    else:
        event.title = item.get("summary")
        event.description = item.get("description")
        event.location = item.get("location")
        event.meet_link = _extract_meet_link(item)
        event.attendees = attendees

    return event


def format_event_time(dt: datetime, is_all_day: bool = False, tz_name: Optional[str] = None) -> str:
    """Format event time for display."""
    local_dt = _make_aware(dt).astimezone(ZoneInfo(tz_name or settings.default_timezone))

    if is_all_day:
        return local_dt.strftime("%A, %B %d, %Y")
    else:
        return local_dt.strftime("%A, %B %d, %Y at %I:%M %p")


class CalendarProvider(ABC):
    """
    Remote calendar backend for one user.

    Methods take and return Google Calendar API resource dicts and raise
    CalendarAPIError on any remote failure.
    """

    @abstractmethod
    def list_events(self, calendar_id: str, time_min: datetime, time_max: datetime) -> list[dict]:
        """List single (expanded) events overlapping the range."""

    @abstractmethod
    def list_calendars(self) -> list[dict]:
        """List the calendars on the user's calendar list."""

    @abstractmethod
    def insert_event(self, body: dict, with_meet: bool = False, calendar_id: str = "primary") -> dict:
        """Create an event, optionally requesting a Google Meet conference."""

    @abstractmethod
    def patch_event(self, event_id: str, body: dict, calendar_id: str = "primary") -> dict:
        """Update the given fields of an event."""

    @abstractmethod
    def delete_event(self, event_id: str, calendar_id: str = "primary") -> None:
        """Delete an event."""
