"""
Calendar event mutations for CareerVine.

Create, update and delete go to the remote calendar first; the local cache
is only touched after the remote call succeeds. Cache write failures are
logged, not raised.
"""
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from api.services.calendar import Attendee, CalendarEvent, CalendarProvider, parse_google_event
from api.services.calendar_store import CalendarEventStore, get_calendar_event_store
from config.settings import settings

logger = logging.getLogger(__name__)

CONFERENCE_MEET = "meet"


@dataclass
class NewEvent:
    """Fields for an event created from CareerVine."""
    summary: str
    start_time: datetime
    end_time: datetime
    description: Optional[str] = None
    location: Optional[str] = None
    attendee_emails: Optional[list[str]] = None
    conference_type: str = "none"  # "meet" adds a Google Meet link
    time_zone: Optional[str] = None
    source_thread_id: Optional[str] = None
    source_message_id: Optional[str] = None

    def __post_init__(self):
        if not self.summary or not self.summary.strip():
            raise ValueError("Summary is required")
        if self.end_time <= self.start_time:
            raise ValueError("End time must be after start time")

    def to_google_body(self) -> dict:
        """Build the Google Calendar event resource."""
        tz_name = self.time_zone or settings.default_timezone
        body = {
            "summary": self.summary,
            "start": {"dateTime": self.start_time.isoformat(), "timeZone": tz_name},
            "end": {"dateTime": self.end_time.isoformat(), "timeZone": tz_name},
        }
        if self.description:
            body["description"] = self.description
        if self.location:
            body["location"] = self.location
        if self.attendee_emails:
            body["attendees"] = [{"email": email} for email in self.attendee_emails]
        return body


@dataclass
class CreatedEvent:
    google_event_id: str
    meet_link: Optional[str] = None
    html_link: Optional[str] = None


def create_event(
    user_id: str,
    provider: CalendarProvider,
    new_event: NewEvent,
    store: Optional[CalendarEventStore] = None,
) -> CreatedEvent:
    """
    Create an event on the remote calendar and cache it.

    Raises:
        CalendarAPIError: Remote create failed (nothing cached)
    """
    store = store or get_calendar_event_store()
    remote = provider.insert_event(
        new_event.to_google_body(),
        with_meet=new_event.conference_type == CONFERENCE_MEET,
    )

    event = parse_google_event(remote, user_id, fallback_tz=new_event.time_zone)
    if event is None:
        # Remote answered without usable times; cache what was requested
        event = CalendarEvent(
            user_id=user_id,
            google_event_id=remote["id"],
            start_at=new_event.start_time,
            end_at=new_event.end_time,
            title=new_event.summary,
            description=new_event.description,
            location=new_event.location,
        )
    if not event.attendees and new_event.attendee_emails:
        event.attendees = [Attendee(email=email, name=email) for email in new_event.attendee_emails]
    event.source_gmail_thread_id = new_event.source_thread_id
    event.source_gmail_message_id = new_event.source_message_id

    try:
        store.upsert(event)
    except sqlite3.Error as e:
        logger.error(f"Created event {event.google_event_id} but failed to cache it: {e}")

    logger.info(f"Created calendar event {event.google_event_id} for user {user_id}")
    return CreatedEvent(
        google_event_id=event.google_event_id,
        meet_link=event.meet_link,
        html_link=remote.get("htmlLink"),
    )


def update_event(
    user_id: str,
    provider: CalendarProvider,
    google_event_id: str,
    summary: Optional[str] = None,
    description: Optional[str] = None,
    start_time: Optional[datetime] = None,
    end_time: Optional[datetime] = None,
    time_zone: Optional[str] = None,
    store: Optional[CalendarEventStore] = None,
) -> None:
    """
    Update an event remotely, then mirror the changes into the cache.

    Only provided fields change. An empty description clears it. New
    start/end times are sent in `time_zone` (the user's calendar timezone).

    Raises:
        CalendarAPIError: Remote update failed (cache untouched)
        ValueError: Nothing to update, or end before start
    """
    store = store or get_calendar_event_store()
    if start_time and end_time and end_time <= start_time:
        raise ValueError("End time must be after start time")

    cached = store.get(user_id, google_event_id)
    tz_name = time_zone or settings.default_timezone

    body: dict = {}
    changes: dict = {}
    if summary:
        body["summary"] = summary
        changes["title"] = summary
    if description is not None:
        body["description"] = description
        changes["description"] = description or None
    if start_time:
        body["start"] = {"dateTime": start_time.isoformat(), "timeZone": tz_name}
        changes["start_at"] = start_time
    if end_time:
        body["end"] = {"dateTime": end_time.isoformat(), "timeZone": tz_name}
        changes["end_at"] = end_time
    if not body:
        raise ValueError("No fields to update")

    calendar_id = cached.calendar_id if cached else "primary"
    provider.patch_event(google_event_id, body, calendar_id=calendar_id)

    try:
        if not store.update_fields(user_id, google_event_id, **changes):
            logger.warning(f"Updated event {google_event_id} is not in the cache for user {user_id}")
    except sqlite3.Error as e:
        logger.error(f"Updated event {google_event_id} but failed to update cache: {e}")


def delete_event(
    user_id: str,
    provider: CalendarProvider,
    google_event_id: str,
    store: Optional[CalendarEventStore] = None,
) -> None:
    """
    Delete an event remotely, then remove it from the cache.

    Raises:
        CalendarAPIError: Remote delete failed (cache untouched)
    """
    store = store or get_calendar_event_store()
    cached = store.get(user_id, google_event_id)
    provider.delete_event(google_event_id, calendar_id=cached.calendar_id if cached else "primary")

    try:
        store.delete(user_id, google_event_id)
    except sqlite3.Error as e:
        logger.error(f"Deleted event {google_event_id} but failed to remove it from cache: {e}")
