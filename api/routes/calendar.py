"""
Calendar API endpoints for CareerVine.

Serves the cached calendar, proxies event changes to Google Calendar,
triggers syncs and computes availability for email scheduling.
"""
import logging
from datetime import datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from api.services.availability import (
    PROFILE_TYPES,
    AvailabilityProfile,
    busy_intervals,
    compute_availability,
    format_availability_text,
)
from api.services.calendar import CalendarAPIError, CalendarEvent, format_event_time
from api.services.calendar_events import NewEvent, create_event, delete_event, update_event
from api.services.calendar_google import get_calendar_provider
from api.services.calendar_store import get_calendar_event_store
from api.services.calendar_sync import SyncRateLimitedError, sync_calendar
from api.services.connection_store import get_connection_store
from api.services.google_auth import (
    CalendarNotConnectedError,
    GoogleOAuthError,
    get_google_auth,
    make_oauth_state,
    verify_oauth_state,
)
from config.settings import settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/calendar", tags=["calendar"])


async def get_current_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Resolve the caller, set by the auth proxy in front of the API."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Unauthorized")
    return x_user_id.strip()


def _aware(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def _user_timezone(tz_name: Optional[str]) -> str:
    """Connection timezone if valid, else the configured default."""
    if tz_name:
        try:
            ZoneInfo(tz_name)
            return tz_name
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning(f"Unknown calendar timezone '{tz_name}', using default")
    return settings.default_timezone


class AttendeeResponse(BaseModel):
    email: str
    name: str
    response_status: str
    is_self: bool = False


class EventResponse(BaseModel):
    """Response model for a cached calendar event."""
    google_event_id: str
    calendar_id: str
    title: str
    description: Optional[str] = None
    start_at: str
    end_at: str
    start_formatted: str
    end_formatted: str
    all_day: bool
    location: Optional[str] = None
    meet_link: Optional[str] = None
    status: str
    is_private: bool
    recurring_event_id: Optional[str] = None
    attendees: list[AttendeeResponse]
    source_gmail_thread_id: Optional[str] = None
    source_gmail_message_id: Optional[str] = None
    synced_at: str


class EventsResponse(BaseModel):
    events: list[EventResponse]
    count: int


class CreateEventRequest(BaseModel):
    summary: str
    start_time: datetime
    end_time: datetime
    description: Optional[str] = None
    location: Optional[str] = None
    attendee_emails: list[str] = []
    conference_type: str = "none"
    source_thread_id: Optional[str] = None
    source_message_id: Optional[str] = None


class CreateEventResponse(BaseModel):
    success: bool
    google_event_id: str
    meet_link: Optional[str] = None
    html_link: Optional[str] = None


class UpdateEventRequest(BaseModel):
    summary: Optional[str] = None
    description: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None


class SuccessResponse(BaseModel):
    success: bool = True


class BusyCalendarsRequest(BaseModel):
    busy_calendar_ids: list[str]


class AvailabilityProfileRequest(BaseModel):
    profile: str = "standard"
    data: dict


class AvailabilityDayResponse(BaseModel):
    date: str
    label: str
    slots: list[str]
    ranges: list[dict]


class AvailabilityResponse(BaseModel):
    days: list[AvailabilityDayResponse] = []
    text: str = ""
    timezone: Optional[str] = None
    profile: Optional[str] = None
    not_connected: bool = False
    never_synced: bool = False


class CalendarResponse(BaseModel):
    id: str
    summary: str
    primary: bool
    access_role: Optional[str] = None
    is_busy: bool


def _event_to_response(event: CalendarEvent, tz_name: str) -> EventResponse:
    """Convert CalendarEvent to API response. Private events only show as Busy."""
    data = event.to_dict()
    return EventResponse(
        **data,
        start_formatted=format_event_time(event.start_at, event.all_day, tz_name),
        end_formatted=format_event_time(event.end_at, event.all_day, tz_name),
    )


@router.get("/events", response_model=EventsResponse)
async def list_events(
    start: Optional[datetime] = Query(default=None, description="Earliest event start (ISO 8601)"),
    end: Optional[datetime] = Query(default=None, description="Latest event start (ISO 8601)"),
    user_id: str = Depends(get_current_user_id),
):
    """
    **List cached calendar events** in a date range, oldest first.

    Reads the local cache only; call `POST /api/calendar/sync` to refresh it.
    Private events are returned with the title "Busy" and no details; cancelled
    events are left out.
    """
    try:
        connection = get_connection_store().get(user_id)
        tz_name = _user_timezone(connection.calendar_timezone if connection else None)
        events = [
            e for e in get_calendar_event_store().list_events(user_id, _aware(start), _aware(end))
            if e.status != "cancelled"
        ]
        return EventsResponse(
            events=[_event_to_response(e, tz_name) for e in events],
            count=len(events),
        )
    except Exception as e:
        logger.error(f"Error fetching events for user {user_id}: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to fetch events: {e}")


@router.post("/create-event", response_model=CreateEventResponse)
async def create_calendar_event(
    request: CreateEventRequest,
    user_id: str = Depends(get_current_user_id),
):
    """
    **Create a Google Calendar event**, optionally with a Google Meet link
    (`conference_type=meet`), and store it in the local cache.
    """
    try:
        connection = get_connection_store().get(user_id)
        new_event = NewEvent(
            summary=request.summary,
            start_time=_aware(request.start_time),
            end_time=_aware(request.end_time),
            description=request.description,
            location=request.location,
            attendee_emails=request.attendee_emails,
            conference_type=request.conference_type,
            time_zone=_user_timezone(connection.calendar_timezone if connection else None),
            source_thread_id=request.source_thread_id,
            source_message_id=request.source_message_id,
        )
        created = create_event(
            user_id, get_calendar_provider(user_id), new_event, store=get_calendar_event_store()
        )
        return CreateEventResponse(
            success=True,
            google_event_id=created.google_event_id,
            meet_link=created.meet_link,
            html_link=created.html_link,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except CalendarNotConnectedError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except GoogleOAuthError as e:
        raise HTTPException(status_code=401, detail=str(e))
    except Exception as e:
        logger.error(f"Create event error for user {user_id}: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to create event: {e}")


@router.patch("/events/{google_event_id}", response_model=SuccessResponse)
async def update_calendar_event(
    google_event_id: str,
    request: UpdateEventRequest,
    user_id: str = Depends(get_current_user_id),
):
    """Update a Google Calendar event and the cached copy."""
    try:
        connection = get_connection_store().get(user_id)
        update_event(
            user_id,
            get_calendar_provider(user_id),
            google_event_id,
            summary=request.summary,
            description=request.description,
            start_time=_aware(request.start_time),
            end_time=_aware(request.end_time),
            time_zone=_user_timezone(connection.calendar_timezone if connection else None),
            store=get_calendar_event_store(),
        )
        return SuccessResponse()
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except CalendarNotConnectedError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except GoogleOAuthError as e:
        raise HTTPException(status_code=401, detail=str(e))
    except Exception as e:
        logger.error(f"Update calendar event error for user {user_id}: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to update event: {e}")


@router.delete("/events/{google_event_id}", response_model=SuccessResponse)
async def delete_calendar_event(
    google_event_id: str,
    user_id: str = Depends(get_current_user_id),
):
    """Delete a Google Calendar event and remove it from the cache."""
    try:
        delete_event(
            user_id, get_calendar_provider(user_id), google_event_id, store=get_calendar_event_store()
        )
        return SuccessResponse()
    except CalendarNotConnectedError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except GoogleOAuthError as e:
        raise HTTPException(status_code=401, detail=str(e))
    except Exception as e:
        logger.error(f"Delete calendar event error for user {user_id}: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to delete event: {e}")


@router.post("/sync")
async def sync_events(
    start: Optional[datetime] = Query(default=None, description="Window start (default: 7 days ago)"),
    end: Optional[datetime] = Query(default=None, description="Window end (default: 30 days ahead)"),
    user_id: str = Depends(get_current_user_id),
):
    """
    **Sync the calendar cache** with Google Calendar.

    Returns 429 if the calendar was synced within the cooldown window.
    """
    try:
        result = sync_calendar(
            user_id,
            get_calendar_provider(user_id),
            start=_aware(start),
            end=_aware(end),
            event_store=get_calendar_event_store(),
            connection_store=get_connection_store(),
        )
        return {"success": True, **result.to_dict()}
    except SyncRateLimitedError as e:
        return JSONResponse(
            status_code=429,
            content={"detail": str(e), "retry_after": e.retry_after},
            headers={"Retry-After": str(e.retry_after)},
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except CalendarNotConnectedError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except GoogleOAuthError as e:
        raise HTTPException(status_code=401, detail=str(e))
    except CalendarAPIError as e:
        logger.error(f"Calendar sync failed for user {user_id}: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to sync calendar: {e}")
    except Exception as e:
        logger.error(f"Calendar sync failed for user {user_id}: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to sync calendar: {e}")


@router.get("/availability", response_model=AvailabilityResponse)
async def get_availability(
    start: Optional[datetime] = Query(default=None, description="Range start (default: today, local midnight)"),
    end: Optional[datetime] = Query(default=None, description="Range end (default: start + days_ahead)"),
    days_ahead: int = Query(default=7, ge=1, le=60, description="Days to cover when end is omitted"),
    days_of_week: Optional[str] = Query(default=None, description="Comma-separated weekdays, 1=Mon .. 7=Sun"),
    window_start: Optional[str] = Query(default=None, description="Working window start, HH:MM"),
    window_end: Optional[str] = Query(default=None, description="Working window end, HH:MM"),
    duration: Optional[int] = Query(default=None, ge=5, le=480, description="Slot length in minutes"),
    buffer_before: Optional[int] = Query(default=None, ge=0, le=240, description="Minutes blocked before events"),
    buffer_after: Optional[int] = Query(default=None, ge=0, le=240, description="Minutes blocked after events"),
    profile: str = Query(default="standard", description="Saved profile: standard or priority"),
    user_id: str = Depends(get_current_user_id),
):
    """
    **Compute free time slots** from the cached calendar.

    Starts from the saved availability profile (or defaults) and applies any
    explicit overrides. Busy time comes from the selected busy calendars,
    padded by the buffers. Days with no free time are returned with no slots.
    """
    if profile not in PROFILE_TYPES:
        raise HTTPException(status_code=400, detail=f"Unknown profile '{profile}'")

    connection = get_connection_store().get(user_id)
    if not connection or not connection.is_connected:
        return AvailabilityResponse(not_connected=True, profile=profile)
    if connection.calendar_last_synced_at is None:
        return AvailabilityResponse(never_synced=True, profile=profile)

    tz_name = _user_timezone(connection.calendar_timezone)
    tz = ZoneInfo(tz_name)

    try:
        start = _aware(start) or datetime.combine(datetime.now(tz).date(), time.min, tzinfo=tz)
        end = _aware(end) or start + timedelta(days=days_ahead)

        base = connection.get_profile(profile) or AvailabilityProfile.uniform(
            settings.availability_days_of_week,
            settings.availability_window_start,
            settings.availability_window_end,
            settings.availability_buffer_before,
            settings.availability_buffer_after,
        )
        overrides = [days_of_week, window_start, window_end, buffer_before, buffer_after]
        if any(v is not None for v in overrides):
            enabled = [d for d in base.working_days if d.enabled]
            first = enabled[0] if enabled else None
            days = (
                [int(d) for d in days_of_week.split(",") if d.strip()]
                if days_of_week is not None
                else [d.day + 1 for d in enabled]
            )
            base = AvailabilityProfile.uniform(
                days,
                window_start or (first.start_time if first else settings.availability_window_start),
                window_end or (first.end_time if first else settings.availability_window_end),
                buffer_before if buffer_before is not None else (
                    first.buffer_before if first else settings.availability_buffer_before
                ),
                buffer_after if buffer_after is not None else (
                    first.buffer_after if first else settings.availability_buffer_after
                ),
            )

        # Pad the query so events just outside the range still apply their buffers
        events = get_calendar_event_store().list_overlapping(
            user_id,
            start - timedelta(days=1),
            end + timedelta(days=1),
            calendar_ids=connection.effective_busy_calendar_ids,
        )
        result = compute_availability(
            busy_intervals(events),
            start,
            end,
            tz_name,
            base,
            duration or settings.availability_duration_minutes,
            alignment_minutes=settings.availability_slot_alignment_minutes,
            not_before=datetime.now(timezone.utc),
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Availability failed for user {user_id}: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to compute availability: {e}")

    return AvailabilityResponse(
        days=[AvailabilityDayResponse(**d.to_dict()) for d in result],
        text=format_availability_text(result),
        timezone=tz_name,
        profile=profile,
    )


@router.post("/busy-calendars", response_model=SuccessResponse)
async def save_busy_calendars(
    request: BusyCalendarsRequest,
    user_id: str = Depends(get_current_user_id),
):
    """Save which calendars count as busy for availability."""
    try:
        get_connection_store().set_busy_calendars(user_id, request.busy_calendar_ids)
        return SuccessResponse()
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to save: {e}")


@router.post("/availability-profile", response_model=SuccessResponse)
async def save_availability_profile(
    request: AvailabilityProfileRequest,
    user_id: str = Depends(get_current_user_id),
):
    """
    Save the standard or priority availability profile.

    `data` is `{"working_days": [{"day": 0, "enabled": true, "start_time": "09:00",
    "end_time": "18:00", "buffer_before": 10, "buffer_after": 10}, ...]}`
    with day 0 = Monday.
    """
    try:
        profile = AvailabilityProfile.from_dict(request.data)
        get_connection_store().set_availability_profile(user_id, request.profile, profile)
        return SuccessResponse()
    except (ValueError, KeyError, TypeError) as e:
        raise HTTPException(status_code=400, detail=f"Invalid profile: {e}")
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to save: {e}")


@router.get("/connection")
async def get_connection(user_id: str = Depends(get_current_user_id)):
    """Get the user's Google Calendar connection settings (no tokens)."""
    connection = get_connection_store().get(user_id)
    if not connection:
        return {"connected": False}
    return connection.to_summary()


@router.post("/disconnect", response_model=SuccessResponse)
async def disconnect(user_id: str = Depends(get_current_user_id)):
    """Forget the user's Google tokens. Preferences and cache are kept."""
    get_connection_store().disconnect(user_id)
    return SuccessResponse()


@router.get("/calendars", response_model=list[CalendarResponse])
async def list_calendars(user_id: str = Depends(get_current_user_id)):
    """List the user's Google calendars, marking those selected as busy."""
    try:
        connection = get_connection_store().get(user_id)
        busy_ids = set(connection.effective_busy_calendar_ids) if connection else {"primary"}
        calendars = get_calendar_provider(user_id).list_calendars()
        return [
            CalendarResponse(
                id=c["id"],
                summary=c.get("summaryOverride") or c.get("summary", c["id"]),
                primary=bool(c.get("primary", False)),
                access_role=c.get("accessRole"),
                is_busy=c["id"] in busy_ids or (bool(c.get("primary")) and "primary" in busy_ids),
            )
            for c in calendars
        ]
    except CalendarNotConnectedError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except GoogleOAuthError as e:
        raise HTTPException(status_code=401, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to list calendars: {e}")


@router.get("/oauth/start")
async def start_google_oauth(user_id: str = Depends(get_current_user_id)):
    """
    Start Google OAuth flow.

    Returns the authorization URL to redirect the user to.
    """
    client = get_google_auth()
    if not client.is_configured():
        raise HTTPException(
            status_code=400,
            detail="Google OAuth not configured. Set GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET.",
        )
    return {"oauth_url": client.get_oauth_url(make_oauth_state(user_id))}


@router.get("/oauth/callback")
async def google_oauth_callback(code: str, state: str):
    """
    Handle Google OAuth callback.

    Exchanges the authorization code for tokens. The user is identified by
    the signed `state` issued by `/oauth/start`.
    """
    try:
        user_id = verify_oauth_state(state)
        get_google_auth().exchange_code(user_id, code)
        return {"status": "connected", "message": "Google Calendar connected"}
    except GoogleOAuthError as e:
        raise HTTPException(status_code=400, detail=str(e))
