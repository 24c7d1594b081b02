"""
Calendar sync for CareerVine.

Pulls a window of remote events and reconciles them into the local cache:
upsert by remote id, optionally delete what the remote no longer has, and
record the sync time. Rate-limited per user by a cooldown.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

from api.services.calendar import CalendarProvider, parse_google_event
from api.services.calendar_store import CalendarEventStore, get_calendar_event_store
from api.services.connection_store import ConnectionStore, get_connection_store
from api.services.google_auth import CalendarNotConnectedError
from config.settings import settings

logger = logging.getLogger(__name__)


class SyncRateLimitedError(Exception):
    """A sync for this user ran too recently."""

    def __init__(self, retry_after: int):
        self.retry_after = retry_after
        super().__init__(f"Calendar synced recently, try again in {retry_after}s")


@dataclass
class SyncResult:
    """Outcome of one sync run."""
    user_id: str
    window_start: datetime
    window_end: datetime
    calendars: list[str] = field(default_factory=list)
    fetched: int = 0
    upserted: int = 0
    deleted: int = 0
    skipped: int = 0
    cancelled: int = 0
    synced_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "window_start": self.window_start.isoformat(),
            "window_end": self.window_end.isoformat(),
            "calendars": self.calendars,
            "fetched": self.fetched,
            "upserted": self.upserted,
            "deleted": self.deleted,
            "skipped": self.skipped,
            "cancelled": self.cancelled,
            "synced_at": self.synced_at.isoformat() if self.synced_at else None,
        }


def default_sync_window(now: Optional[datetime] = None) -> tuple[datetime, datetime]:
    """Trailing lookback plus upcoming horizon around now."""
    now = now or datetime.now(timezone.utc)
    return (
        now - timedelta(days=settings.calendar_sync_days_back),
        now + timedelta(days=settings.calendar_sync_days_forward),
    )


def sync_calendar(
    user_id: str,
    provider: CalendarProvider,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    event_store: Optional[CalendarEventStore] = None,
    connection_store: Optional[ConnectionStore] = None,
    delete_missing: Optional[bool] = None,
    enforce_cooldown: bool = True,
) -> SyncResult:
    """
    Reconcile the cache with the remote calendar for one user.

    Fetches `primary` plus every selected busy calendar. Writes already made
    are kept if a later remote call fails.

    Args:
        user_id: User to sync
        provider: Remote calendar client for the user
        start: Window start (default: lookback from now)
        end: Window end (default: horizon from now)
        delete_missing: Remove cached events absent remotely (default from settings)
        enforce_cooldown: Reject if the previous sync is within the cooldown

    Raises:
        CalendarNotConnectedError: User has no Google connection
        SyncRateLimitedError: Synced within the cooldown window
        CalendarAPIError: Remote API failure
        ValueError: end is not after start
    """
    event_store = event_store or get_calendar_event_store()
    connection_store = connection_store or get_connection_store()
    if delete_missing is None:
        delete_missing = settings.calendar_sync_delete_missing

    default_start, default_end = default_sync_window()
    start = start or default_start
    end = end or default_end
    if end <= start:
        raise ValueError("Sync window end must be after start")

    connection = connection_store.get(user_id)
    if not connection or not connection.is_connected:
        raise CalendarNotConnectedError("Google Calendar is not connected")

    now = datetime.now(timezone.utc)
    if enforce_cooldown:
        cooldown = settings.calendar_sync_cooldown_seconds
        previous = connection_store.claim_sync(user_id, cooldown, now=now)
        if previous is not None:
            retry_after = max(1, int(cooldown - (now - previous).total_seconds()))
            logger.info(f"Sync for user {user_id} rejected, last requested at {previous.isoformat()}")
            raise SyncRateLimitedError(retry_after)

    calendars = ["primary"] + [c for c in connection.effective_busy_calendar_ids if c != "primary"]
    result = SyncResult(user_id=user_id, window_start=start, window_end=end, calendars=calendars)

    for calendar_id in calendars:
        items = provider.list_events(calendar_id, start, end)
        result.fetched += len(items)

        seen: set[str] = set()
        for item in items:
            event = parse_google_event(
                item, user_id, calendar_id=calendar_id, fallback_tz=connection.calendar_timezone
            )
            if event is None:
                result.skipped += 1
                continue
            # Cancelled events are kept with their status so they stop blocking time
            if event.status == "cancelled":
                result.cancelled += 1
            event.synced_at = now
            event_store.upsert(event)
            seen.add(event.google_event_id)
            result.upserted += 1

        if delete_missing:
            result.deleted += event_store.delete_missing(user_id, calendar_id, start, end, seen)

    connection_store.mark_synced(user_id, now)
    result.synced_at = now
    logger.info(
        f"Calendar sync for user {user_id}: {result.upserted} upserted, "
        f"{result.deleted} deleted, {result.skipped} skipped"
    )
    return result
