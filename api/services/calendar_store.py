"""
Calendar event cache for CareerVine.

Stores a local mirror of each user's remote calendar events, keyed by
(user_id, google_event_id).
"""
import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

from api.services.calendar import Attendee, CalendarEvent, parse_iso_datetime
from config.settings import settings

logger = logging.getLogger(__name__)

# Columns written on insert/upsert, in order
_EVENT_COLUMNS = (
    "user_id",
    "google_event_id",
    "calendar_id",
    "title",
    "description",
    "start_at",
    "end_at",
    "all_day",
    "location",
    "meet_link",
    "status",
    "transparency",
    "is_private",
    "recurring_event_id",
    "attendees",
    "source_gmail_thread_id",
    "source_gmail_message_id",
    "synced_at",
)

# Columns a sync may overwrite; source_gmail_* only come from create-event
_SYNC_UPDATE_COLUMNS = [
    c for c in _EVENT_COLUMNS
    if c not in ("user_id", "google_event_id", "source_gmail_thread_id", "source_gmail_message_id")
]


def get_db_path() -> str:
    """Get the path to the application database."""
    db_dir = Path(settings.data_path)
    db_dir.mkdir(parents=True, exist_ok=True)
    return str(db_dir / "careervine.db")


def to_db_time(dt: datetime) -> str:
    """Serialize a datetime as fixed-width UTC text so range queries compare correctly."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S+00:00")


def _event_from_row(row: sqlite3.Row) -> CalendarEvent:
    """Create CalendarEvent from a SQLite row."""
    attendees = [Attendee.from_dict(a) for a in json.loads(row["attendees"] or "[]")]
    return CalendarEvent(
        user_id=row["user_id"],
        google_event_id=row["google_event_id"],
        calendar_id=row["calendar_id"],
        title=row["title"],
        description=row["description"],
        start_at=parse_iso_datetime(row["start_at"]),
        end_at=parse_iso_datetime(row["end_at"]),
        all_day=bool(row["all_day"]),
        location=row["location"],
        meet_link=row["meet_link"],
        status=row["status"],
        transparency=row["transparency"],
        is_private=bool(row["is_private"]),
        recurring_event_id=row["recurring_event_id"],
        attendees=attendees,
        source_gmail_thread_id=row["source_gmail_thread_id"],
        source_gmail_message_id=row["source_gmail_message_id"],
        synced_at=parse_iso_datetime(row["synced_at"]),
    )


def _event_values(event: CalendarEvent) -> tuple:
    """Column values for an event, matching _EVENT_COLUMNS."""
    return (
        event.user_id,
        event.google_event_id,
        event.calendar_id,
        event.title,
        event.description,
        to_db_time(event.start_at),
        to_db_time(event.end_at),
        int(event.all_day),
        event.location,
        event.meet_link,
        event.status,
        event.transparency,
        int(event.is_private),
        event.recurring_event_id,
        json.dumps([a.to_dict() for a in event.attendees]),
        event.source_gmail_thread_id,
        event.source_gmail_message_id,
        to_db_time(event.synced_at),
    )


class CalendarEventStore:
    """
    SQLite-backed calendar event cache.

    Supports upsert by remote id, range queries, and removal of events that
    disappeared from the remote calendar.
    """

    def __init__(self, db_path: Optional[str] = None):
        """
        Initialize calendar event store.

        Args:
            db_path: Path to SQLite database (default from settings)
        """
        self.db_path = db_path or get_db_path()
        self._init_db()

    def _init_db(self):
        """Create database tables if they don't exist."""
        conn = sqlite3.connect(self.db_path)
        try:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS calendar_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    google_event_id TEXT NOT NULL,
                    calendar_id TEXT NOT NULL DEFAULT 'primary',
                    title TEXT,
                    description TEXT,
                    start_at TEXT NOT NULL,
                    end_at TEXT NOT NULL,
                    all_day INTEGER NOT NULL DEFAULT 0,
                    location TEXT,
                    meet_link TEXT,
                    status TEXT NOT NULL DEFAULT 'confirmed',
                    transparency TEXT NOT NULL DEFAULT 'opaque',
                    is_private INTEGER NOT NULL DEFAULT 0,
                    recurring_event_id TEXT,
                    attendees TEXT NOT NULL DEFAULT '[]',
                    source_gmail_thread_id TEXT,
                    source_gmail_message_id TEXT,
                    synced_at TEXT NOT NULL,
                    UNIQUE (user_id, google_event_id)
                )
            """
            )

            # Index for per-user range queries
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_calendar_events_user_start
                ON calendar_events(user_id, start_at)
            """
            )

            conn.commit()
            logger.info(f"Initialized calendar event cache at {self.db_path}")
        finally:
            conn.close()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def upsert(self, event: CalendarEvent) -> CalendarEvent:
        """
        Insert an event or overwrite the cached copy with the same remote id.

        Gmail source links recorded at creation are preserved.
        """
        placeholders = ", ".join("?" for _ in _EVENT_COLUMNS)
        updates = ", ".join(f"{c} = excluded.{c}" for c in _SYNC_UPDATE_COLUMNS)
        conn = self._get_connection()
        try:
            conn.execute(
                f"""
                INSERT INTO calendar_events ({", ".join(_EVENT_COLUMNS)})
                VALUES ({placeholders})
                ON CONFLICT(user_id, google_event_id) DO UPDATE SET {updates}
            """,
                _event_values(event),
            )
            conn.commit()
            return event
        finally:
            conn.close()

    def upsert_many(self, events: Iterable[CalendarEvent]) -> int:
        """Upsert several events. Returns the number written."""
        count = 0
        for event in events:
            self.upsert(event)
            count += 1
        return count

    def get(self, user_id: str, google_event_id: str) -> Optional[CalendarEvent]:
        """Get a cached event by remote id."""
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                "SELECT * FROM calendar_events WHERE user_id = ? AND google_event_id = ?",
                (user_id, google_event_id),
            )
            row = cursor.fetchone()
            if row:
                return _event_from_row(row)
            return None
        finally:
            conn.close()

    def list_events(
        self,
        user_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[CalendarEvent]:
        """
        List cached events whose start falls in [start, end], oldest first.

        Args:
            user_id: Owner of the events
            start: Earliest start time (inclusive, optional)
            end: Latest start time (inclusive, optional)
        """
        query = "SELECT * FROM calendar_events WHERE user_id = ?"
        params: list = [user_id]
        if start:
            query += " AND start_at >= ?"
            params.append(to_db_time(start))
        if end:
            query += " AND start_at <= ?"
            params.append(to_db_time(end))
        query += " ORDER BY start_at ASC"

        conn = self._get_connection()
        try:
            cursor = conn.execute(query, params)
            return [_event_from_row(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def list_overlapping(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
        calendar_ids: Optional[list[str]] = None,
    ) -> list[CalendarEvent]:
        """
        List cached events overlapping [start, end).

        Args:
            user_id: Owner of the events
            start: Range start
            end: Range end (exclusive)
            calendar_ids: Restrict to these calendars (all if None)
        """
        query = "SELECT * FROM calendar_events WHERE user_id = ? AND start_at < ? AND end_at > ?"
        params: list = [user_id, to_db_time(end), to_db_time(start)]
        if calendar_ids is not None:
            if not calendar_ids:
                return []
            query += f" AND calendar_id IN ({', '.join('?' for _ in calendar_ids)})"
            params.extend(calendar_ids)
        query += " ORDER BY start_at ASC"

        conn = self._get_connection()
        try:
            cursor = conn.execute(query, params)
            return [_event_from_row(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def update_fields(self, user_id: str, google_event_id: str, **fields) -> bool:
        """
        Update selected columns of a cached event.

        Accepts title, description, start_at, end_at, location, meet_link.
        synced_at is always refreshed.

        Returns:
            True if a row was updated
        """
        allowed = {"title", "description", "start_at", "end_at", "location", "meet_link"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Cannot update cached columns: {', '.join(sorted(unknown))}")

        values = {}
        for name, value in fields.items():
            values[name] = to_db_time(value) if isinstance(value, datetime) else value
        values["synced_at"] = to_db_time(datetime.now(timezone.utc))

        assignments = ", ".join(f"{name} = ?" for name in values)
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                f"UPDATE calendar_events SET {assignments} WHERE user_id = ? AND google_event_id = ?",
                (*values.values(), user_id, google_event_id),
            )
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    def delete(self, user_id: str, google_event_id: str) -> bool:
        """Delete a cached event. Returns True if a row was removed."""
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                "DELETE FROM calendar_events WHERE user_id = ? AND google_event_id = ?",
                (user_id, google_event_id),
            )
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    def delete_missing(
        self,
        user_id: str,
        calendar_id: str,
        start: datetime,
        end: datetime,
        keep_ids: set[str],
    ) -> int:
        """
        Remove cached events in a synced window that the remote no longer has.

        Only rows on `calendar_id` overlapping [start, end) are considered.

        Returns:
            Number of rows deleted
        """
        stale = [
            e.google_event_id
            for e in self.list_overlapping(user_id, start, end, calendar_ids=[calendar_id])
            if e.google_event_id not in keep_ids
        ]
        if not stale:
            return 0

        conn = self._get_connection()
        try:
            conn.executemany(
                "DELETE FROM calendar_events WHERE user_id = ? AND google_event_id = ?",
                [(user_id, event_id) for event_id in stale],
            )
            conn.commit()
            logger.info(f"Removed {len(stale)} stale events for user {user_id} on {calendar_id}")
            return len(stale)
        finally:
            conn.close()

    def count(self, user_id: Optional[str] = None) -> int:
        """Count cached events, optionally for one user."""
        conn = self._get_connection()
        try:
            if user_id:
                cursor = conn.execute(
                    "SELECT COUNT(*) FROM calendar_events WHERE user_id = ?", (user_id,)
                )
            else:
                cursor = conn.execute("SELECT COUNT(*) FROM calendar_events")
            return cursor.fetchone()[0]
        finally:
            conn.close()


# Singleton store
_calendar_event_store: Optional[CalendarEventStore] = None


def get_calendar_event_store() -> CalendarEventStore:
    """Get or create the singleton calendar event store."""
    global _calendar_event_store
    if _calendar_event_store is None:
        _calendar_event_store = CalendarEventStore()
    return _calendar_event_store
