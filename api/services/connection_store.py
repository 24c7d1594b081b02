"""
Google Calendar connection store for CareerVine.

One row per user holding OAuth tokens, the calendar timezone, the calendars
that count as busy, saved availability profiles and sync timestamps.
"""
import json
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from api.services.availability import PROFILE_TYPES, AvailabilityProfile
from api.services.calendar import parse_iso_datetime
from api.services.calendar_store import get_db_path, to_db_time

logger = logging.getLogger(__name__)

DEFAULT_BUSY_CALENDARS = ["primary"]


def _parse_optional_time(value: Optional[str]) -> Optional[datetime]:
    return parse_iso_datetime(value) if value else None


def _dump_optional_time(value: Optional[datetime]) -> Optional[str]:
    return to_db_time(value) if value else None


@dataclass
class CalendarConnection:
    """A user's link to their Google account."""
    user_id: str
    google_email: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_expiry: Optional[datetime] = None
    scopes: list[str] = field(default_factory=list)
    calendar_timezone: Optional[str] = None
    busy_calendar_ids: Optional[list[str]] = None
    availability_standard: Optional[dict] = None
    availability_priority: Optional[dict] = None
    calendar_sync_requested_at: Optional[datetime] = None
    calendar_last_synced_at: Optional[datetime] = None

    @property
    def is_connected(self) -> bool:
        """Check if tokens are present."""
        return bool(self.refresh_token or self.access_token)

    @property
    def effective_busy_calendar_ids(self) -> list[str]:
        """
        Selected busy calendars, defaulting to the primary calendar.

        The primary calendar's real id is the account email; it is reported
        as "primary", the id cached events carry.
        """
        ids: list[str] = []
        for calendar_id in self.busy_calendar_ids or DEFAULT_BUSY_CALENDARS:
            if self.google_email and calendar_id == self.google_email:
                calendar_id = "primary"
            if calendar_id not in ids:
                ids.append(calendar_id)
        return ids

    def get_profile(self, profile_type: str = "standard") -> Optional[AvailabilityProfile]:
        """
        Load a saved availability profile.

        A missing priority profile falls back to the standard one.
        """
        data = self.availability_priority if profile_type == "priority" else None
        data = data or self.availability_standard
        if not data:
            return None
        return AvailabilityProfile.from_dict(data)

    def to_summary(self) -> dict:
        """Connection details safe to return to the client (no tokens)."""
        return {
            "connected": self.is_connected,
            "google_email": self.google_email,
            "calendar_timezone": self.calendar_timezone,
            "busy_calendar_ids": self.effective_busy_calendar_ids,
            "availability_standard": self.availability_standard,
            "availability_priority": self.availability_priority,
            "calendar_last_synced_at": (
                self.calendar_last_synced_at.isoformat() if self.calendar_last_synced_at else None
            ),
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "CalendarConnection":
        """Create CalendarConnection from a SQLite row."""
        def load_json(value):
            return json.loads(value) if value else None

        return cls(
            user_id=row["user_id"],
            google_email=row["google_email"],
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            token_expiry=_parse_optional_time(row["token_expiry"]),
            scopes=load_json(row["scopes"]) or [],
            calendar_timezone=row["calendar_timezone"],
            busy_calendar_ids=load_json(row["busy_calendar_ids"]),
            availability_standard=load_json(row["availability_standard"]),
            availability_priority=load_json(row["availability_priority"]),
            calendar_sync_requested_at=_parse_optional_time(row["calendar_sync_requested_at"]),
            calendar_last_synced_at=_parse_optional_time(row["calendar_last_synced_at"]),
        )


class ConnectionStore:
    """SQLite-backed storage for calendar connections."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or get_db_path()
        self._init_db()

    def _init_db(self):
        """Create database tables if they don't exist."""
        conn = sqlite3.connect(self.db_path)
        try:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS calendar_connections (
                    user_id TEXT PRIMARY KEY,
                    google_email TEXT,
                    access_token TEXT,
                    refresh_token TEXT,
                    token_expiry TEXT,
                    scopes TEXT,
                    calendar_timezone TEXT,
                    busy_calendar_ids TEXT,
                    availability_standard TEXT,
                    availability_priority TEXT,
                    calendar_sync_requested_at TEXT,
                    calendar_last_synced_at TEXT,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
            """
            )
            conn.commit()
        finally:
            conn.close()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_row(self, conn: sqlite3.Connection, user_id: str):
        conn.execute(
            "INSERT OR IGNORE INTO calendar_connections (user_id) VALUES (?)", (user_id,)
        )

    def _set(self, user_id: str, **columns):
        """Write columns for a user, creating the row if needed."""
        assignments = ", ".join(f"{name} = ?" for name in columns)
        conn = self._get_connection()
        try:
            self._ensure_row(conn, user_id)
            conn.execute(
                f"UPDATE calendar_connections SET {assignments} WHERE user_id = ?",
                (*columns.values(), user_id),
            )
            conn.commit()
        finally:
            conn.close()

    def get(self, user_id: str) -> Optional[CalendarConnection]:
        """Get a user's connection, or None if they never connected."""
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                "SELECT * FROM calendar_connections WHERE user_id = ?", (user_id,)
            )
            row = cursor.fetchone()
            if row:
                return CalendarConnection.from_row(row)
            return None
        finally:
            conn.close()

    def list_connected(self) -> list[CalendarConnection]:
        """All connections that hold tokens."""
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                """
                SELECT * FROM calendar_connections
                WHERE refresh_token IS NOT NULL OR access_token IS NOT NULL
                ORDER BY user_id
            """
            )
            return [CalendarConnection.from_row(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def save_tokens(
        self,
        user_id: str,
        access_token: str,
        token_expiry: Optional[datetime] = None,
        refresh_token: Optional[str] = None,
        scopes: Optional[list[str]] = None,
        google_email: Optional[str] = None,
    ):
        """
        Store OAuth tokens.

        Google only returns a refresh token on first consent, so an absent
        one leaves the stored value untouched.
        """
        columns = {
            "access_token": access_token,
            "token_expiry": _dump_optional_time(token_expiry),
        }
        if refresh_token:
            columns["refresh_token"] = refresh_token
        if scopes is not None:
            columns["scopes"] = json.dumps(scopes)
        if google_email:
            columns["google_email"] = google_email
        self._set(user_id, **columns)

    def set_timezone(self, user_id: str, tz_name: str):
        self._set(user_id, calendar_timezone=tz_name)

    def set_busy_calendars(self, user_id: str, calendar_ids: list[str]):
        """Save which calendars count as busy for availability."""
        self._set(user_id, busy_calendar_ids=json.dumps(calendar_ids))

    def set_availability_profile(self, user_id: str, profile_type: str, profile: AvailabilityProfile):
        """Save the standard or priority availability profile."""
        if profile_type not in PROFILE_TYPES:
            raise ValueError(f"Unknown profile '{profile_type}', expected one of {', '.join(PROFILE_TYPES)}")
        self._set(user_id, **{f"availability_{profile_type}": json.dumps(profile.to_dict())})

    def claim_sync(self, user_id: str, cooldown_seconds: int, now: Optional[datetime] = None) -> Optional[datetime]:
        """
        Stamp the start of a sync unless one was requested within the cooldown.

        Returns:
            None if the claim succeeded, otherwise the previous request time
        """
        now = now or datetime.now(timezone.utc)
        conn = self._get_connection()
        try:
            self._ensure_row(conn, user_id)
            row = conn.execute(
                "SELECT calendar_sync_requested_at FROM calendar_connections WHERE user_id = ?",
                (user_id,),
            ).fetchone()
            previous = _parse_optional_time(row["calendar_sync_requested_at"])
            if previous and (now - previous).total_seconds() < cooldown_seconds:
                return previous

            conn.execute(
                "UPDATE calendar_connections SET calendar_sync_requested_at = ? WHERE user_id = ?",
                (to_db_time(now), user_id),
            )
            conn.commit()
            return None
        finally:
            conn.close()

    def mark_synced(self, user_id: str, synced_at: Optional[datetime] = None):
        """Record a completed sync."""
        self._set(user_id, calendar_last_synced_at=to_db_time(synced_at or datetime.now(timezone.utc)))

    def disconnect(self, user_id: str):
        """Forget tokens but keep preferences."""
        self._set(user_id, access_token=None, refresh_token=None, token_expiry=None)


# Singleton store
_connection_store: Optional[ConnectionStore] = None


def get_connection_store() -> ConnectionStore:
    """Get or create the singleton connection store."""
    global _connection_store
    if _connection_store is None:
        _connection_store = ConnectionStore()
    return _connection_store
