"""
Pytest configuration and shared fixtures for CareerVine tests.

Test Categories:
- unit: Fast tests with no external dependencies
- integration: Tests requiring Google credentials or network access

Run categories:
- pytest -m unit              # Fast unit tests only
- pytest -m "not integration" # Skip integration tests
- pytest                      # All tests
"""
import os
import tempfile

# Keep the default database out of the working tree
os.environ.setdefault("CAREERVINE_DATA_PATH", tempfile.mkdtemp(prefix="careervine-test-"))

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from api.services.calendar import CalendarAPIError, CalendarProvider
from api.services.calendar_store import CalendarEventStore
from api.services.connection_store import ConnectionStore

USER_ID = "user-1"


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Fast unit tests")
    config.addinivalue_line("markers", "integration: Integration tests (Google credentials required)")


def google_event(event_id: str, start: datetime, end: datetime, **extra) -> dict:
    """Build a Google Calendar API event resource."""
    item = {
        "id": event_id,
        "status": "confirmed",
        "summary": f"Event {event_id}",
        "start": {"dateTime": start.isoformat()},
        "end": {"dateTime": end.isoformat()},
    }
    item.update(extra)
    return item


class FakeCalendarProvider(CalendarProvider):
    """In-memory stand-in for the Google Calendar API."""

    def __init__(self, events: dict = None, calendars: list = None):
        self.events = events or {}  # calendar_id -> list of event resources
        self.calendars = calendars or [
            {"id": "me@example.com", "summary": "Me", "primary": True, "accessRole": "owner"},
        ]
        self.fail = False
        self.inserted = []
        self.patched = []
        self.deleted = []
        self.list_calls = []

    def _check(self):
        if self.fail:
            raise CalendarAPIError("Google Calendar API error (HTTP 500): backend error")

    def list_events(self, calendar_id, time_min, time_max):
        self._check()
        self.list_calls.append((calendar_id, time_min, time_max))
        return list(self.events.get(calendar_id, []))

    def list_calendars(self):
        self._check()
        return list(self.calendars)

    def insert_event(self, body, with_meet=False, calendar_id="primary"):
        self._check()
        event = dict(body)
        event["id"] = f"created{len(self.inserted) + 1}"
        event["status"] = "confirmed"
        event["htmlLink"] = f"https://calendar.google.com/event?eid={event['id']}"
        if with_meet:
            event["hangoutLink"] = "https://meet.google.com/abc-defg-hij"
        self.inserted.append((calendar_id, event, with_meet))
        return event

    def patch_event(self, event_id, body, calendar_id="primary"):
        self._check()
        self.patched.append((calendar_id, event_id, body))
        return {"id": event_id, **body}

    def delete_event(self, event_id, calendar_id="primary"):
        self._check()
        self.deleted.append((calendar_id, event_id))


@pytest.fixture
def temp_db():
    """Create a temporary database for testing."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        yield f.name
    os.unlink(f.name)


@pytest.fixture
def event_store(temp_db):
    return CalendarEventStore(db_path=temp_db)


@pytest.fixture
def connection_store(temp_db):
    return ConnectionStore(db_path=temp_db)


@pytest.fixture
def connected_user(connection_store):
    """A user with stored Google tokens and a UTC calendar."""
    connection_store.save_tokens(
        USER_ID,
        access_token="access-token",
        refresh_token="refresh-token",
        token_expiry=datetime.now(timezone.utc) + timedelta(hours=1),
        google_email="me@example.com",
    )
    connection_store.set_timezone(USER_ID, "UTC")
    return USER_ID


@pytest.fixture
def fake_provider():
    return FakeCalendarProvider()


@pytest.fixture
def client(event_store, connection_store, fake_provider):
    """TestClient with stores and the Google provider swapped for test doubles."""
    from fastapi.testclient import TestClient
    from api.main import app

    with patch("api.routes.calendar.get_calendar_event_store", return_value=event_store), \
            patch("api.routes.calendar.get_connection_store", return_value=connection_store), \
            patch("api.routes.calendar.get_calendar_provider", return_value=fake_provider):
        yield TestClient(app)


@pytest.fixture
def auth_headers():
    return {"X-User-Id": USER_ID}
