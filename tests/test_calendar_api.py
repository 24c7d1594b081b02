"""
Tests for the calendar API endpoints.

Acceptance Criteria:
- Every endpoint requires an authenticated user
- Cached events are listed with private events shown as "Busy"
- A second sync inside the cooldown returns 429 with Retry-After
- Availability reports not-connected and never-synced states
- Availability excludes busy time plus buffers
- Event mutations go through the remote calendar and update the cache
"""
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

from conftest import USER_ID, google_event

from api.services.calendar import CalendarEvent
from api.services.google_auth import GoogleOAuthError, make_oauth_state

pytestmark = pytest.mark.unit

T0 = datetime(2030, 1, 7, 10, tzinfo=timezone.utc)  # Monday
DAY_RANGE = {"start": "2030-01-07T00:00:00Z", "end": "2030-01-08T00:00:00Z"}


def cache_event(event_store, event_id, start, minutes=60, **kwargs):
    event_store.upsert(CalendarEvent(
        user_id=USER_ID,
        google_event_id=event_id,
        start_at=start,
        end_at=start + timedelta(minutes=minutes),
        **kwargs,
    ))


class TestAuthentication:
    """Test that endpoints require a user."""

    @pytest.mark.parametrize("method,path", [
        ("get", "/api/calendar/events"),
        ("post", "/api/calendar/sync"),
        ("get", "/api/calendar/availability"),
        ("get", "/api/calendar/connection"),
        ("delete", "/api/calendar/events/evt1"),
    ])
    def test_missing_user_is_unauthorized(self, client, method, path):
        response = getattr(client, method)(path)
        assert response.status_code == 401

    def test_blank_user_is_unauthorized(self, client):
        response = client.get("/api/calendar/events", headers={"X-User-Id": "  "})
        assert response.status_code == 401


class TestListEvents:
    """Test GET /api/calendar/events."""

    def test_lists_cached_events(self, client, auth_headers, event_store, connected_user):
        cache_event(event_store, "b", T0 + timedelta(hours=2), title="Lunch")
        cache_event(event_store, "a", T0, title="Standup", location="Room 1")

        response = client.get("/api/calendar/events", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 2
        assert [e["google_event_id"] for e in data["events"]] == ["a", "b"]
        assert data["events"][0]["title"] == "Standup"
        assert data["events"][0]["location"] == "Room 1"
        assert data["events"][0]["start_formatted"] == "Monday, January 07, 2030 at 10:00 AM"

    def test_private_event_shows_busy(self, client, auth_headers, event_store, connected_user):
        cache_event(event_store, "p", T0, is_private=True)

        event = client.get("/api/calendar/events", headers=auth_headers).json()["events"][0]

        assert event["title"] == "Busy"
        assert event["description"] is None
        assert event["location"] is None
        assert event["attendees"] == []

    def test_cancelled_events_are_hidden(self, client, auth_headers, event_store, connected_user):
        cache_event(event_store, "live", T0)
        cache_event(event_store, "gone", T0 + timedelta(hours=2), status="cancelled")

        data = client.get("/api/calendar/events", headers=auth_headers).json()

        assert [e["google_event_id"] for e in data["events"]] == ["live"]

    def test_filters_by_range(self, client, auth_headers, event_store, connected_user):
        cache_event(event_store, "in", T0)
        cache_event(event_store, "out", T0 + timedelta(days=3))

        response = client.get("/api/calendar/events", params=DAY_RANGE, headers=auth_headers)

        assert [e["google_event_id"] for e in response.json()["events"]] == ["in"]

    def test_other_users_events_are_hidden(self, client, event_store, connected_user):
        cache_event(event_store, "a", T0)

        response = client.get("/api/calendar/events", headers={"X-User-Id": "someone-else"})

        assert response.json()["count"] == 0


class TestSync:
    """Test POST /api/calendar/sync."""

    def test_sync_populates_cache(self, client, auth_headers, event_store, connected_user, fake_provider):
        now = datetime.now(timezone.utc)
        fake_provider.events["primary"] = [google_event("a", now + timedelta(hours=1), now + timedelta(hours=2))]

        response = client.post("/api/calendar/sync", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["upserted"] == 1
        assert event_store.get(USER_ID, "a") is not None

    def test_second_sync_is_rate_limited(self, client, auth_headers, connected_user):
        first = client.post("/api/calendar/sync", headers=auth_headers)
        second = client.post("/api/calendar/sync", headers=auth_headers)

        assert first.status_code == 200
        assert second.status_code == 429
        assert int(second.headers["Retry-After"]) > 0
        assert second.json()["retry_after"] == int(second.headers["Retry-After"])

    def test_not_connected(self, client, auth_headers):
        response = client.post("/api/calendar/sync", headers=auth_headers)
        assert response.status_code == 400

    def test_remote_failure(self, client, auth_headers, connected_user, fake_provider):
        fake_provider.fail = True

        response = client.post("/api/calendar/sync", headers=auth_headers)

        assert response.status_code == 500

    def test_inverted_window(self, client, auth_headers, connected_user):
        response = client.post(
            "/api/calendar/sync",
            params={"start": DAY_RANGE["end"], "end": DAY_RANGE["start"]},
            headers=auth_headers,
        )
        assert response.status_code == 400


class TestAvailability:
    """Test GET /api/calendar/availability."""

    def test_not_connected(self, client, auth_headers):
        response = client.get("/api/calendar/availability", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["not_connected"] is True
        assert data["days"] == []

    def test_never_synced(self, client, auth_headers, connected_user):
        response = client.get("/api/calendar/availability", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["never_synced"] is True

    def test_excludes_busy_time_and_buffers(
        self, client, auth_headers, event_store, connection_store, connected_user
    ):
        connection_store.mark_synced(USER_ID)
        cache_event(event_store, "meeting", T0)

        response = client.get("/api/calendar/availability", params=DAY_RANGE, headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["timezone"] == "UTC"
        assert len(data["days"]) == 1
        slots = data["days"][0]["slots"]
        assert slots[0] == "9:00 AM - 9:30 AM"
        assert slots[1] == "11:15 AM - 11:45 AM"
        assert "9:30 AM - 10:00 AM" not in slots
        assert len(slots) == 14
        assert data["text"].startswith("Mon, Jan 7: 9:00 AM - 9:30 AM, 11:15 AM")

    def test_fully_busy_day(self, client, auth_headers, event_store, connection_store, connected_user):
        connection_store.mark_synced(USER_ID)
        cache_event(event_store, "all-day-meeting", T0.replace(hour=8), minutes=11 * 60)

        data = client.get("/api/calendar/availability", params=DAY_RANGE, headers=auth_headers).json()

        assert data["days"][0]["slots"] == []
        assert data["text"] == ""

    def test_ignores_unselected_calendars(
        self, client, auth_headers, event_store, connection_store, connected_user
    ):
        connection_store.mark_synced(USER_ID)
        cache_event(event_store, "other", T0, calendar_id="holidays@example.com")

        data = client.get("/api/calendar/availability", params=DAY_RANGE, headers=auth_headers).json()

        assert "10:00 AM - 10:30 AM" in data["days"][0]["slots"]

    def test_primary_selected_by_its_real_id_still_blocks(
        self, client, auth_headers, connection_store, connected_user
    ):
        """Busy ids saved from /calendars name the primary by email; created events are cached as primary."""
        connection_store.mark_synced(USER_ID)
        calendars = client.get("/api/calendar/calendars", headers=auth_headers).json()
        primary_id = next(c["id"] for c in calendars if c["primary"])
        client.post(
            "/api/calendar/busy-calendars", json={"busy_calendar_ids": [primary_id]}, headers=auth_headers
        )
        created = client.post(
            "/api/calendar/create-event",
            json={"summary": "Offsite", "start_time": "2030-01-07T09:00:00Z", "end_time": "2030-01-07T18:00:00Z"},
            headers=auth_headers,
        )
        assert created.status_code == 200

        data = client.get("/api/calendar/availability", params=DAY_RANGE, headers=auth_headers).json()

        assert primary_id == "me@example.com"
        assert data["days"][0]["slots"] == []

    def test_query_overrides(self, client, auth_headers, connection_store, connected_user):
        connection_store.mark_synced(USER_ID)

        response = client.get(
            "/api/calendar/availability",
            params={**DAY_RANGE, "window_start": "13:00", "window_end": "15:00", "duration": 60},
            headers=auth_headers,
        )

        assert response.json()["days"][0]["slots"] == ["1:00 PM - 2:00 PM", "2:00 PM - 3:00 PM"]

    def test_uses_saved_priority_profile(self, client, auth_headers, connection_store, connected_user):
        connection_store.mark_synced(USER_ID)
        saved = client.post(
            "/api/calendar/availability-profile",
            json={"profile": "priority", "data": {"working_days": [
                {"day": 0, "enabled": True, "start_time": "07:00", "end_time": "08:00",
                 "buffer_before": 0, "buffer_after": 0},
            ]}},
            headers=auth_headers,
        )
        assert saved.status_code == 200

        data = client.get(
            "/api/calendar/availability",
            params={**DAY_RANGE, "profile": "priority", "duration": 60},
            headers=auth_headers,
        ).json()

        assert data["profile"] == "priority"
        assert data["days"][0]["slots"] == ["7:00 AM - 8:00 AM"]

    def test_unknown_profile(self, client, auth_headers, connected_user):
        response = client.get("/api/calendar/availability", params={"profile": "vip"}, headers=auth_headers)
        assert response.status_code == 400

    def test_bad_window(self, client, auth_headers, connection_store, connected_user):
        connection_store.mark_synced(USER_ID)

        response = client.get(
            "/api/calendar/availability",
            params={**DAY_RANGE, "window_start": "18:00", "window_end": "09:00"},
            headers=auth_headers,
        )

        assert response.status_code == 400


class TestSettingsEndpoints:
    """Test connection preference endpoints."""

    def test_save_busy_calendars(self, client, auth_headers, connection_store, connected_user):
        response = client.post(
            "/api/calendar/busy-calendars",
            json={"busy_calendar_ids": ["primary", "team@example.com"]},
            headers=auth_headers,
        )

        assert response.status_code == 200
        assert connection_store.get(USER_ID).busy_calendar_ids == ["primary", "team@example.com"]

    def test_invalid_profile_payload(self, client, auth_headers):
        response = client.post(
            "/api/calendar/availability-profile",
            json={"profile": "standard", "data": {"nonsense": True}},
            headers=auth_headers,
        )
        assert response.status_code == 400

    def test_connection_summary(self, client, auth_headers, connected_user):
        data = client.get("/api/calendar/connection", headers=auth_headers).json()

        assert data["connected"] is True
        assert data["google_email"] == "me@example.com"
        assert "access_token" not in data

    def test_connection_unknown_user(self, client, auth_headers):
        assert client.get("/api/calendar/connection", headers=auth_headers).json() == {"connected": False}

    def test_disconnect(self, client, auth_headers, connection_store, connected_user):
        response = client.post("/api/calendar/disconnect", headers=auth_headers)

        assert response.status_code == 200
        assert not connection_store.get(USER_ID).is_connected

    def test_list_calendars(self, client, auth_headers, connected_user, fake_provider):
        fake_provider.calendars.append({"id": "team@example.com", "summary": "Team", "accessRole": "reader"})

        data = client.get("/api/calendar/calendars", headers=auth_headers).json()

        assert [c["id"] for c in data] == ["me@example.com", "team@example.com"]
        assert data[0]["is_busy"] is True
        assert data[1]["is_busy"] is False


class TestEventMutations:
    """Test create, update and delete endpoints."""

    def test_create_event_with_meet(self, client, auth_headers, event_store, connected_user, fake_provider):
        response = client.post(
            "/api/calendar/create-event",
            json={
                "summary": "Intro call",
                "start_time": "2030-01-07T15:00:00Z",
                "end_time": "2030-01-07T15:30:00Z",
                "attendee_emails": ["sam@example.com"],
                "conference_type": "meet",
                "source_thread_id": "thread-1",
            },
            headers=auth_headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["meet_link"] == "https://meet.google.com/abc-defg-hij"

        event = event_store.get(USER_ID, data["google_event_id"])
        assert event.title == "Intro call"
        assert event.source_gmail_thread_id == "thread-1"
        assert fake_provider.inserted[0][1]["start"]["timeZone"] == "UTC"

    def test_create_event_end_before_start(self, client, auth_headers, connected_user, fake_provider):
        response = client.post(
            "/api/calendar/create-event",
            json={"summary": "Bad", "start_time": "2030-01-07T15:00:00Z", "end_time": "2030-01-07T14:00:00Z"},
            headers=auth_headers,
        )

        assert response.status_code == 400
        assert fake_provider.inserted == []

    def test_create_event_missing_fields(self, client, auth_headers):
        response = client.post("/api/calendar/create-event", json={"summary": "x"}, headers=auth_headers)
        assert response.status_code == 400

    def test_create_event_remote_failure(self, client, auth_headers, event_store, connected_user, fake_provider):
        fake_provider.fail = True

        response = client.post(
            "/api/calendar/create-event",
            json={"summary": "Call", "start_time": "2030-01-07T15:00:00Z", "end_time": "2030-01-07T15:30:00Z"},
            headers=auth_headers,
        )

        assert response.status_code == 500
        assert event_store.count(USER_ID) == 0

    def test_update_event(self, client, auth_headers, event_store, connected_user, fake_provider):
        cache_event(event_store, "evt1", T0, title="Old")

        response = client.patch(
            "/api/calendar/events/evt1", json={"summary": "New"}, headers=auth_headers
        )

        assert response.status_code == 200
        assert event_store.get(USER_ID, "evt1").title == "New"
        assert fake_provider.patched[0][2] == {"summary": "New"}

    def test_update_event_uses_calendar_timezone(
        self, client, auth_headers, event_store, connection_store, connected_user, fake_provider
    ):
        connection_store.set_timezone(USER_ID, "Europe/London")
        cache_event(event_store, "evt1", T0)

        response = client.patch(
            "/api/calendar/events/evt1",
            json={"start_time": "2030-01-07T10:00:00Z", "end_time": "2030-01-07T11:00:00Z"},
            headers=auth_headers,
        )

        assert response.status_code == 200
        body = fake_provider.patched[0][2]
        assert body["start"]["timeZone"] == "Europe/London"
        assert body["end"]["timeZone"] == "Europe/London"

    def test_update_event_without_fields(self, client, auth_headers, connected_user):
        response = client.patch("/api/calendar/events/evt1", json={}, headers=auth_headers)
        assert response.status_code == 400

    def test_delete_event(self, client, auth_headers, event_store, connected_user, fake_provider):
        cache_event(event_store, "evt1", T0)

        response = client.delete("/api/calendar/events/evt1", headers=auth_headers)

        assert response.status_code == 200
        assert event_store.get(USER_ID, "evt1") is None
        assert fake_provider.deleted == [("primary", "evt1")]

    def test_token_failure_is_unauthorized(self, client, auth_headers, event_store, connected_user, fake_provider):
        """A token endpoint that answers with an HTML page surfaces as 401, not a server error."""
        cache_event(event_store, "evt1", T0)
        error = GoogleOAuthError("Token request failed: HTTP 502 with a non-JSON body")

        with patch.object(fake_provider, "delete_event", side_effect=error):
            response = client.delete("/api/calendar/events/evt1", headers=auth_headers)

        assert response.status_code == 401
        assert event_store.get(USER_ID, "evt1") is not None


class TestOAuthEndpoints:
    """Test the OAuth start and callback endpoints."""

    def test_start_not_configured(self, client, auth_headers):
        with patch("api.routes.calendar.get_google_auth") as mock_auth:
            mock_auth.return_value.is_configured.return_value = False
            response = client.get("/api/calendar/oauth/start", headers=auth_headers)

        assert response.status_code == 400

    def test_start_returns_url(self, client, auth_headers):
        with patch("api.routes.calendar.get_google_auth") as mock_auth:
            mock_auth.return_value.is_configured.return_value = True
            mock_auth.return_value.get_oauth_url.return_value = "https://accounts.google.com/o/oauth2/v2/auth?x=1"
            response = client.get("/api/calendar/oauth/start", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["oauth_url"].startswith("https://accounts.google.com/")
        state = mock_auth.return_value.get_oauth_url.call_args.args[0]
        assert state.startswith(f"{USER_ID}:")

    def test_callback_exchanges_code(self, client):
        mock_client = MagicMock()
        with patch("api.routes.calendar.get_google_auth", return_value=mock_client):
            response = client.get(
                "/api/calendar/oauth/callback",
                params={"code": "code-1", "state": make_oauth_state(USER_ID)},
            )

        assert response.status_code == 200
        mock_client.exchange_code.assert_called_once_with(USER_ID, "code-1")

    def test_callback_rejects_bad_state(self, client):
        with patch("api.routes.calendar.get_google_auth") as mock_auth:
            response = client.get(
                "/api/calendar/oauth/callback",
                params={"code": "code-1", "state": "user-1:forged"},
            )

        assert response.status_code == 400
        mock_auth.return_value.exchange_code.assert_not_called()

    def test_callback_rejects_expired_state(self, client):
        stale = make_oauth_state(USER_ID, issued_at=datetime.now(timezone.utc) - timedelta(hours=1))
        with patch("api.routes.calendar.get_google_auth") as mock_auth:
            response = client.get(
                "/api/calendar/oauth/callback",
                params={"code": "code-1", "state": stale},
            )

        assert response.status_code == 400
        assert "expired" in response.json()["detail"]
        mock_auth.return_value.exchange_code.assert_not_called()


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["service"] == "careervine"
