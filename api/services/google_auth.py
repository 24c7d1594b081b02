"""
Google OAuth for CareerVine calendar access.

Builds the consent URL, exchanges callback codes for tokens, refreshes
expired access tokens and produces google-auth Credentials for API clients.
"""
import hashlib
import hmac
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import urlencode

import httpx
from google.oauth2.credentials import Credentials

from api.services.connection_store import ConnectionStore, get_connection_store
from config.settings import settings

logger = logging.getLogger(__name__)

AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"
USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
TIMEZONE_SETTING_URL = "https://www.googleapis.com/calendar/v3/users/me/settings/timezone"

SCOPES = [
    "openid",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/calendar",
]

# Refresh this long before the recorded expiry
EXPIRY_MARGIN = timedelta(minutes=2)

# Consent must complete within this window after /oauth/start
OAUTH_STATE_TTL = timedelta(minutes=10)
STATE_CLOCK_SKEW = timedelta(minutes=1)


class GoogleOAuthError(Exception):
    """OAuth exchange or refresh failed."""
    pass


class CalendarNotConnectedError(Exception):
    """The user has not connected a Google account."""
    pass


class GoogleOAuthClient:
    """Google OAuth client storing tokens per user."""

    def __init__(self, store: Optional[ConnectionStore] = None):
        self.store = store or get_connection_store()
        self._http_client: Optional[httpx.Client] = None

    @property
    def http_client(self) -> httpx.Client:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.Client(timeout=30.0)
        return self._http_client

    def close(self):
        """Close HTTP client."""
        if self._http_client:
            self._http_client.close()
            self._http_client = None

    def is_configured(self) -> bool:
        """Check if Google OAuth is configured."""
        return settings.google_oauth_enabled

    def get_oauth_url(self, state: Optional[str] = None) -> str:
        """Generate OAuth authorization URL."""
        params = {
            "client_id": settings.google_client_id,
            "redirect_uri": settings.google_redirect_uri,
            "response_type": "code",
            "scope": " ".join(SCOPES),
            "access_type": "offline",
            "prompt": "consent",
            "include_granted_scopes": "true",
        }
        if state:
            params["state"] = state
        return f"{AUTH_URL}?{urlencode(params)}"

    def _token_request(self, data: dict) -> dict:
        """POST to the token endpoint and return the JSON body."""
        try:
            response = self.http_client.post(TOKEN_URL, data=data)
        except httpx.HTTPError as e:
            raise GoogleOAuthError(f"Token request failed: {e}")

        try:
            payload = response.json()
        except ValueError:
            raise GoogleOAuthError(f"Token request failed: HTTP {response.status_code} with a non-JSON body")
        if not isinstance(payload, dict):
            raise GoogleOAuthError(f"Token request failed: unexpected response (HTTP {response.status_code})")
        if response.status_code != 200 or "access_token" not in payload:
            error = payload.get("error_description") or payload.get("error") or f"HTTP {response.status_code}"
            raise GoogleOAuthError(error)
        return payload

    def exchange_code(self, user_id: str, code: str) -> dict:
        """
        Exchange OAuth code for tokens and store them on the user's connection.

        Also records the account email and calendar timezone when Google
        returns them.

        Returns the token response.
        """
        data = self._token_request({
            "code": code,
            "client_id": settings.google_client_id,
            "client_secret": settings.google_client_secret,
            "redirect_uri": settings.google_redirect_uri,
            "grant_type": "authorization_code",
        })

        access_token = data["access_token"]
        self.store.save_tokens(
            user_id,
            access_token=access_token,
            token_expiry=_expiry_from(data),
            refresh_token=data.get("refresh_token"),
            scopes=data.get("scope", "").split() or None,
            google_email=self._fetch_email(access_token),
        )

        tz_name = self._fetch_timezone(access_token)
        if tz_name:
            self.store.set_timezone(user_id, tz_name)

        logger.info(f"Stored Google tokens for user {user_id}")
        return data

    def _get_json(self, url: str, access_token: str) -> Optional[dict]:
        try:
            response = self.http_client.get(url, headers={"Authorization": f"Bearer {access_token}"})
            if response.status_code == 200:
                return response.json()
            logger.warning(f"GET {url} returned HTTP {response.status_code}")
        except httpx.HTTPError as e:
            logger.warning(f"GET {url} failed: {e}")
        except ValueError:
            logger.warning(f"GET {url} returned a non-JSON body")
        return None

    def _fetch_email(self, access_token: str) -> Optional[str]:
        data = self._get_json(USERINFO_URL, access_token)
        return data.get("email") if data else None

    def _fetch_timezone(self, access_token: str) -> Optional[str]:
        data = self._get_json(TIMEZONE_SETTING_URL, access_token)
        return data.get("value") if data else None

    def get_access_token(self, user_id: str) -> str:
        """
        Return a valid access token, refreshing it if expired.

        Raises:
            CalendarNotConnectedError: No tokens stored for the user
            GoogleOAuthError: Refresh failed
        """
        connection = self.store.get(user_id)
        if not connection or not connection.is_connected:
            raise CalendarNotConnectedError("Google Calendar is not connected")

        expired = (
            connection.token_expiry is None
            or connection.token_expiry - EXPIRY_MARGIN <= datetime.now(timezone.utc)
        )
        if connection.access_token and not expired:
            return connection.access_token

        if not connection.refresh_token:
            raise CalendarNotConnectedError("Google access expired, reconnect Google Calendar")

        data = self._token_request({
            "refresh_token": connection.refresh_token,
            "client_id": settings.google_client_id,
            "client_secret": settings.google_client_secret,
            "grant_type": "refresh_token",
        })
        self.store.save_tokens(
            user_id,
            access_token=data["access_token"],
            token_expiry=_expiry_from(data),
            refresh_token=data.get("refresh_token"),
        )
        logger.info(f"Refreshed Google access token for user {user_id}")
        return data["access_token"]

    def get_credentials(self, user_id: str) -> Credentials:
        """Build google-auth Credentials for the user's calendar API calls."""
        connection = self.store.get(user_id)
        access_token = self.get_access_token(user_id)
        return Credentials(
            token=access_token,
            refresh_token=connection.refresh_token if connection else None,
            token_uri=TOKEN_URL,
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            scopes=(connection.scopes if connection and connection.scopes else SCOPES),
        )


def _sign_state(payload: str) -> str:
    return hmac.new(
        settings.google_client_secret.encode(), payload.encode(), hashlib.sha256
    ).hexdigest()


def make_oauth_state(user_id: str, issued_at: Optional[datetime] = None) -> str:
    """
    Sign the user id and issue time so the OAuth callback can trust it.

    Format: "<user_id>:<unix seconds>:<hmac>".
    """
    issued = int((issued_at or datetime.now(timezone.utc)).timestamp())
    payload = f"{user_id}:{issued}"
    return f"{payload}:{_sign_state(payload)}"


def verify_oauth_state(state: str, now: Optional[datetime] = None) -> str:
    """
    Check a signed OAuth state and return its user id.

    Raises:
        GoogleOAuthError: State is missing, tampered with or older than OAUTH_STATE_TTL
    """
    payload, _, signature = (state or "").rpartition(":")
    user_id, _, issued = payload.rpartition(":")
    if not user_id or not issued.isdigit():
        raise GoogleOAuthError("Invalid OAuth state")
    if not hmac.compare_digest(_sign_state(payload), signature):
        raise GoogleOAuthError("Invalid OAuth state")

    age = (now or datetime.now(timezone.utc)).timestamp() - int(issued)
    if age > OAUTH_STATE_TTL.total_seconds() or age < -STATE_CLOCK_SKEW.total_seconds():
        raise GoogleOAuthError("OAuth state expired, start the connection again")
    return user_id


def _expiry_from(token_response: dict) -> Optional[datetime]:
    expires_in = token_response.get("expires_in")
    if expires_in is None:
        return None
    return datetime.now(timezone.utc) + timedelta(seconds=int(expires_in))


# Singleton client instance
_google_oauth_client: Optional[GoogleOAuthClient] = None


def get_google_auth() -> GoogleOAuthClient:
    """Get or create singleton Google OAuth client."""
    global _google_oauth_client
    if _google_oauth_client is None:
        _google_oauth_client = GoogleOAuthClient()
    return _google_oauth_client
