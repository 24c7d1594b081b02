"""
CareerVine Configuration Settings
"""
from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Paths (use CAREERVINE_ prefix)
    data_path: Path = Field(
        default=Path("./data"),
        alias="CAREERVINE_DATA_PATH",
        description="Directory holding the SQLite database"
    )

    # Server
    port: int = Field(default=8000, alias="CAREERVINE_PORT")
    host: str = Field(default="0.0.0.0", alias="CAREERVINE_HOST")

    # Google OAuth (no prefix - standard env var names)
    google_client_id: str = Field(default="", alias="GOOGLE_CLIENT_ID")
    google_client_secret: str = Field(default="", alias="GOOGLE_CLIENT_SECRET")
    google_redirect_uri: str = Field(
        default="http://localhost:8000/api/calendar/oauth/callback",
        alias="GOOGLE_REDIRECT_URI"
    )

    # Timezone used when a connection has none recorded
    default_timezone: str = Field(
        default="America/New_York",
        alias="CAREERVINE_DEFAULT_TIMEZONE"
    )

    # Calendar sync
    calendar_sync_days_back: int = Field(default=7, alias="CAREERVINE_SYNC_DAYS_BACK")
    calendar_sync_days_forward: int = Field(default=30, alias="CAREERVINE_SYNC_DAYS_FORWARD")
    calendar_sync_cooldown_seconds: int = Field(
        default=60,
        alias="CAREERVINE_SYNC_COOLDOWN",
        description="Minimum seconds between two syncs for the same user"
    )
    calendar_sync_delete_missing: bool = Field(
        default=True,
        alias="CAREERVINE_SYNC_DELETE_MISSING",
        description="Remove cached events that no longer exist remotely"
    )

    # Availability defaults (used when no profile is saved)
    availability_window_start: str = "09:00"
    availability_window_end: str = "18:00"
    availability_days_of_week: list[int] = [1, 2, 3, 4, 5]  # 1=Mon .. 7=Sun
    availability_duration_minutes: int = 30
    availability_buffer_before: int = 10
    availability_buffer_after: int = 10
    availability_slot_alignment_minutes: int = Field(
        default=15,
        alias="CAREERVINE_SLOT_ALIGNMENT",
        description="Slot start times are rounded up to this many minutes"
    )

    @property
    def google_oauth_enabled(self) -> bool:
        """Check if Google OAuth credentials are configured."""
        return bool(self.google_client_id and self.google_client_secret)


settings = Settings()
