"""Environment-driven application settings.

Every group reads its own env prefix (SPOTIFY_, DATABASE_, REDIS_, ARCHIVE_, LOG_)
so a deployment only has to export what differs from the defaults.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class SpotifySettings(BaseSettings):
    """Spotify OAuth client + Web API settings."""

    model_config = SettingsConfigDict(
        env_prefix="SPOTIFY_", env_file=".env", extra="ignore"
    )

    client_id: str = ""
    client_secret: str = ""
    token_url: str = "https://accounts.spotify.com/api/token"  # nosec B105 - public endpoint URL
    api_base_url: str = "https://api.spotify.com/v1"
    request_timeout: float = 30.0
    # Hey future me - Spotify never returns more than 50 items from recently-played,
    # and /v1/artists refuses more than 50 ids per call. Both are clamped, not trusted.
    recently_played_limit: int = 50
    artists_chunk_size: int = 50

    @field_validator("recently_played_limit", "artists_chunk_size")
    @classmethod
    def _clamp_page_size(cls, value: int) -> int:
        return max(1, min(value, 50))

    @property
    def has_credentials(self) -> bool:
        """True when both client id and secret are configured."""
        return bool(self.client_id.strip() and self.client_secret.strip())


class DatabaseSettings(BaseSettings):
    """SQLAlchemy engine settings."""

    model_config = SettingsConfigDict(
        env_prefix="DATABASE_", env_file=".env", extra="ignore"
    )

    url: str = "sqlite+aiosqlite:///./soundtrail.db"
    echo: bool = False
    pool_pre_ping: bool = True
    # Pool settings only apply to PostgreSQL
    pool_size: int = 5
    max_overflow: int = 10
    pool_timeout: int = 30
    pool_recycle: int = 1800


class RedisSettings(BaseSettings):
    """Key-value store for idempotency markers and rate-limit tracking.

    Leaving REDIS_URL unset is supported: the idempotency gate then lets every job
    through and the play-event unique constraint is the only duplicate guard.
    """

    model_config = SettingsConfigDict(
        env_prefix="REDIS_", env_file=".env", extra="ignore"
    )

    url: str | None = None
    idempotency_ttl_seconds: int = 24 * 60 * 60

    @property
    def enabled(self) -> bool:
        """True when a Redis URL is configured."""
        return bool(self.url and self.url.strip())


class ArchiveSettings(BaseSettings):
    """Tuning knobs for the archival pipeline."""

    model_config = SettingsConfigDict(
        env_prefix="ARCHIVE_", env_file=".env", extra="ignore"
    )

    batch_size: int = Field(default=50, ge=1)
    schedule_interval_seconds: int = Field(default=60 * 60, ge=1)
    # Matches the max execution window of the hosting platform (5 min)
    execution_budget_seconds: float = Field(default=300.0, gt=0)
    refresh_buffer_seconds: int = Field(default=5 * 60, ge=0)

    # Retry behaviour of the Spotify API client
    max_retries: int = Field(default=3, ge=0)
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 30.0
    backoff_jitter_seconds: float = 1.0
    default_retry_after_seconds: int = 60
    max_rate_limit_waits: int = Field(default=5, ge=0)

    # Manual "archive now" requests
    manual_request_eta_seconds: int = 90
    manual_request_min_eta_seconds: int = 10


class ObservabilitySettings(BaseSettings):
    """Logging settings."""

    model_config = SettingsConfigDict(env_prefix="LOG_", env_file=".env", extra="ignore")

    level: str = "INFO"
    json_format: bool = False


class Settings(BaseSettings):
    """Top-level settings object handed to the application factory."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_name: str = "soundtrail"
    host: str = "0.0.0.0"  # nosec B104 - container deployment
    port: int = 8000
    spotify: SpotifySettings = Field(default_factory=SpotifySettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    archive: ArchiveSettings = Field(default_factory=ArchiveSettings)
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)

    def get_sqlite_db_path(self) -> Path | None:
        """Return the SQLite file path, or None for non-file databases."""
        url = self.database.url
        if not url.startswith("sqlite") or ":memory:" in url:
            return None
        _, _, path = url.partition(":///")
        return Path(path) if path else None


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
