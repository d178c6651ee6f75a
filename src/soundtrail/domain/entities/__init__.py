"""Domain entities."""

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(UTC)


# Hey future me - SQLite hands datetimes back WITHOUT tzinfo even when the column is declared
# timezone=True. Comparing naive and aware datetimes raises TypeError, so everything that
# leaves the persistence layer goes through this. Naive values are assumed to be UTC.
def ensure_utc_aware(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes, convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


# Hey future me, the string values are persisted in users.last_failure_type - don't rename them
# without a migration! AUTH = token dead/revoked (needs re-consent), NETWORK = 429/5xx (transient),
# UNKNOWN = anything else (malformed data, storage errors, exhausted transport retries).
class FailureType(str, Enum):
    """Classification of a failed archive attempt."""

    AUTH = "AUTH"
    NETWORK = "NETWORK"
    UNKNOWN = "UNKNOWN"


class ArchiveStatus(str, Enum):
    """Terminal state of one user's archive attempt."""

    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


class ArchiveRequestState(str, Enum):
    """State of a manual "archive now" request."""

    REQUESTED = "requested"
    PENDING = "pending"
    COMPLETED = "completed"
    IDLE = "idle"


class ArchivalHealth(str, Enum):
    """Coarse health of a user's archival."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"


@dataclass
class User:
    """A connected Spotify account and its archival bookkeeping."""

    id: str
    spotify_id: str
    access_token: str | None = None
    refresh_token: str | None = None
    token_expires_at: datetime | None = None
    email: str | None = None
    name: str | None = None
    image_url: str | None = None
    is_active: bool = True

    # Circuit breaker state
    consecutive_failures: int = 0
    last_failure_type: FailureType | None = None
    last_failed_at: datetime | None = None
    last_successful_at: datetime | None = None
    last_polled_at: datetime | None = None

    # Manual "archive now" trigger
    archive_requested: bool = False
    archive_requested_at: datetime | None = None

    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def has_credentials(self) -> bool:
        """True when the user has a refresh token we could use in a background job."""
        return bool(self.refresh_token)


@dataclass
class Artist:
    """Global artist reference data."""

    id: str
    spotify_id: str
    name: str
    # Comma-joined, e.g. "indie rock,shoegaze". Empty string when unknown.
    genres: str = ""

    @property
    def genre_list(self) -> list[str]:
        """Genres split back into a list."""
        return [genre for genre in self.genres.split(",") if genre]


@dataclass
class Album:
    """Global album reference data."""

    id: str
    spotify_id: str
    name: str
    image_url: str | None = None


@dataclass
class Track:
    """Global track reference data."""

    id: str
    spotify_id: str
    name: str
    duration_ms: int
    album_id: str | None = None
    artist_ids: list[str] = field(default_factory=list)


@dataclass
class PlayEvent:
    """One play of a track by a user."""

    id: str
    user_id: str
    track_id: str
    played_at: datetime


@dataclass(frozen=True)
class RefreshedToken:
    """Result of exchanging a refresh token.

    refresh_token is ALWAYS populated: either the rotated one Spotify sent back or the
    one that went in. Persist it unconditionally.
    """

    access_token: str
    refresh_token: str
    expires_at: datetime


@dataclass
class ArchiveResult:
    """Outcome of one Single-User Archive Worker run."""

    user_id: str
    status: ArchiveStatus
    songs_archived: int = 0
    reason: str | None = None
    error: str | None = None
    failure_type: FailureType | None = None

    @classmethod
    def success(cls, user_id: str, songs_archived: int) -> "ArchiveResult":
        return cls(user_id=user_id, status=ArchiveStatus.SUCCESS, songs_archived=songs_archived)

    @classmethod
    def skipped(cls, user_id: str, reason: str) -> "ArchiveResult":
        return cls(user_id=user_id, status=ArchiveStatus.SKIPPED, reason=reason)

    @classmethod
    def failed(
        cls, user_id: str, failure_type: FailureType, error: str
    ) -> "ArchiveResult":
        return cls(
            user_id=user_id,
            status=ArchiveStatus.FAILED,
            reason=failure_type.value,
            error=error,
            failure_type=failure_type,
        )


@dataclass(frozen=True)
class BatchFailure:
    """A user that failed inside a batch, kept for observability."""

    user_id: str
    error: str


@dataclass
class BatchResult:
    """Aggregated outcome of a batch of workers."""

    processed: int = 0
    successful: int = 0
    skipped: int = 0
    failed: int = 0
    total_songs_archived: int = 0
    duration_ms: int = 0
    results: list[ArchiveResult] = field(default_factory=list)
    failures: list[BatchFailure] = field(default_factory=list)

    def add(self, result: ArchiveResult) -> None:
        """Fold one worker outcome into the counters."""
        self.processed += 1
        self.results.append(result)
        if result.status == ArchiveStatus.SUCCESS:
            self.successful += 1
            self.total_songs_archived += result.songs_archived
        elif result.status == ArchiveStatus.SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1
            self.failures.append(
                BatchFailure(user_id=result.user_id, error=result.error or "unknown error")
            )


@dataclass
class MultiBatchResult:
    """Outcome of running several batches back to back under one time budget."""

    batches_run: int = 0
    batches_skipped: int = 0
    skipped_user_ids: list[str] = field(default_factory=list)
    totals: BatchResult = field(default_factory=BatchResult)


@dataclass(frozen=True)
class BatchPayload:
    """One unit of dispatch: a slice of users plus its position in the sweep."""

    user_ids: list[str]
    batch_number: int
    total_batches: int


@dataclass
class ScheduleResult:
    """Summary of one scheduler pass."""

    batch_count: int = 0
    user_count: int = 0
    total_active_users: int = 0
    filtered_out: int = 0
    delays: list[int] = field(default_factory=list)
    failed_dispatches: int = 0


@dataclass
class ArchiveRequestStatus:
    """Answer to a manual archive request or status poll."""

    state: ArchiveRequestState
    requested_at: datetime | None = None
    last_polled_at: datetime | None = None
    estimated_completion_seconds: int | None = None
    play_event_count: int = 0


@dataclass
class ArchivalStatus:
    """Failure tracking snapshot for one user."""

    user_id: str
    health: ArchivalHealth
    consecutive_failures: int
    last_failure_type: FailureType | None
    last_failed_at: datetime | None
    last_successful_at: datetime | None
    last_polled_at: datetime | None
    cooldown_remaining_seconds: int = 0
    rate_limited: bool = False


def cooldown_remaining(last_failed_at: datetime, cooldown: timedelta, now: datetime) -> timedelta:
    """How long until a cooled-down user becomes eligible again (never negative)."""
    remaining = (ensure_utc_aware(last_failed_at) or now) + cooldown - now
    return max(remaining, timedelta(0))


__all__ = [
    "Album",
    "ArchivalHealth",
    "ArchivalStatus",
    "ArchiveRequestState",
    "ArchiveRequestStatus",
    "ArchiveResult",
    "ArchiveStatus",
    "Artist",
    "BatchFailure",
    "BatchPayload",
    "BatchResult",
    "FailureType",
    "MultiBatchResult",
    "PlayEvent",
    "RefreshedToken",
    "ScheduleResult",
    "Track",
    "User",
    "cooldown_remaining",
    "ensure_utc_aware",
    "utc_now",
]
