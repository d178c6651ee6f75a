"""API schemas for archive triggers and status polling."""

from datetime import datetime

from pydantic import BaseModel, Field

from soundtrail.domain.entities import (
    ArchivalHealth,
    ArchivalStatus,
    ArchiveRequestState,
    ArchiveRequestStatus,
    ArchiveResult,
    ArchiveStatus,
    BatchResult,
    FailureType,
    MultiBatchResult,
    ScheduleResult,
)


class BatchArchiveRequest(BaseModel):
    """Request body for POST /archive/batch (what a queue delivers)."""

    user_ids: list[str] = Field(..., min_length=1, description="Users to archive")
    batch_number: int | None = Field(default=None, ge=1, description="Position in the sweep")
    total_batches: int | None = Field(default=None, ge=1, description="Size of the sweep")


class ArchiveResultResponse(BaseModel):
    """Outcome of one user's archive run."""

    user_id: str
    status: ArchiveStatus
    songs_archived: int = 0
    reason: str | None = None
    error: str | None = None
    failure_type: FailureType | None = None

    @classmethod
    def from_result(cls, result: ArchiveResult) -> "ArchiveResultResponse":
        return cls(
            user_id=result.user_id,
            status=result.status,
            songs_archived=result.songs_archived,
            reason=result.reason,
            error=result.error,
            failure_type=result.failure_type,
        )


class BatchFailureResponse(BaseModel):
    """A user that failed inside a batch."""

    user_id: str
    error: str


class BatchArchiveResponse(BaseModel):
    """Aggregated outcome of a batch."""

    processed: int
    successful: int
    skipped: int
    failed: int
    total_songs_archived: int
    duration_ms: int
    failures: list[BatchFailureResponse] = Field(default_factory=list)

    @classmethod
    def from_result(cls, result: BatchResult) -> "BatchArchiveResponse":
        return cls(
            processed=result.processed,
            successful=result.successful,
            skipped=result.skipped,
            failed=result.failed,
            total_songs_archived=result.total_songs_archived,
            duration_ms=result.duration_ms,
            failures=[
                BatchFailureResponse(user_id=f.user_id, error=f.error) for f in result.failures
            ],
        )


class MultiBatchResponse(BaseModel):
    """Outcome of an immediate archive of all active users."""

    batches_run: int
    batches_skipped: int
    skipped_user_ids: list[str] = Field(default_factory=list)
    totals: BatchArchiveResponse

    @classmethod
    def from_result(cls, result: MultiBatchResult) -> "MultiBatchResponse":
        return cls(
            batches_run=result.batches_run,
            batches_skipped=result.batches_skipped,
            skipped_user_ids=list(result.skipped_user_ids),
            totals=BatchArchiveResponse.from_result(result.totals),
        )


class ScheduleResponse(BaseModel):
    """Summary of one scheduling pass."""

    batch_count: int
    user_count: int
    total_active_users: int
    filtered_out: int
    delays: list[int] = Field(default_factory=list)
    failed_dispatches: int = 0

    @classmethod
    def from_result(cls, result: ScheduleResult) -> "ScheduleResponse":
        return cls(
            batch_count=result.batch_count,
            user_count=result.user_count,
            total_active_users=result.total_active_users,
            filtered_out=result.filtered_out,
            delays=list(result.delays),
            failed_dispatches=result.failed_dispatches,
        )


class ArchiveRequestResponse(BaseModel):
    """Manual archive request / status poll answer."""

    status: ArchiveRequestState
    requested_at: datetime | None = None
    last_polled_at: datetime | None = None
    estimated_completion_seconds: int | None = Field(
        default=None, description="Seconds until the request should be picked up"
    )
    play_event_count: int | None = Field(
        default=None, description="Archived plays so far (status polls only)"
    )

    @classmethod
    def from_status(
        cls, status: ArchiveRequestStatus, include_count: bool = False
    ) -> "ArchiveRequestResponse":
        return cls(
            status=status.state,
            requested_at=status.requested_at,
            last_polled_at=status.last_polled_at,
            estimated_completion_seconds=status.estimated_completion_seconds,
            play_event_count=status.play_event_count if include_count else None,
        )


class ArchivalStatusResponse(BaseModel):
    """Failure tracking snapshot for a user."""

    user_id: str
    status: ArchivalHealth
    consecutive_failures: int
    last_failure_type: FailureType | None = None
    last_failed_at: datetime | None = None
    last_successful_at: datetime | None = None
    last_polled_at: datetime | None = None
    cooldown_remaining_seconds: int = 0
    rate_limited: bool = False

    @classmethod
    def from_status(cls, status: ArchivalStatus) -> "ArchivalStatusResponse":
        return cls(
            user_id=status.user_id,
            status=status.health,
            consecutive_failures=status.consecutive_failures,
            last_failure_type=status.last_failure_type,
            last_failed_at=status.last_failed_at,
            last_successful_at=status.last_successful_at,
            last_polled_at=status.last_polled_at,
            cooldown_remaining_seconds=status.cooldown_remaining_seconds,
            rate_limited=status.rate_limited,
        )
