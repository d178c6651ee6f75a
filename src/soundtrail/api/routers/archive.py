"""Archive trigger and status endpoints.

Hey future me - two kinds of callers hit this router:
- Machines: a cron hits POST /archive/schedule once an hour, and an external queue (if you use one
  instead of the in-process dispatcher) delivers batches to POST /archive/batch.
- Humans: the "archive now" button calls POST /archive/users/{id}/request and then polls
  GET /archive/users/{id}/status until it flips to "completed".
"""

from fastapi import APIRouter, Depends, Response, status

from soundtrail.api.dependencies import get_archival_service, get_archive_scheduler
from soundtrail.api.schemas import (
    ArchivalStatusResponse,
    ArchiveRequestResponse,
    ArchiveResultResponse,
    BatchArchiveRequest,
    BatchArchiveResponse,
    MultiBatchResponse,
    ScheduleResponse,
)
from soundtrail.application.services.archival_service import ArchivalService
from soundtrail.application.workers import ArchiveScheduler
from soundtrail.domain.entities import ArchiveRequestState


router = APIRouter(prefix="/archive")


@router.post("/schedule", response_model=ScheduleResponse)
async def schedule_archive(
    scheduler: ArchiveScheduler = Depends(get_archive_scheduler),
) -> ScheduleResponse:
    """Run one scheduling pass: pick eligible users and dispatch time-spread batches."""
    result = await scheduler.run()
    return ScheduleResponse.from_result(result)


@router.post("/run", response_model=MultiBatchResponse)
async def run_archive_now(
    service: ArchivalService = Depends(get_archival_service),
) -> MultiBatchResponse:
    """Archive every eligible user immediately, within the execution budget."""
    result = await service.archive_all_active_users()
    return MultiBatchResponse.from_result(result)


@router.post("/batch", response_model=BatchArchiveResponse)
async def archive_batch(
    body: BatchArchiveRequest,
    service: ArchivalService = Depends(get_archival_service),
) -> BatchArchiveResponse:
    """Archive one batch of users (the queue delivery target).

    Individual user failures are reported in the body, the request itself still
    succeeds - a 5xx would make the queue redeliver users that already finished.
    """
    result = await service.archive_batch(body.user_ids, body.batch_number, body.total_batches)
    return BatchArchiveResponse.from_result(result)


@router.post("/users/{user_id}", response_model=ArchiveResultResponse)
async def archive_user(
    user_id: str,
    service: ArchivalService = Depends(get_archival_service),
) -> ArchiveResultResponse:
    """Archive a single user right now (404 unknown user, 400 inactive account)."""
    result = await service.archive_single_user(user_id)
    return ArchiveResultResponse.from_result(result)


@router.post("/users/{user_id}/request", response_model=ArchiveRequestResponse)
async def request_archive(
    user_id: str,
    response: Response,
    service: ArchivalService = Depends(get_archival_service),
) -> ArchiveRequestResponse:
    """Ask for a priority archive.

    Returns 202 for a new request, 200 if one was already pending.
    """
    request_status = await service.request_archive(user_id)
    if request_status.state == ArchiveRequestState.REQUESTED:
        response.status_code = status.HTTP_202_ACCEPTED
    return ArchiveRequestResponse.from_status(request_status)


@router.get("/users/{user_id}/status", response_model=ArchiveRequestResponse)
async def get_archive_status(
    user_id: str,
    service: ArchivalService = Depends(get_archival_service),
) -> ArchiveRequestResponse:
    """Poll a manual archive request: pending, completed or idle."""
    request_status = await service.get_archive_status(user_id)
    return ArchiveRequestResponse.from_status(request_status, include_count=True)


@router.get("/users/{user_id}/health", response_model=ArchivalStatusResponse)
async def get_archival_health(
    user_id: str,
    service: ArchivalService = Depends(get_archival_service),
) -> ArchivalStatusResponse:
    """Failure tracking snapshot: consecutive failures, cooldown and rate-limit state."""
    archival_status = await service.get_user_archival_status(user_id)
    return ArchivalStatusResponse.from_status(archival_status)
