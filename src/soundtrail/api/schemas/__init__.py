"""API schemas - Pydantic models for request/response bodies."""

from soundtrail.api.schemas.archive import (
    ArchivalStatusResponse,
    ArchiveRequestResponse,
    ArchiveResultResponse,
    BatchArchiveRequest,
    BatchArchiveResponse,
    BatchFailureResponse,
    MultiBatchResponse,
    ScheduleResponse,
)

__all__ = [
    "ArchivalStatusResponse",
    "ArchiveRequestResponse",
    "ArchiveResultResponse",
    "BatchArchiveRequest",
    "BatchArchiveResponse",
    "BatchFailureResponse",
    "MultiBatchResponse",
    "ScheduleResponse",
]
