"""Dependency injection for API routes.

Hey future me - every service here is built ONCE in lifecycle.lifespan() and parked on
app.state. These functions just hand them out. If an attribute is missing, startup didn't
finish (or a test forgot to set it) - that's a 503, not a 500.
"""

import logging
from typing import Any, cast

from fastapi import HTTPException, Request

from soundtrail.application.services.archival_service import ArchivalService
from soundtrail.application.workers import ArchiveScheduler

logger = logging.getLogger(__name__)


def _from_state(request: Request, name: str) -> Any:
    service = getattr(request.app.state, name, None)
    if service is None:
        logger.error(f"{name} requested before application startup completed")
        raise HTTPException(status_code=503, detail=f"{name} not initialized")
    return service


def get_archival_service(request: Request) -> ArchivalService:
    """Get the archival service from app state.

    Raises:
        HTTPException: 503 if the service is not initialized
    """
    return cast(ArchivalService, _from_state(request, "archival_service"))


def get_archive_scheduler(request: Request) -> ArchiveScheduler:
    """Get the batch scheduler from app state.

    Raises:
        HTTPException: 503 if the scheduler is not initialized
    """
    return cast(ArchiveScheduler, _from_state(request, "archive_scheduler"))
