"""API router initialization."""

# Hey future me, this is the MAIN API router aggregator. It gets mounted at /api in main.py, and
# the archive router brings its own "/archive" prefix, so endpoints become /api/archive/...

from fastapi import APIRouter

from soundtrail.api.routers import archive, health

api_router = APIRouter()

api_router.include_router(archive.router, tags=["Archive"])
api_router.include_router(health.router, tags=["Health"])

__all__ = ["api_router", "archive", "health"]
