"""API module for soundtrail.

Structure:
- routers/: HTTP endpoints (archive triggers, status polling, health)
- schemas/: Pydantic models for request/response
- dependencies.py: Services handed out from app.state
- exception_handlers.py: Domain exception to HTTP status mapping
"""

from soundtrail.api.routers import api_router

__all__ = ["api_router"]
