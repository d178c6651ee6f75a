"""FastAPI application factory and server entry point."""

import uvicorn
from fastapi import FastAPI

from soundtrail import __version__
from soundtrail.api import api_router
from soundtrail.api.exception_handlers import register_exception_handlers
from soundtrail.config import Settings, get_settings
from soundtrail.infrastructure.lifecycle import lifespan


# Hey future me - create_app() takes Settings explicitly so tests can hand in a throwaway
# database without touching environment variables. The lifespan picks them up from app.state.
# Nothing here authenticates callers: the hosting platform (reverse proxy, cron secret) does.
def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()

    app = FastAPI(
        title=settings.app_name,
        version=__version__,
        description="Hourly Spotify listening-history archiver",
        lifespan=lifespan,
    )
    app.state.settings = settings

    register_exception_handlers(app)
    app.include_router(api_router, prefix="/api")
    return app


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    settings = get_settings()
    uvicorn.run(
        "soundtrail.main:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        log_config=None,
    )
