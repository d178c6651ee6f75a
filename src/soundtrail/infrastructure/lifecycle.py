"""Application lifecycle management for startup and shutdown tasks.

This module builds the archival service graph once at startup, parks the pieces on app.state
for the routers, and tears everything down again at shutdown.

Startup order:
1. Logging
2. SQLite path validation (file databases only)
3. Database, Spotify client, optional Redis
4. Services and workers (freshness, reconciler, breaker, worker, executor, dispatcher, scheduler)

Shutdown runs the other way round: pending batches are cancelled before the clients they use
are closed.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass

import httpx
from fastapi import FastAPI

from soundtrail.application.services import (
    CircuitBreaker,
    IdempotencyGate,
    MetadataReconciler,
    RateLimitTracker,
    TokenFreshnessService,
    TokenRefreshManager,
)
from soundtrail.application.services.archival_service import ArchivalService
from soundtrail.application.workers import (
    ArchiveScheduler,
    ArchiveUserWorker,
    BatchExecutor,
    InProcessBatchDispatcher,
)
from soundtrail.config import Settings, get_settings
from soundtrail.domain.exceptions import ConfigurationError
from soundtrail.infrastructure.cache import RedisKeyValueStore
from soundtrail.infrastructure.integrations import RetryingSpotifyClient, SpotifyClient
from soundtrail.infrastructure.observability import configure_logging
from soundtrail.infrastructure.persistence import Database

logger = logging.getLogger(__name__)


# Hey future me, this validates SQLite paths BEFORE we try creating the DB engine! SQLite needs
# to create temp files (-journal, -wal) next to the .db file, so the parent directory must exist
# and be writable. We DON'T pre-create the .db file - let SQLite do that. Returns early for
# in-memory and PostgreSQL URLs.
def _validate_sqlite_path(settings: Settings) -> None:
    """Validate SQLite database path accessibility before engine creation."""
    db_path = settings.get_sqlite_db_path()
    if db_path is None:
        return

    try:
        if db_path.parent and str(db_path.parent) != ".":
            db_path.parent.mkdir(parents=True, exist_ok=True)
            logger.debug("Ensured SQLite parent directory exists: %s", db_path.parent)
    except OSError as exc:
        raise ConfigurationError(
            f"Unable to create SQLite database directory '{db_path.parent}': {exc}. "
            "Update DATABASE_URL or adjust directory permissions."
        ) from exc

    try:
        test_file = db_path.parent / f".{db_path.stem}_write_test"
        test_file.write_bytes(b"test")
        test_file.unlink()
    except OSError as exc:
        raise ConfigurationError(
            f"Unable to write files in database directory '{db_path.parent}': {exc}. "
            "SQLite requires write permissions to create database and journal files."
        ) from exc


@dataclass
class ArchiveServices:
    """Everything the archival pipeline needs, wired together."""

    db: Database
    spotify_client: SpotifyClient
    spotify: RetryingSpotifyClient
    kv_store: RedisKeyValueStore | None
    breaker: CircuitBreaker
    worker: ArchiveUserWorker
    executor: BatchExecutor
    dispatcher: InProcessBatchDispatcher
    scheduler: ArchiveScheduler
    archival_service: ArchivalService


# Listen up, this is the ONE place that knows how the pieces fit together. Tests that want a
# real graph against a throwaway SQLite file call this directly with their own Settings; the only
# network-facing parts are Spotify (pass an httpx.MockTransport as spotify_transport) and
# Redis (leave REDIS_URL unset to run without it).
def build_services(
    settings: Settings, spotify_transport: httpx.AsyncBaseTransport | None = None
) -> ArchiveServices:
    """Build the archival service graph from settings."""
    archive = settings.archive
    db = Database(settings)

    kv_store = (
        RedisKeyValueStore.from_url(settings.redis.url)
        if settings.redis.url and settings.redis.enabled
        else None
    )
    if kv_store is None:
        logger.warning(
            "REDIS_URL not set - running without idempotency markers or rate-limit tracking"
        )
    gate = IdempotencyGate(kv_store, ttl_seconds=settings.redis.idempotency_ttl_seconds)
    rate_limits = RateLimitTracker(kv_store)

    spotify_client = SpotifyClient(
        settings.spotify,
        default_retry_after=archive.default_retry_after_seconds,
        transport=spotify_transport,
    )
    spotify = RetryingSpotifyClient(
        spotify_client, archive, on_rate_limited=rate_limits.track
    )

    freshness = TokenFreshnessService(
        db,
        TokenRefreshManager(spotify_client),
        buffer_seconds=archive.refresh_buffer_seconds,
    )
    breaker = CircuitBreaker(db)
    worker = ArchiveUserWorker(
        database=db,
        freshness=freshness,
        spotify=spotify,
        reconciler=MetadataReconciler(db),
        gate=gate,
        breaker=breaker,
        recently_played_limit=settings.spotify.recently_played_limit,
    )
    executor = BatchExecutor(worker, budget_seconds=archive.execution_budget_seconds)
    dispatcher = InProcessBatchDispatcher(executor)
    scheduler = ArchiveScheduler(
        db,
        breaker,
        dispatcher,
        batch_size=archive.batch_size,
        interval_seconds=archive.schedule_interval_seconds,
    )
    archival_service = ArchivalService(
        db,
        worker,
        executor,
        breaker,
        rate_limits=rate_limits,
        batch_size=archive.batch_size,
        eta_seconds=archive.manual_request_eta_seconds,
        min_eta_seconds=archive.manual_request_min_eta_seconds,
    )

    return ArchiveServices(
        db=db,
        spotify_client=spotify_client,
        spotify=spotify,
        kv_store=kv_store,
        breaker=breaker,
        worker=worker,
        executor=executor,
        dispatcher=dispatcher,
        scheduler=scheduler,
        archival_service=archival_service,
    )


async def close_services(services: ArchiveServices) -> None:
    """Cancel in-flight batches, then close clients and the database."""
    await services.dispatcher.shutdown()

    try:
        await services.spotify.close()
        logger.info("Spotify client closed")
    except Exception as e:
        logger.exception("Error closing Spotify client: %s", e)

    if services.kv_store is not None:
        try:
            await services.kv_store.close()
            logger.info("Redis connection closed")
        except Exception as e:
            logger.exception("Error closing Redis connection: %s", e)

    try:
        await services.db.close()
        logger.info("Database connection closed")
    except Exception as e:
        logger.exception("Error closing database: %s", e)


# Listen future me, @asynccontextmanager makes this a CONTEXT MANAGER for FastAPI lifespan!
# Everything before `yield` runs at STARTUP, everything after runs at SHUTDOWN. create_app()
# stores its Settings on app.state before the lifespan runs; falling back to get_settings()
# keeps `uvicorn soundtrail.main:app` working too.
@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    settings: Settings = getattr(app.state, "settings", None) or get_settings()

    configure_logging(
        log_level=settings.observability.level,
        json_format=settings.observability.json_format,
        app_name=settings.app_name,
    )
    logger.info("Starting application: %s", settings.app_name)

    _validate_sqlite_path(settings)
    services = build_services(settings)
    logger.info("Database initialized: %s", settings.database.url)
    if not settings.spotify.has_credentials:
        logger.warning("Spotify client credentials missing - token refreshes will fail")

    app.state.db = services.db
    app.state.batch_dispatcher = services.dispatcher
    app.state.archive_scheduler = services.scheduler
    app.state.archival_service = services.archival_service

    try:
        yield
    finally:
        logger.info("Shutting down application")
        await close_services(services)
