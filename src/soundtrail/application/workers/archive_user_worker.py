# Hey future me - this is the unit of work of the whole archiver: ONE user, ONE run.
#
# Linear state machine with early exits:
#   1. idempotency marker for this hour exists?         -> SKIPPED (no token, no API call)
#   2. ensure fresh token                                -> fails: FAILED(AUTH), always
#   3. fetch recently played                             -> fails: FAILED(classified)
#      nothing played                                    -> SUCCESS(0)
#   4. fetch artist details for every artist referenced
#   5. upsert those artists in parallel                  -> single failures logged, not fatal
#   6. per track, sequentially: upsert track + play      -> single failures logged, not fatal
#   7. mark idempotency, stamp last_polled, reset breaker -> SUCCESS(inserted plays)
#
# Every failure that ends the run is recorded on the circuit breaker BEFORE we return, so the
# next scheduler pass sees it. The worker never raises for an expected failure - it returns a
# FAILED result. The executor still guards against anything that slips through.
"""Single-user archive worker."""

import asyncio
import logging
import time
from collections.abc import Callable
from datetime import datetime

from soundtrail.application.services.circuit_breaker import CircuitBreaker, classify_failure
from soundtrail.application.services.idempotency import IdempotencyGate
from soundtrail.application.services.metadata_reconciler import MetadataReconciler
from soundtrail.application.services.token_freshness_service import TokenFreshnessService
from soundtrail.domain.dtos import ArtistDTO, PlayHistoryItemDTO
from soundtrail.domain.entities import ArchiveResult, FailureType, utc_now
from soundtrail.domain.ports import ISpotifyApiClient
from soundtrail.infrastructure.persistence import Database, UserRepository

logger = logging.getLogger(__name__)


class ArchiveUserWorker:
    """Archives one user's recently played tracks."""

    def __init__(
        self,
        database: Database,
        freshness: TokenFreshnessService,
        spotify: ISpotifyApiClient,
        reconciler: MetadataReconciler,
        gate: IdempotencyGate,
        breaker: CircuitBreaker,
        recently_played_limit: int = 50,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize worker.

        Args:
            database: Database for the last_polled stamp
            freshness: Just-in-time token freshness
            spotify: Spotify API client (with retries)
            reconciler: Metadata upserts
            gate: Hourly idempotency gate
            breaker: Per-user circuit breaker
            recently_played_limit: Page size for recently-played
            now: Clock, injectable for tests (drives the idempotency hour)
        """
        self._database = database
        self._freshness = freshness
        self._spotify = spotify
        self._reconciler = reconciler
        self._gate = gate
        self._breaker = breaker
        self._recently_played_limit = recently_played_limit
        self._now = now

    async def archive(self, user_id: str) -> ArchiveResult:
        """Run one archive attempt for user_id."""
        started = time.monotonic()
        key = self._gate.job_key(user_id, self._now())

        if await self._gate.is_complete(key):
            logger.info(f"Job {key} already completed, skipping")
            return ArchiveResult.skipped(user_id, "already_completed")

        try:
            access_token = await self._freshness.ensure_fresh_token(user_id)
        except Exception as e:
            # Whatever went wrong getting a token, the user has to re-consent to fix it
            return await self._fail(user_id, FailureType.AUTH, e, started)

        try:
            items = await self._spotify.get_recently_played(
                access_token, self._recently_played_limit, user_id=user_id
            )
            if not items:
                logger.info(f"No recent plays for user {user_id}")
                await self._complete(user_id, key)
                return self._succeed(user_id, 0, started)

            artists = await self._spotify.get_artists(
                access_token, self._collect_artist_ids(items), user_id=user_id
            )
            await self._upsert_artists(user_id, artists)
            archived = await self._record_plays(user_id, items)
            await self._complete(user_id, key)
        except Exception as e:
            return await self._fail(user_id, classify_failure(e), e, started)

        return self._succeed(user_id, archived, started)

    @staticmethod
    def _collect_artist_ids(items: list[PlayHistoryItemDTO]) -> list[str]:
        """De-duplicated artist ids across all items, in first-seen order."""
        return list(
            dict.fromkeys(artist_id for item in items for artist_id in item.track.artist_ids)
        )

    async def _upsert_artists(self, user_id: str, artists: list[ArtistDTO]) -> None:
        results = await asyncio.gather(
            *(self._reconciler.upsert_artist(artist) for artist in artists),
            return_exceptions=True,
        )
        for artist, result in zip(artists, results, strict=True):
            if isinstance(result, Exception):
                logger.warning(
                    f"Failed to upsert artist {artist.spotify_id} for user {user_id}: {result}"
                )

    # Listen up, tracks go one at a time - one user's run holds at most one DB connection at a
    # time for track writes. Fifty users in a batch already means fifty concurrent writers.
    async def _record_plays(self, user_id: str, items: list[PlayHistoryItemDTO]) -> int:
        archived = 0
        for item in items:
            try:
                await self._reconciler.upsert_track(item.track)
                play = await self._reconciler.create_play_event(
                    user_id, item.track.spotify_id, item.played_at
                )
                if play is not None:
                    archived += 1
            except Exception as e:
                logger.warning(
                    f"Failed to process track {item.track.spotify_id} for user {user_id}: {e}"
                )
        return archived

    async def _complete(self, user_id: str, key: str) -> None:
        await self._gate.mark_complete(key)
        async with self._database.session_scope() as session:
            await UserRepository(session).mark_polled(user_id, self._now())
        await self._breaker.record_success(user_id)

    def _succeed(self, user_id: str, archived: int, started: float) -> ArchiveResult:
        logger.info(
            f"Archived {archived} plays for user {user_id}",
            extra={
                "user_id": user_id,
                "status": "success",
                "archived": archived,
                "duration_ms": int((time.monotonic() - started) * 1000),
            },
        )
        return ArchiveResult.success(user_id, archived)

    async def _fail(
        self, user_id: str, failure_type: FailureType, error: Exception, started: float
    ) -> ArchiveResult:
        await self._breaker.record_failure(user_id, failure_type)
        message = str(error) or error.__class__.__name__
        logger.error(
            f"Failed to archive user {user_id} ({failure_type.value}): {message}",
            extra={
                "user_id": user_id,
                "status": "failed",
                "failure_type": failure_type.value,
                "duration_ms": int((time.monotonic() - started) * 1000),
            },
        )
        return ArchiveResult.failed(user_id, failure_type, message)
