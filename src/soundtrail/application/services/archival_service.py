"""Archival Service - entry points for triggers (HTTP, CLI, schedulers).

Hey future me - this is the façade the API routers talk to. It validates the user exists and is
active before running anything, and it owns the manual "archive now" request flow. The actual
work lives in ArchiveUserWorker / BatchExecutor; nothing here talks to Spotify directly.
"""

import logging
import math
from collections.abc import Callable, Sequence
from datetime import datetime

from soundtrail.application.services.circuit_breaker import CircuitBreaker
from soundtrail.application.services.idempotency import RateLimitTracker
from soundtrail.application.workers.archive_scheduler import partition
from soundtrail.application.workers.archive_user_worker import ArchiveUserWorker
from soundtrail.application.workers.batch_executor import BatchExecutor
from soundtrail.domain.entities import (
    ArchivalHealth,
    ArchivalStatus,
    ArchiveRequestState,
    ArchiveRequestStatus,
    ArchiveResult,
    BatchPayload,
    BatchResult,
    MultiBatchResult,
    User,
    utc_now,
)
from soundtrail.domain.exceptions import EntityNotFoundException, InvalidStateException
from soundtrail.infrastructure.persistence import Database, PlayEventRepository, UserRepository

logger = logging.getLogger(__name__)


class ArchivalService:
    """Business logic for user archival operations."""

    def __init__(
        self,
        database: Database,
        worker: ArchiveUserWorker,
        executor: BatchExecutor,
        breaker: CircuitBreaker,
        rate_limits: RateLimitTracker | None = None,
        batch_size: int = 50,
        eta_seconds: int = 90,
        min_eta_seconds: int = 10,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize archival service.

        Args:
            database: Database for user lookups
            worker: Single-user archive worker
            executor: Batch executor
            breaker: Circuit breaker (for cooldown reporting)
            rate_limits: Optional rate-limit tracker (for health reporting)
            batch_size: Users per batch for archive_all_active_users
            eta_seconds: Estimated time for a manual request to be picked up
            min_eta_seconds: Lower bound for the ETA reported on pending requests
            now: Clock, injectable for tests
        """
        self._database = database
        self._worker = worker
        self._executor = executor
        self._breaker = breaker
        self._rate_limits = rate_limits
        self._batch_size = batch_size
        self._eta_seconds = eta_seconds
        self._min_eta_seconds = min_eta_seconds
        self._now = now

    async def _require_user(self, user_id: str) -> User:
        async with self._database.session_scope() as session:
            user = await UserRepository(session).get_by_id(user_id)
        if user is None:
            raise EntityNotFoundException("User", user_id)
        return user

    async def archive_single_user(self, user_id: str) -> ArchiveResult:
        """Archive one user right now.

        Raises:
            EntityNotFoundException: No such user
            InvalidStateException: User account is not active
        """
        user = await self._require_user(user_id)
        if not user.is_active:
            raise InvalidStateException(f"User {user_id} account is not active")
        return await self._worker.archive(user_id)

    async def archive_batch(
        self,
        user_ids: Sequence[str],
        batch_number: int | None = None,
        total_batches: int | None = None,
    ) -> BatchResult:
        """Archive a batch of users concurrently (fault isolated)."""
        return await self._executor.execute(user_ids, batch_number, total_batches)

    # Listen up, this is the "no queue available" path: every active user, right now, batch after
    # batch until the execution budget runs out. The scheduler + dispatcher is the normal route.
    async def archive_all_active_users(self) -> MultiBatchResult:
        """Archive every eligible user immediately within the executor's budget."""
        async with self._database.session_scope() as session:
            users = await UserRepository(session).list_schedulable()
        eligible = self._breaker.filter_eligible(users)
        batches = partition([user.id for user in eligible], self._batch_size)
        logger.info(
            f"Starting immediate archival for {len(eligible)} users in {len(batches)} batches"
        )
        return await self._executor.execute_many(
            [
                BatchPayload(user_ids=ids, batch_number=index + 1, total_batches=len(batches))
                for index, ids in enumerate(batches)
            ]
        )

    def _eta(self, requested_at: datetime | None, now: datetime) -> int:
        if requested_at is None:
            return self._eta_seconds
        requested_ago = math.floor((now - requested_at).total_seconds())
        return max(self._eta_seconds - requested_ago, self._min_eta_seconds)

    # Hey future me - a manual request doesn't archive anything itself. It sets a flag that puts the
    # user at the front of the next scheduling pass and returns immediately, so the caller can poll
    # get_archive_status() instead of holding a connection open across Spotify round-trips.
    async def request_archive(self, user_id: str) -> ArchiveRequestStatus:
        """Flag a user for priority archiving.

        Returns:
            REQUESTED for a fresh request, PENDING if one was already outstanding

        Raises:
            EntityNotFoundException: No such user
        """
        user = await self._require_user(user_id)
        now = self._now()

        if user.archive_requested:
            logger.info(f"User {user_id} already has a pending archive request")
            return ArchiveRequestStatus(
                state=ArchiveRequestState.PENDING,
                requested_at=user.archive_requested_at,
                last_polled_at=user.last_polled_at,
                estimated_completion_seconds=self._eta(user.archive_requested_at, now),
            )

        async with self._database.session_scope() as session:
            await UserRepository(session).request_archive(user_id, now)
        logger.info(f"User {user_id} requested manual archive")

        return ArchiveRequestStatus(
            state=ArchiveRequestState.REQUESTED,
            requested_at=now,
            last_polled_at=user.last_polled_at,
            estimated_completion_seconds=self._eta_seconds,
        )

    async def get_archive_status(self, user_id: str) -> ArchiveRequestStatus:
        """Status of a user's manual archive request.

        Raises:
            EntityNotFoundException: No such user
        """
        async with self._database.session_scope() as session:
            user = await UserRepository(session).get_by_id(user_id)
            if user is None:
                raise EntityNotFoundException("User", user_id)
            play_count = await PlayEventRepository(session).count_for_user(user_id)

        if user.archive_requested:
            state = ArchiveRequestState.PENDING
            eta: int | None = self._eta(user.archive_requested_at, self._now())
        elif user.last_polled_at is not None:
            state, eta = ArchiveRequestState.COMPLETED, None
        else:
            state, eta = ArchiveRequestState.IDLE, None

        return ArchiveRequestStatus(
            state=state,
            requested_at=user.archive_requested_at,
            last_polled_at=user.last_polled_at,
            estimated_completion_seconds=eta,
            play_event_count=play_count,
        )

    async def get_user_archival_status(self, user_id: str) -> ArchivalStatus:
        """Failure tracking snapshot and coarse health for a user.

        Raises:
            EntityNotFoundException: No such user
        """
        user = await self._require_user(user_id)
        remaining = self._breaker.remaining_cooldown(user, self._now())
        rate_limited = (
            await self._rate_limits.is_rate_limited(user_id) if self._rate_limits else False
        )
        return ArchivalStatus(
            user_id=user.id,
            health=(
                ArchivalHealth.DEGRADED
                if user.consecutive_failures > 0
                else ArchivalHealth.HEALTHY
            ),
            consecutive_failures=user.consecutive_failures,
            last_failure_type=user.last_failure_type,
            last_failed_at=user.last_failed_at,
            last_successful_at=user.last_successful_at,
            last_polled_at=user.last_polled_at,
            cooldown_remaining_seconds=int(remaining.total_seconds()),
            rate_limited=rate_limited,
        )
