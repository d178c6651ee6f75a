"""Hourly fan-out: pick eligible users, cut them into batches, spread batches over the hour."""

import logging
from collections.abc import Sequence
from typing import TypeVar

from soundtrail.application.services.circuit_breaker import CircuitBreaker
from soundtrail.domain.entities import BatchPayload, ScheduleResult
from soundtrail.domain.ports import IBatchDispatcher
from soundtrail.infrastructure.persistence import Database, UserRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_BATCH_SIZE = 50
DEFAULT_INTERVAL_SECONDS = 60 * 60


def partition(items: Sequence[T], size: int) -> list[list[T]]:
    """Split items into consecutive chunks of at most size, order preserved."""
    if size < 1:
        raise ValueError(f"Batch size must be positive, got {size}")
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


# Hey future me - equidistant spread: with 4 batches in an hour they start at 0, 900, 1800, 2700s.
# The step is floored to whole seconds (queue providers want integers), so the last batch starts
# slightly before interval - step, never after. First batch always runs immediately.
def compute_batch_delays(batch_count: int, interval_seconds: int) -> list[int]:
    """Delay in seconds for each batch, spreading batch_count batches over interval_seconds."""
    if batch_count <= 0:
        return []
    step = interval_seconds // batch_count
    return [index * step for index in range(batch_count)]


class ArchiveScheduler:
    """Selects eligible users and dispatches them as time-spread batches."""

    def __init__(
        self,
        database: Database,
        breaker: CircuitBreaker,
        dispatcher: IBatchDispatcher,
        batch_size: int = DEFAULT_BATCH_SIZE,
        interval_seconds: int = DEFAULT_INTERVAL_SECONDS,
    ) -> None:
        """Initialize scheduler.

        Args:
            database: Database to read users from
            breaker: Circuit breaker used to drop users in cooldown
            dispatcher: Where batches get delivered
            batch_size: Users per batch
            interval_seconds: Window to spread the batches over
        """
        self._database = database
        self._breaker = breaker
        self._dispatcher = dispatcher
        self._batch_size = batch_size
        self._interval_seconds = interval_seconds

    # Listen up, the scheduler doesn't guarantee exclusivity. If two passes overlap, a user can be
    # dispatched twice before the first run marks its idempotency key - the gate in the worker
    # is the backstop for that, the ordering here is only a priority heuristic.
    async def run(self) -> ScheduleResult:
        """Run one scheduling pass."""
        async with self._database.session_scope() as session:
            users = await UserRepository(session).list_schedulable()

        eligible = self._breaker.filter_eligible(users)
        result = ScheduleResult(
            total_active_users=len(users),
            user_count=len(eligible),
            filtered_out=len(users) - len(eligible),
        )
        logger.info(
            f"Found {len(users)} active users, {len(eligible)} eligible after circuit breaker"
        )

        if not eligible:
            logger.info("No users to process")
            return result

        batches = partition([user.id for user in eligible], self._batch_size)
        delays = compute_batch_delays(len(batches), self._interval_seconds)
        result.batch_count = len(batches)
        result.delays = delays

        for index, (user_ids, delay) in enumerate(zip(batches, delays, strict=True)):
            payload = BatchPayload(
                user_ids=user_ids, batch_number=index + 1, total_batches=len(batches)
            )
            try:
                await self._dispatcher.dispatch(payload, delay)
            except Exception:
                # One undeliverable batch must not cost the remaining batches their slot
                result.failed_dispatches += 1
                logger.exception(f"Failed to dispatch batch {index + 1}/{len(batches)}")
                continue
            logger.info(
                f"Queued batch {index + 1}/{len(batches)} with {len(user_ids)} users "
                f"(delay: {delay}s)"
            )

        return result
