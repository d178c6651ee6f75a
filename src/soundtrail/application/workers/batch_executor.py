"""Fault-isolated concurrent execution of archive workers."""

import asyncio
import logging
import time
import uuid
from collections.abc import Callable, Sequence

from soundtrail.application.services.circuit_breaker import classify_failure
from soundtrail.application.workers.archive_user_worker import ArchiveUserWorker
from soundtrail.domain.entities import (
    ArchiveResult,
    BatchPayload,
    BatchResult,
    MultiBatchResult,
)
from soundtrail.infrastructure.observability import set_correlation_id

logger = logging.getLogger(__name__)

# Max execution window of the hosting platform
DEFAULT_BUDGET_SECONDS = 300.0


class BatchExecutor:
    """Runs one worker per user concurrently and aggregates the outcomes.

    Hey future me - the ONE property that matters here: a single poisoned user (malformed data,
    a bug that raises instead of returning FAILED) must never take the batch down with it.
    Two layers make sure of that: _run_one turns any exception into a FAILED result, and
    gather(return_exceptions=True) catches whatever still escapes (e.g. a cancelled task).
    Every user id in the batch gets exactly one outcome in the result.
    """

    def __init__(
        self,
        worker: ArchiveUserWorker,
        budget_seconds: float = DEFAULT_BUDGET_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize executor.

        Args:
            worker: Single-user archive worker
            budget_seconds: Wall-clock budget for execute_many
            clock: Monotonic clock, injectable for tests
        """
        self._worker = worker
        self._budget_seconds = budget_seconds
        self._clock = clock

    async def _run_one(self, user_id: str) -> ArchiveResult:
        try:
            return await self._worker.archive(user_id)
        except Exception as e:
            logger.exception(f"Worker crashed for user {user_id}")
            return ArchiveResult.failed(
                user_id, classify_failure(e), str(e) or e.__class__.__name__
            )

    async def execute(
        self,
        user_ids: Sequence[str],
        batch_number: int | None = None,
        total_batches: int | None = None,
    ) -> BatchResult:
        """Archive all users of one batch concurrently.

        Args:
            user_ids: Users to archive (duplicates are processed once)
            batch_number: Position in the sweep, for logging
            total_batches: Size of the sweep, for logging

        Returns:
            Aggregated counts, per-user results and the failure list
        """
        unique_ids = list(dict.fromkeys(user_ids))
        if len(unique_ids) != len(user_ids):
            logger.warning(
                f"Batch contained {len(user_ids) - len(unique_ids)} duplicate user ids"
            )

        label = f"{batch_number or '?'}/{total_batches or '?'}"
        # Worker tasks copy this context, so every log line of the batch carries the id
        set_correlation_id(f"batch-{batch_number or 0}-{uuid.uuid4().hex[:8]}")
        logger.info(f"Processing batch {label} with {len(unique_ids)} users")

        started = self._clock()
        outcomes = await asyncio.gather(
            *(self._run_one(user_id) for user_id in unique_ids),
            return_exceptions=True,
        )

        result = BatchResult()
        for user_id, outcome in zip(unique_ids, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                logger.error(f"Worker task for user {user_id} did not complete: {outcome!r}")
                outcome = ArchiveResult.failed(
                    user_id, classify_failure(outcome), repr(outcome)
                )
            result.add(outcome)
        result.duration_ms = int((self._clock() - started) * 1000)

        if result.failed:
            logger.warning(
                f"Batch {label} completed with {result.failed}/{result.processed} failures: "
                + ", ".join(f"{f.user_id}: {f.error}" for f in result.failures)
            )
        logger.info(
            f"Batch {label} completed in {result.duration_ms}ms: {result.successful} success, "
            f"{result.skipped} skipped, {result.failed} failed",
            extra={
                "batch_number": batch_number,
                "processed": result.processed,
                "successful": result.successful,
                "skipped": result.skipped,
                "failed": result.failed,
                "archived": result.total_songs_archived,
                "duration_ms": result.duration_ms,
            },
        )
        return result

    # Listen up, the budget check happens BETWEEN batches only. A batch that already started
    # runs to completion (its workers are mid-flight against Spotify and the DB); we just don't
    # start the next one once the budget is gone. Skipped batches show up in the result.
    async def execute_many(self, batches: Sequence[BatchPayload]) -> MultiBatchResult:
        """Run batches back to back within the wall-clock budget."""
        started = self._clock()
        summary = MultiBatchResult()
        totals = summary.totals

        for payload in batches:
            elapsed = self._clock() - started
            if elapsed >= self._budget_seconds:
                summary.batches_skipped += 1
                summary.skipped_user_ids.extend(payload.user_ids)
                continue

            result = await self.execute(
                payload.user_ids, payload.batch_number, payload.total_batches
            )
            summary.batches_run += 1
            totals.processed += result.processed
            totals.successful += result.successful
            totals.skipped += result.skipped
            totals.failed += result.failed
            totals.total_songs_archived += result.total_songs_archived
            totals.results.extend(result.results)
            totals.failures.extend(result.failures)

        totals.duration_ms = int((self._clock() - started) * 1000)
        if summary.batches_skipped:
            logger.warning(
                f"Execution budget of {self._budget_seconds:.0f}s exhausted, "
                f"{summary.batches_skipped} batches ({len(summary.skipped_user_ids)} users) not started"
            )
        return summary
