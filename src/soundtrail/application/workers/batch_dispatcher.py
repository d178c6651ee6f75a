"""In-process batch dispatch.

Hey future me - production setups usually hand batches to an external queue (delayed HTTP
delivery to POST /api/archive/batch). This dispatcher is the no-extra-infrastructure option:
each batch becomes a detached asyncio task that sleeps for its delay and then runs on the
BatchExecutor. Fire-and-forget, but NOT unobserved - every task is tracked so shutdown can
cancel them, and a crashing batch is logged and dropped instead of surfacing as "Task exception
was never retrieved".
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable

from soundtrail.application.workers.batch_executor import BatchExecutor
from soundtrail.domain.entities import BatchPayload
from soundtrail.domain.ports import IBatchDispatcher

logger = logging.getLogger(__name__)


class InProcessBatchDispatcher(IBatchDispatcher):
    """Runs dispatched batches as delayed background tasks in this process."""

    def __init__(self, executor: BatchExecutor) -> None:
        """Initialize dispatcher.

        Args:
            executor: Executor that runs each batch
        """
        self._executor = executor
        self._tasks: set[asyncio.Task[None]] = set()
        # Swapped out in tests so nobody waits for real
        self._sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    @property
    def pending(self) -> int:
        """Number of batches scheduled or running."""
        return len(self._tasks)

    async def dispatch(self, payload: BatchPayload, delay_seconds: int) -> None:
        """Schedule payload to run on the executor after delay_seconds."""
        task = asyncio.create_task(
            self._run(payload, delay_seconds),
            name=f"archive-batch-{payload.batch_number}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, payload: BatchPayload, delay_seconds: int) -> None:
        if delay_seconds > 0:
            await self._sleep(delay_seconds)
        try:
            await self._executor.execute(
                payload.user_ids, payload.batch_number, payload.total_batches
            )
        except Exception:
            logger.exception(
                f"Batch {payload.batch_number}/{payload.total_batches} crashed, dropping it"
            )

    async def wait_idle(self) -> None:
        """Wait until every dispatched batch has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel all pending batches and wait for them to unwind."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"Cancelled {len(tasks)} pending archive batches")
