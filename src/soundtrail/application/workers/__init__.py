"""Worker system - archive runs, batch execution and hourly fan-out."""

from soundtrail.application.workers.archive_scheduler import (
    ArchiveScheduler,
    compute_batch_delays,
    partition,
)
from soundtrail.application.workers.archive_user_worker import ArchiveUserWorker
from soundtrail.application.workers.batch_dispatcher import InProcessBatchDispatcher
from soundtrail.application.workers.batch_executor import BatchExecutor

__all__ = [
    "ArchiveScheduler",
    "ArchiveUserWorker",
    "BatchExecutor",
    "InProcessBatchDispatcher",
    "compute_batch_delays",
    "partition",
]
