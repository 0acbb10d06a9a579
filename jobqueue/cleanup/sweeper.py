"""
Retention sweeper for finished jobs.
"""

import logging

from jobqueue.config import QueueConfig
from jobqueue.constants import JobState
from jobqueue.db.store import JobStore
from jobqueue.observability.metrics import MetricsCollector, get_metrics
from jobqueue.periodic import PeriodicService

logger = logging.getLogger(__name__)


class CleanupSweeper(PeriodicService):
    """
    Deletes old terminal jobs according to each queue's retention rules.

    Two rules are applied per queue and terminal state:
    - age: jobs finished longer ago than the retention window are removed
    - count: only the newest remove_on_complete / remove_on_fail are kept

    Each pass deletes at most batch_limit jobs per queue and state, so a
    large backlog is worked off over several runs.
    """

    name = "cleanup"

    def __init__(
        self,
        store: JobStore,
        queues: dict[str, QueueConfig],
        batch_limit: int = 1000,
        interval_seconds: float = 3600.0,
        retry_interval_seconds: float | None = None,
        metrics: MetricsCollector | None = None,
    ):
        super().__init__(interval_seconds, retry_interval_seconds)
        self._store = store
        self._queues = queues
        self.batch_limit = batch_limit
        self._metrics = metrics or get_metrics()

    async def run_once(self) -> int:
        """
        Apply retention to every queue once.

        Returns:
            Total number of deleted jobs.
        """
        total = 0
        for queue_name, config in self._queues.items():
            rules = (
                (
                    JobState.COMPLETED,
                    config.completed_retention_seconds,
                    config.remove_on_complete,
                ),
                (
                    JobState.FAILED,
                    config.failed_retention_seconds,
                    config.remove_on_fail,
                ),
            )
            for state, retention_seconds, keep in rules:
                removed = await self._store.sweep(
                    queue_name,
                    older_than_ms=int(retention_seconds * 1000),
                    state=state,
                    limit=self.batch_limit,
                )
                if keep is not None:
                    removed += await self._store.trim(
                        queue_name,
                        state=state,
                        keep=keep,
                        limit=self.batch_limit,
                    )

                if removed:
                    self._metrics.record_jobs_swept(queue_name, state.value, removed)
                    total += removed

        if total:
            logger.info(f"Cleanup removed {total} jobs")
        return total
