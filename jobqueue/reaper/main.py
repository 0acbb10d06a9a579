"""
Stalled-job reaper.

The reaper runs periodically to find active jobs whose lease has expired
and returns them to the queue. This handles worker crashes and ensures
at-least-once delivery. It also promotes delayed jobs that have become due.
"""

import asyncio
import logging
import signal

from jobqueue.config import QueueConfig, Settings, get_settings
from jobqueue.db import JobStore, close_db, create_engine, create_session_factory, init_db
from jobqueue.observability.logging import setup_logging
from jobqueue.observability.metrics import MetricsCollector, get_metrics
from jobqueue.observability.tracing import instrument_sqlalchemy, setup_tracing
from jobqueue.periodic import PeriodicService

logger = logging.getLogger(__name__)


class Reaper(PeriodicService):
    """
    Lease reaper that recovers stalled jobs.

    Runs periodically to:
    1. Find ACTIVE jobs with an expired lease_expires_at
    2. Return them to WAITING without consuming an attempt
    3. Promote due DELAYED jobs to WAITING
    4. Record metrics for monitoring

    Several reapers may run against the same store; each expired job is
    reclaimed exactly once.
    """

    name = "reaper"

    def __init__(
        self,
        store: JobStore,
        queues: dict[str, QueueConfig],
        interval_seconds: float = 30.0,
        retry_interval_seconds: float | None = None,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the reaper.

        Args:
            store: The job store.
            queues: Queue configurations, keyed by queue name.
            interval_seconds: Seconds between reaper runs.
            retry_interval_seconds: Seconds to wait after a store outage.
        """
        super().__init__(interval_seconds, retry_interval_seconds)
        self._store = store
        self._queues = queues
        self._metrics = metrics or get_metrics()

    async def run_once(self) -> int:
        """
        Run one sweep over every queue (also usable cron-style).

        Returns:
            Number of jobs recovered or failed as stalled.
        """
        total = 0
        for queue_name, config in self._queues.items():
            outcome = await self._store.reclaim_expired_leases(
                queue_name,
                max_stalled_count=config.max_stalled_count,
            )
            await self._store.promote_delayed(queue_name)

            if outcome.total:
                self._metrics.record_lease_expired(queue_name, outcome.total)
                total += outcome.total

        if total:
            logger.info(f"Recovered {total} expired leases")
        return total


async def run_async(settings: Settings | None = None) -> None:
    """Run a standalone reaper process."""
    settings = settings or get_settings()
    setup_logging(settings)
    setup_tracing(settings)

    engine = create_engine(settings=settings)
    instrument_sqlalchemy(engine)
    await init_db(engine)
    store = JobStore(
        create_session_factory(engine),
        lease_duration_ms=settings.worker_lease_duration_seconds * 1000,
    )

    reaper = Reaper(
        store,
        settings.queues,
        interval_seconds=settings.reaper_interval_seconds,
        retry_interval_seconds=settings.store_retry_interval_seconds,
    )

    # Handle shutdown signals
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: asyncio.create_task(reaper.stop()))

    try:
        await reaper.start()
    finally:
        await close_db(engine)


def run() -> None:
    """Run the reaper."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
