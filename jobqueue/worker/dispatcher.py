"""
Per-queue dispatcher.

Leases ready jobs from the store and hands them to the queue's worker pool,
never holding a lease without a free slot to run it in.
"""

import logging

from jobqueue.constants import SPAN_ACQUIRE_LEASE
from jobqueue.db.models import Job
from jobqueue.db.store import JobStore
from jobqueue.exceptions import StoreUnavailableError
from jobqueue.observability.metrics import MetricsCollector, get_metrics
from jobqueue.observability.tracing import get_tracer
from jobqueue.periodic import PeriodicService
from jobqueue.worker.pool import WorkerPool

logger = logging.getLogger(__name__)


class Dispatcher(PeriodicService):
    """
    Continuously leases jobs for one queue while the pool has capacity.

    Each iteration reserves a pool slot first and only then calls
    lease_pop, so leased-but-undispatched jobs never exist. When nothing is
    available (empty or paused queue) the slot is returned and the
    dispatcher sleeps for the poll interval.
    """

    def __init__(
        self,
        queue_name: str,
        store: JobStore,
        pool: WorkerPool,
        worker_id: str,
        poll_interval: float = 1.0,
        store_retry_interval: float = 5.0,
        metrics: MetricsCollector | None = None,
    ):
        super().__init__(interval=poll_interval, retry_interval=store_retry_interval)
        self.name = f"dispatcher[{queue_name}]"
        self.queue_name = queue_name
        self.worker_id = worker_id
        self._store = store
        self._pool = pool
        self._metrics = metrics or get_metrics()

    async def run_once(self) -> Job | None:
        """
        Lease and dispatch at most one job.

        Waits for a free slot first.

        Returns:
            The dispatched job, or None if nothing was leased.
        """
        await self._pool.acquire_slot()
        if self._stopped.is_set():
            self._pool.release_slot()
            return None

        try:
            with get_tracer().start_as_current_span(SPAN_ACQUIRE_LEASE) as span:
                span.set_attribute("queue", self.queue_name)
                job = await self._store.lease_pop(self.queue_name, self.worker_id)
        except BaseException:
            self._pool.release_slot()
            raise

        if job is None:
            self._pool.release_slot()
            return None

        self._metrics.record_lease_acquired(self.queue_name, self.worker_id)
        self._pool.dispatch(job)
        return job

    async def start(self) -> None:
        """Dispatch until stop() is called. In-flight jobs are not affected by stopping."""
        logger.info(
            "Dispatcher starting",
            extra={
                "queue": self.queue_name,
                "worker_id": self.worker_id,
                "concurrency": self._pool.concurrency,
            },
        )
        self._running = True
        self._stopped.clear()

        while not self._stopped.is_set():
            try:
                job = await self.run_once()
            except StoreUnavailableError as e:
                logger.warning(
                    f"Store unavailable, retrying in {self.retry_interval}s: {e}",
                    extra={"queue": self.queue_name},
                )
                await self.sleep(self.retry_interval)
                continue
            except Exception as e:
                logger.exception(
                    f"Error in dispatcher loop: {e}",
                    extra={"queue": self.queue_name},
                )
                await self.sleep(self.interval)
                continue

            if job is None:
                await self.sleep(self.interval)

        self._running = False
        logger.info("Dispatcher stopped", extra={"queue": self.queue_name})
