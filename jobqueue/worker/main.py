"""
Worker process for executing jobs.

One process runs a dispatcher and a worker pool per queue, plus the
reaper, the stats reporter and the cleanup sweeper. All of them share
nothing but the job store, so any number of worker processes can run
against the same database.
"""

import asyncio
import logging
import os
import signal
import socket

from jobqueue.cleanup import CleanupSweeper
from jobqueue.config import Settings, get_settings
from jobqueue.db import JobStore, close_db, create_engine, create_session_factory, init_db
from jobqueue.exceptions import UnknownQueueError
from jobqueue.monitoring import HealthThresholds, StatsReporter
from jobqueue.observability.logging import bind_context, setup_logging
from jobqueue.observability.metrics import MetricsCollector, get_metrics
from jobqueue.observability.tracing import instrument_sqlalchemy, setup_tracing
from jobqueue.periodic import PeriodicService
from jobqueue.reaper import Reaper
from jobqueue.retry import RetryCoordinator
from jobqueue.worker.dispatcher import Dispatcher
from jobqueue.worker.pool import WorkerPool
from jobqueue.worker.registry import HandlerRegistry, load_registry

logger = logging.getLogger(__name__)


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


class Worker:
    """
    Job worker that runs every configured queue in one process.

    Features:
    - One dispatcher and bounded pool per queue
    - Heartbeat to extend leases for long-running jobs
    - Reaper, stats reporter and cleanup sweeper in the background
    - Graceful shutdown on SIGTERM/SIGINT
    """

    def __init__(
        self,
        store: JobStore,
        registry: HandlerRegistry,
        settings: Settings | None = None,
        worker_id: str | None = None,
        queue_names: list[str] | None = None,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the worker.

        Args:
            store: The job store.
            registry: Handlers for the jobs this worker runs.
            settings: Application settings.
            worker_id: Unique worker identifier. Defaults to hostname + PID.
            queue_names: Queues to dispatch from. Defaults to all configured
                queues. Maintenance always covers every configured queue.
            metrics: Metrics collector.
        """
        settings = settings or get_settings()
        metrics = metrics or get_metrics()

        self.worker_id = worker_id or settings.worker_id or default_worker_id()
        self._settings = settings

        names = queue_names if queue_names is not None else list(settings.queues)
        for name in names:
            if name not in settings.queues:
                raise UnknownQueueError(name)

        retry = RetryCoordinator(store)
        self.pools: dict[str, WorkerPool] = {}
        self.dispatchers: dict[str, Dispatcher] = {}
        for name in names:
            pool = WorkerPool(
                name,
                settings.queues[name],
                store,
                registry,
                retry=retry,
                worker_id=self.worker_id,
                heartbeat_interval=settings.worker_heartbeat_interval_seconds,
                metrics=metrics,
            )
            self.pools[name] = pool
            self.dispatchers[name] = Dispatcher(
                name,
                store,
                pool,
                self.worker_id,
                poll_interval=settings.worker_poll_interval_seconds,
                store_retry_interval=settings.store_retry_interval_seconds,
                metrics=metrics,
            )

        self.services: list[PeriodicService] = [
            Reaper(
                store,
                settings.queues,
                interval_seconds=settings.reaper_interval_seconds,
                retry_interval_seconds=settings.store_retry_interval_seconds,
                metrics=metrics,
            ),
            StatsReporter(
                store,
                list(settings.queues),
                thresholds=HealthThresholds.from_settings(settings),
                interval_seconds=settings.stats_interval_seconds,
                retry_interval_seconds=settings.store_retry_interval_seconds,
                metrics=metrics,
            ),
        ]
        if settings.cleanup_enabled:
            self.services.append(
                CleanupSweeper(
                    store,
                    settings.queues,
                    batch_limit=settings.cleanup_batch_limit,
                    interval_seconds=settings.cleanup_interval_seconds,
                    retry_interval_seconds=settings.store_retry_interval_seconds,
                    metrics=metrics,
                )
            )

        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """
        Run until stop() is called, then shut down in order.

        Dispatchers stop leasing first, in-flight jobs are drained, and the
        background services are stopped last.
        """
        logger.info(
            "Worker starting",
            extra={"worker_id": self.worker_id, "queues": list(self.dispatchers)},
        )
        self._running = True

        for pool in self.pools.values():
            pool.start()

        dispatcher_tasks = [
            asyncio.create_task(dispatcher.start()) for dispatcher in self.dispatchers.values()
        ]
        service_tasks = [asyncio.create_task(service.start()) for service in self.services]

        try:
            await asyncio.gather(*dispatcher_tasks)
        finally:
            for pool in self.pools.values():
                await pool.close()

            for service in self.services:
                await service.stop()
            await asyncio.gather(*service_tasks, return_exceptions=True)

            self._running = False
            logger.info("Worker stopped", extra={"worker_id": self.worker_id})

    async def stop(self) -> None:
        """Stop leasing new jobs. start() returns once in-flight jobs finish."""
        logger.info("Worker stopping", extra={"worker_id": self.worker_id})
        for dispatcher in self.dispatchers.values():
            await dispatcher.stop()


async def run_async(
    registry: HandlerRegistry | None = None,
    settings: Settings | None = None,
) -> None:
    """Run the worker asynchronously."""
    settings = settings or get_settings()
    setup_logging(settings)
    setup_tracing(settings)

    if registry is None:
        if not settings.worker_handlers:
            raise ValueError("No handler registry given; set WORKER_HANDLERS")
        registry = load_registry(settings.worker_handlers)

    engine = create_engine(settings=settings)
    instrument_sqlalchemy(engine)
    await init_db(engine)
    store = JobStore(
        create_session_factory(engine),
        lease_duration_ms=settings.worker_lease_duration_seconds * 1000,
    )

    worker = Worker(store, registry, settings)
    bind_context(worker_id=worker.worker_id)

    # Handle shutdown signals
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: asyncio.create_task(worker.stop()))

    try:
        await worker.start()
    finally:
        await close_db(engine)


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
