"""
Producer- and monitoring-facing queue API.

Application code talks to the engine only through a QueueManager (or the
per-name Queue handles it hands out). Nothing here executes jobs; workers
pick up what is enqueued through the shared store.
"""

import logging
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from pydantic import ValidationError
from pydantic_core import PydanticSerializationError, to_jsonable_python

from jobqueue.config import QueueConfig, Settings
from jobqueue.constants import DEFAULT_PRIORITY, SPAN_ENQUEUE_JOB, JobState
from jobqueue.db.models import Job
from jobqueue.db.store import JobStore
from jobqueue.exceptions import (
    InvalidJobOptionsError,
    InvalidJobStateError,
    JobNotFoundError,
    UnknownQueueError,
)
from jobqueue.monitoring.reporter import HealthThresholds, StatsReporter
from jobqueue.observability.metrics import MetricsCollector, get_metrics
from jobqueue.observability.tracing import get_tracer
from jobqueue.types.job import JobOptions
from jobqueue.types.stats import OverallHealth, QueueHealth, QueueStats

logger = logging.getLogger(__name__)

ALL_STATES: tuple[JobState, ...] = tuple(JobState)


class QueueManager:
    """
    Entry point for producers and monitoring.

    Holds the configured queues and validates every request against them
    before touching the store. Validation problems are raised as
    QueueError subclasses; store outages surface as StoreUnavailableError.

    Example:
        manager = QueueManager.from_settings(store, settings)
        job_id = await manager.enqueue("email", "send-welcome", {"to": "a@b.c"})
        stats = await manager.queue("email").get_stats()
    """

    def __init__(
        self,
        store: JobStore,
        queues: dict[str, QueueConfig],
        thresholds: HealthThresholds | None = None,
        metrics: MetricsCollector | None = None,
    ):
        self._store = store
        self._queues = dict(queues)
        self._metrics = metrics or get_metrics()
        self._reporter = StatsReporter(
            store,
            list(self._queues),
            thresholds=thresholds,
            metrics=self._metrics,
        )
        self._handles: dict[str, Queue] = {}

    @classmethod
    def from_settings(
        cls,
        store: JobStore,
        settings: Settings,
        metrics: MetricsCollector | None = None,
    ) -> "QueueManager":
        return cls(
            store,
            settings.queues,
            thresholds=HealthThresholds.from_settings(settings),
            metrics=metrics,
        )

    @property
    def queue_names(self) -> list[str]:
        return list(self._queues)

    def queue(self, queue_name: str) -> "Queue":
        """Get the handle for a configured queue."""
        self._config(queue_name)
        if queue_name not in self._handles:
            self._handles[queue_name] = Queue(self, queue_name)
        return self._handles[queue_name]

    def _config(self, queue_name: str) -> QueueConfig:
        try:
            return self._queues[queue_name]
        except KeyError:
            raise UnknownQueueError(queue_name) from None

    # ------------------------------------------------------------------
    # Producer operations
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        queue_name: str,
        job_name: str,
        payload: Any = None,
        options: JobOptions | dict[str, Any] | None = None,
    ) -> int:
        """
        Submit a job.

        Unset options fall back to the queue configuration; priority
        defaults to NORMAL.

        Args:
            queue_name: A configured queue.
            job_name: Handler key within the queue.
            payload: JSON-serializable data for the handler.
            options: Priority, delay, attempts, backoff and timeout overrides.

        Returns:
            The id of the new job.

        Raises:
            UnknownQueueError: If the queue is not configured.
            InvalidJobOptionsError: If the name, payload or options are invalid.
        """
        config = self._config(queue_name)
        opts = _validate_options(options)

        if not isinstance(job_name, str) or not job_name:
            raise InvalidJobOptionsError("job_name must be a non-empty string")

        try:
            data = to_jsonable_python(payload)
        except PydanticSerializationError as e:
            raise InvalidJobOptionsError(f"Payload is not JSON serializable: {e}") from e

        with get_tracer().start_as_current_span(SPAN_ENQUEUE_JOB) as span:
            span.set_attribute("queue", queue_name)
            span.set_attribute("job_name", job_name)

            job = await self._store.push(
                queue_name,
                job_name,
                data,
                priority=opts.priority if opts.priority is not None else DEFAULT_PRIORITY,
                max_attempts=opts.attempts or config.attempts,
                backoff=opts.backoff or config.backoff,
                delay_ms=opts.delay_ms,
                timeout_ms=opts.timeout_ms,
            )
            span.set_attribute("job_id", job.id)

        self._metrics.record_job_enqueued(queue_name, job_name)
        logger.info(
            f"Added job {job_name} to {queue_name} queue",
            extra={"job_id": job.id, "queue": queue_name, "job_name": job_name},
        )
        return job.id

    async def schedule(
        self,
        queue_name: str,
        job_name: str,
        payload: Any,
        run_at: datetime,
        options: JobOptions | dict[str, Any] | None = None,
    ) -> int:
        """
        Submit a job that becomes eligible at run_at.

        Raises:
            InvalidJobOptionsError: If run_at is naive or not in the future.
        """
        if run_at.tzinfo is None:
            raise InvalidJobOptionsError("run_at must be timezone-aware")

        delay_ms = int(run_at.timestamp() * 1000) - self._store.clock()
        if delay_ms <= 0:
            raise InvalidJobOptionsError("Scheduled time must be in the future")

        opts = _validate_options(options).model_copy(update={"delay_ms": delay_ms})
        return await self.enqueue(queue_name, job_name, payload, opts)

    async def get_job(self, queue_name: str, job_id: int) -> Job | None:
        self._config(queue_name)
        return await self._store.get(job_id, queue_name)

    async def remove_job(self, queue_name: str, job_id: int) -> bool:
        """
        Remove a job that is not being processed.

        Returns:
            True if the job was removed, False if it did not exist.

        Raises:
            InvalidJobStateError: If the job is currently active.
        """
        self._config(queue_name)
        job = await self._store.get(job_id, queue_name)
        if job is None:
            return False
        if job.job_state == JobState.ACTIVE:
            raise InvalidJobStateError(job_id, job.state, "not active")

        removed = await self._store.delete(job_id, queue_name)
        if removed:
            logger.info(
                f"Removed job {job_id} from {queue_name} queue",
                extra={"job_id": job_id, "queue": queue_name},
            )
        return removed

    async def retry_job(
        self,
        queue_name: str,
        job_id: int,
        reset_attempts: bool = True,
    ) -> Job:
        """
        Move a failed job back to waiting.

        The previous last_error is kept for inspection.

        Raises:
            JobNotFoundError: If the job does not exist.
            InvalidJobStateError: If the job is not failed.
        """
        self._config(queue_name)
        job = await self._store.get(job_id, queue_name)
        if job is None:
            raise JobNotFoundError(queue_name, job_id)
        if job.job_state != JobState.FAILED:
            raise InvalidJobStateError(job_id, job.state, JobState.FAILED.value)

        retried = await self._store.retry_failed(job_id, queue_name, reset_attempts)
        if retried is None:
            # Retried or removed concurrently
            current = await self._store.get(job_id, queue_name)
            if current is None:
                raise JobNotFoundError(queue_name, job_id)
            raise InvalidJobStateError(job_id, current.state, JobState.FAILED.value)
        return retried

    async def pause_queue(self, queue_name: str) -> None:
        """Stop new jobs from being leased. Active jobs keep running."""
        self._config(queue_name)
        await self._store.set_paused(queue_name, True)
        logger.info(f"Paused {queue_name} queue", extra={"queue": queue_name})

    async def resume_queue(self, queue_name: str) -> None:
        self._config(queue_name)
        await self._store.set_paused(queue_name, False)
        logger.info(f"Resumed {queue_name} queue", extra={"queue": queue_name})

    async def list_jobs(
        self,
        queue_name: str,
        states: Sequence[JobState | str] = ALL_STATES,
        start: int = 0,
        end: int = 100,
    ) -> list[Job]:
        """
        List jobs in the given states, newest first.

        start and end are inclusive positions.
        """
        self._config(queue_name)
        if start < 0 or end < 0:
            raise InvalidJobOptionsError("start and end must be non-negative")
        try:
            parsed = [JobState(state) for state in states]
        except ValueError as e:
            raise InvalidJobOptionsError(str(e)) from e
        return list(await self._store.list_jobs(queue_name, parsed, start, end))

    async def cleanup_jobs(
        self,
        queue_name: str,
        older_than_ms: int,
        limit: int = 1000,
        state: JobState | str = JobState.COMPLETED,
    ) -> int:
        """
        Delete up to limit jobs in state older than older_than_ms.

        Returns:
            Number of deleted jobs.
        """
        self._config(queue_name)
        try:
            state = JobState(state)
        except ValueError as e:
            raise InvalidJobOptionsError(str(e)) from e
        if state == JobState.ACTIVE:
            raise InvalidJobOptionsError("Active jobs cannot be cleaned up")
        if older_than_ms < 0 or limit < 1:
            raise InvalidJobOptionsError("older_than_ms must be >= 0 and limit >= 1")

        removed = await self._store.sweep(queue_name, older_than_ms, state, limit)
        if removed:
            self._metrics.record_jobs_swept(queue_name, state.value, removed)
        return removed

    async def empty_queue(self, queue_name: str) -> int:
        """Remove every waiting and delayed job of a queue."""
        self._config(queue_name)
        removed = await self._store.empty(queue_name)
        logger.info(
            f"Emptied {queue_name} queue",
            extra={"queue": queue_name, "removed": removed},
        )
        return removed

    # ------------------------------------------------------------------
    # Monitoring operations
    # ------------------------------------------------------------------

    async def get_queue_stats(self, queue_name: str) -> QueueStats:
        self._config(queue_name)
        return await self._store.stats(queue_name)

    async def get_all_queue_stats(self) -> dict[str, QueueStats]:
        return {name: await self._store.stats(name) for name in self._queues}

    async def get_queue_health(self, queue_name: str) -> QueueHealth:
        self._config(queue_name)
        return await self._reporter.queue_health(queue_name)

    async def get_overall_health(self) -> OverallHealth:
        return await self._reporter.overall_health()


class Queue:
    """Handle bound to one configured queue."""

    def __init__(self, manager: QueueManager, name: str):
        self._manager = manager
        self.name = name

    def __repr__(self) -> str:
        return f"<Queue {self.name}>"

    async def enqueue(
        self,
        job_name: str,
        payload: Any = None,
        options: JobOptions | dict[str, Any] | None = None,
    ) -> int:
        return await self._manager.enqueue(self.name, job_name, payload, options)

    async def schedule(
        self,
        job_name: str,
        payload: Any,
        run_at: datetime,
        options: JobOptions | dict[str, Any] | None = None,
    ) -> int:
        return await self._manager.schedule(self.name, job_name, payload, run_at, options)

    async def get_job(self, job_id: int) -> Job | None:
        return await self._manager.get_job(self.name, job_id)

    async def remove_job(self, job_id: int) -> bool:
        return await self._manager.remove_job(self.name, job_id)

    async def retry_job(self, job_id: int, reset_attempts: bool = True) -> Job:
        return await self._manager.retry_job(self.name, job_id, reset_attempts)

    async def pause(self) -> None:
        await self._manager.pause_queue(self.name)

    async def resume(self) -> None:
        await self._manager.resume_queue(self.name)

    async def list_jobs(
        self,
        states: Sequence[JobState | str] = ALL_STATES,
        start: int = 0,
        end: int = 100,
    ) -> list[Job]:
        return await self._manager.list_jobs(self.name, states, start, end)

    async def cleanup(
        self,
        older_than_ms: int,
        limit: int = 1000,
        state: JobState | str = JobState.COMPLETED,
    ) -> int:
        return await self._manager.cleanup_jobs(self.name, older_than_ms, limit, state)

    async def empty(self) -> int:
        return await self._manager.empty_queue(self.name)

    async def get_stats(self) -> QueueStats:
        return await self._manager.get_queue_stats(self.name)

    async def get_health(self) -> QueueHealth:
        return await self._manager.get_queue_health(self.name)


def _validate_options(options: JobOptions | dict[str, Any] | None) -> JobOptions:
    if options is None:
        return JobOptions()
    if isinstance(options, JobOptions):
        return options
    try:
        return JobOptions.model_validate(options)
    except ValidationError as e:
        raise InvalidJobOptionsError(f"Invalid job options: {e}") from e
