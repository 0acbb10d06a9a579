"""
Worker pool: bounded execution slots for one queue.

The dispatcher reserves a slot before leasing, so a leased job always has
somewhere to run. The pool executes the registered handler, records the
outcome, and keeps leases of in-flight jobs alive with a heartbeat.
"""

import asyncio
import inspect
import logging
import time
from functools import partial
from typing import Any

from pydantic_core import to_jsonable_python

from jobqueue.config import QueueConfig
from jobqueue.constants import ERROR_NO_HANDLER, SPAN_EXECUTE_JOB
from jobqueue.db.models import Job
from jobqueue.db.store import JobStore
from jobqueue.exceptions import InvalidHandlerError, JobTimeoutError, StoreUnavailableError
from jobqueue.observability.metrics import MetricsCollector, get_metrics
from jobqueue.observability.tracing import get_tracer
from jobqueue.retry import RetryCoordinator
from jobqueue.types.job import JobContext, JobResult
from jobqueue.worker.registry import HandlerRegistry, JobHandler

logger = logging.getLogger(__name__)


class WorkerPool:
    """
    Executes leased jobs of one queue with at most `concurrency` running.

    Features:
    - Slot reservation so the dispatcher never leases more than it can run
    - Per-job execution timeout (the handler is shielded, not cancelled)
    - Heartbeat to extend leases for long-running jobs
    - Retry and failure handling through the RetryCoordinator
    """

    def __init__(
        self,
        queue_name: str,
        config: QueueConfig,
        store: JobStore,
        registry: HandlerRegistry,
        retry: RetryCoordinator | None = None,
        worker_id: str = "worker",
        heartbeat_interval: float = 10.0,
        metrics: MetricsCollector | None = None,
    ):
        self.queue_name = queue_name
        self.worker_id = worker_id
        self._config = config
        self._store = store
        self._registry = registry
        self._retry = retry or RetryCoordinator(store)
        self._heartbeat_interval = heartbeat_interval
        self._metrics = metrics or get_metrics()

        self._slots = asyncio.Semaphore(config.concurrency)
        self._in_flight: dict[int, tuple[asyncio.Task, str]] = {}
        self._orphans: set[asyncio.Task] = set()
        self._heartbeat_task: asyncio.Task | None = None

    @property
    def concurrency(self) -> int:
        return self._config.concurrency

    @property
    def active_count(self) -> int:
        return len(self._in_flight)

    def has_free_slot(self) -> bool:
        return not self._slots.locked()

    async def acquire_slot(self) -> None:
        """Wait until an execution slot is free and reserve it."""
        await self._slots.acquire()

    def release_slot(self) -> None:
        """Give back a reserved slot that was not used."""
        self._slots.release()

    def dispatch(self, job: Job) -> asyncio.Task:
        """
        Start executing a leased job in a previously reserved slot.

        The slot is released when execution finishes.
        """
        task = asyncio.create_task(
            self._run(job),
            name=f"job-{self.queue_name}-{job.id}",
        )
        self._in_flight[job.id] = (task, job.lease_token)
        return task

    async def _run(self, job: Job) -> None:
        try:
            await self.execute(job)
        except StoreUnavailableError:
            # The outcome could not be recorded; the lease will expire and
            # the reaper returns the job to the queue.
            logger.exception(
                "Store unavailable while recording job outcome",
                extra={"job_id": job.id, "queue": self.queue_name},
            )
        except Exception:
            logger.exception(
                "Unexpected error executing job",
                extra={"job_id": job.id, "queue": self.queue_name},
            )
        finally:
            self._in_flight.pop(job.id, None)
            self._slots.release()

    async def execute(self, job: Job) -> None:
        """
        Execute a single leased job.

        Handles the full attempt:
        1. Look up the handler (none registered = permanent failure)
        2. Run it under the execution timeout
        3. Mark the job COMPLETED, or hand the failure to the RetryCoordinator

        Args:
            job: The job as returned by lease_pop.
        """
        start_time = time.monotonic()
        lease_token = job.lease_token

        handler = self._registry.get(self.queue_name, job.job_name)
        if handler is None:
            logger.error(
                f"No handler for job name: {job.job_name}",
                extra={"job_id": job.id, "queue": self.queue_name},
            )
            await self._record_failure(
                job,
                lease_token,
                f"{ERROR_NO_HANDLER}: {job.job_name}",
                start_time,
                permanent=True,
            )
            return

        context = JobContext(
            job_id=job.id,
            queue_name=job.queue_name,
            job_name=job.job_name,
            payload=job.payload,
            attempt=job.attempts_made + 1,
            max_attempts=job.max_attempts,
            priority=job.priority,
            _progress_reporter=partial(self._report_progress, job.id, lease_token),
        )

        logger.info(
            "Executing job",
            extra={
                "job_id": job.id,
                "queue": self.queue_name,
                "job_name": job.job_name,
                "attempt": context.attempt,
            },
        )

        error: str | None = None
        permanent = False
        output: Any = None

        with get_tracer().start_as_current_span(SPAN_EXECUTE_JOB) as span:
            span.set_attribute("job_id", job.id)
            span.set_attribute("queue", self.queue_name)
            span.set_attribute("job_name", job.job_name)
            span.set_attribute("attempt", context.attempt)

            try:
                output = await self._invoke(handler, context, self._timeout_for(job))
            except JobTimeoutError as e:
                error = str(e)
            except InvalidHandlerError as e:
                logger.error(str(e), extra={"job_id": job.id, "queue": self.queue_name})
                error = str(e)
                permanent = True
            except Exception as e:
                logger.warning(
                    "Handler raised exception",
                    exc_info=True,
                    extra={"job_id": job.id, "queue": self.queue_name},
                )
                error = str(e) or type(e).__name__

            if error is None and isinstance(output, JobResult):
                if output.success:
                    output = output.output
                else:
                    error = output.error or "Job reported failure"

            if error is not None:
                span.set_attribute("error", error)

        if error is not None:
            await self._record_failure(job, lease_token, error, start_time, permanent=permanent)
            return

        completed = await self._store.complete(
            job.id,
            lease_token,
            result=to_jsonable_python(output, fallback=repr),
            remove=self._config.remove_on_complete == 0,
        )
        if completed is None:
            return

        duration = time.monotonic() - start_time
        logger.info(
            "Job completed successfully",
            extra={
                "job_id": job.id,
                "queue": self.queue_name,
                "duration": f"{duration:.2f}s",
            },
        )
        self._metrics.record_job_finished(self.queue_name, "completed", duration)

    async def _record_failure(
        self,
        job: Job,
        lease_token: str,
        error: str,
        start_time: float,
        permanent: bool = False,
    ) -> None:
        decision = await self._retry.handle_failure(
            job,
            lease_token,
            error,
            permanent=permanent,
            remove_on_fail=self._config.remove_on_fail == 0,
        )
        if decision is None:
            return

        self._metrics.record_job_finished(
            self.queue_name,
            "retried" if decision.will_retry else "failed",
            time.monotonic() - start_time,
        )

    def _timeout_for(self, job: Job) -> float | None:
        if job.timeout_ms is not None:
            return job.timeout_ms / 1000
        return self._config.job_timeout_seconds

    async def _invoke(
        self,
        handler: JobHandler,
        context: JobContext,
        timeout: float | None,
    ) -> Any:
        """
        Run the handler, giving up on it after timeout seconds.

        A timed-out handler keeps running in the background; its late
        result is discarded because its lease token is no longer valid.
        """
        pending = handler(context)
        if not inspect.isawaitable(pending):
            raise InvalidHandlerError(f"Handler for {context.job_name} did not return an awaitable")

        task = asyncio.ensure_future(pending)
        if timeout is None:
            return await task

        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout)
        except TimeoutError:
            if task.done():
                raise
            self._orphans.add(task)
            task.add_done_callback(self._orphan_finished)
            raise JobTimeoutError(timeout) from None

    def _orphan_finished(self, task: asyncio.Task) -> None:
        self._orphans.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(
                "Timed-out handler finished with error",
                extra={"queue": self.queue_name, "error": str(task.exception())},
            )

    async def _report_progress(self, job_id: int, lease_token: str, progress: int) -> None:
        try:
            held = await self._store.update_progress(job_id, lease_token, progress)
        except StoreUnavailableError:
            logger.warning("Could not record progress", extra={"job_id": job_id})
            return
        if not held:
            logger.warning("Progress reported on a lost lease", extra={"job_id": job_id})

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the lease heartbeat."""
        if self._heartbeat_task is None:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    async def drain(self) -> None:
        """Wait for every in-flight job to finish."""
        tasks = [task for task, _ in self._in_flight.values()]
        if tasks:
            logger.info(
                f"Waiting for {len(tasks)} jobs to complete",
                extra={"queue": self.queue_name},
            )
            await asyncio.gather(*tasks, return_exceptions=True)

    async def close(self) -> None:
        """Drain in-flight jobs and stop the heartbeat."""
        await self.drain()
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None

    async def _heartbeat_loop(self) -> None:
        """
        Periodically extend leases on running jobs.

        This prevents jobs from being reclaimed by the reaper
        while they're still being executed.
        """
        while True:
            await asyncio.sleep(self._heartbeat_interval)

            try:
                for job_id, (_, lease_token) in list(self._in_flight.items()):
                    if await self._store.extend_lease(job_id, lease_token):
                        logger.debug("Extended lease", extra={"job_id": job_id})
                    else:
                        logger.warning("Lease lost", extra={"job_id": job_id})
            except StoreUnavailableError as e:
                logger.warning(
                    f"Store unavailable during heartbeat: {e}",
                    extra={"queue": self.queue_name},
                )
            except Exception:
                logger.exception("Error in heartbeat loop", extra={"queue": self.queue_name})
