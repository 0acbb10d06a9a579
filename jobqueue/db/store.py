"""
Durable job store.
Implements the atomic state transitions every other component relies on.
"""

import logging
import time
import uuid
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

from sqlalchemy import and_, delete, exists, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.backoff import BackoffPolicy
from jobqueue.constants import (
    DEFAULT_LEASE_DURATION_SECONDS,
    ERROR_STALLED,
    PENDING_STATES,
    TERMINAL_STATES,
    JobState,
)
from jobqueue.db.connection import SessionFactory
from jobqueue.db.models import Job, QueueState
from jobqueue.exceptions import StoreUnavailableError
from jobqueue.types.stats import QueueStats

logger = logging.getLogger(__name__)

Clock = Callable[[], int]

_PENDING = [state.value for state in PENDING_STATES]
_TRANSIENT_ERRORS = (OperationalError, InterfaceError, OSError)


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return time.time_ns() // 1_000_000


@dataclass(frozen=True)
class ReclaimResult:
    """Outcome of one expired-lease sweep."""

    requeued: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.requeued + self.failed


class JobStore:
    """
    Durable store for job records.

    Every operation runs in its own transaction. Transitions are single
    conditional UPDATE ... RETURNING statements guarded on the current
    state (and, for active jobs, the lease token), so when two callers race
    on the same job exactly one of them sees a row come back.

    Lease acquisition additionally uses FOR UPDATE SKIP LOCKED on
    PostgreSQL so concurrent pollers do not queue up behind each other.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        lease_duration_ms: int = DEFAULT_LEASE_DURATION_SECONDS * 1000,
        clock: Clock = now_ms,
    ):
        """
        Initialize the store.

        Args:
            session_factory: Factory producing async sessions.
            lease_duration_ms: How long a lease lasts without renewal.
            clock: Source of the current time in epoch milliseconds.
        """
        self._session_factory = session_factory
        self.lease_duration_ms = lease_duration_ms
        self.clock = clock

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncIterator[AsyncSession]:
        """Open a session inside a transaction, translating connectivity errors."""
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except _TRANSIENT_ERRORS as e:
            raise StoreUnavailableError(operation, e) from e

    # ------------------------------------------------------------------
    # Producer operations
    # ------------------------------------------------------------------

    async def push(
        self,
        queue_name: str,
        job_name: str,
        payload: Any,
        *,
        priority: int,
        max_attempts: int,
        backoff: BackoffPolicy,
        delay_ms: int = 0,
        timeout_ms: int | None = None,
    ) -> Job:
        """
        Insert a new job.

        The job starts in WAITING, or in DELAYED when delay_ms is positive.

        Returns:
            The persisted job with its generated id.
        """
        now = self.clock()
        job = Job(
            queue_name=queue_name,
            job_name=job_name,
            payload=payload,
            priority=priority,
            state=(JobState.DELAYED if delay_ms > 0 else JobState.WAITING).value,
            progress=0,
            attempts_made=0,
            max_attempts=max_attempts,
            backoff=backoff.model_dump(mode="json"),
            timeout_ms=timeout_ms,
            available_at=now + delay_ms,
            reclaim_count=0,
            created_at=now,
        )

        async with self._session("push") as session:
            session.add(job)
            await session.flush()

        logger.info(
            "Pushed job",
            extra={
                "job_id": job.id,
                "queue": queue_name,
                "job_name": job_name,
                "state": job.state,
            },
        )
        return job

    async def get(self, job_id: int, queue_name: str | None = None) -> Job | None:
        """
        Get a job by ID.

        Args:
            job_id: The job id.
            queue_name: When given, the job must belong to this queue.

        Returns:
            The Job or None if not found.
        """
        stmt = select(Job).where(Job.id == job_id)
        if queue_name is not None:
            stmt = stmt.where(Job.queue_name == queue_name)

        async with self._session("get") as session:
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def delete(self, job_id: int, queue_name: str) -> bool:
        """
        Delete a job that is not currently leased.

        Returns:
            True if a row was removed.
        """
        stmt = (
            delete(Job)
            .where(
                Job.id == job_id,
                Job.queue_name == queue_name,
                Job.state != JobState.ACTIVE.value,
            )
            .returning(Job.id)
        )
        async with self._session("delete") as session:
            result = await session.execute(stmt)
            return result.scalar_one_or_none() is not None

    async def list_jobs(
        self,
        queue_name: str,
        states: Sequence[JobState],
        start: int = 0,
        end: int = 100,
    ) -> Sequence[Job]:
        """
        List jobs in the given states, newest first.

        start and end are inclusive positions, as in a Redis range.
        """
        if end < start:
            return []

        stmt = (
            select(Job)
            .where(
                Job.queue_name == queue_name,
                Job.state.in_([JobState(s).value for s in states]),
            )
            .order_by(Job.id.desc())
            .offset(start)
            .limit(end - start + 1)
        )
        async with self._session("list_jobs") as session:
            result = await session.execute(stmt)
            return result.scalars().all()

    async def retry_failed(
        self,
        job_id: int,
        queue_name: str,
        reset_attempts: bool = True,
    ) -> Job | None:
        """
        Move a failed job back to WAITING.

        Args:
            job_id: The job id.
            queue_name: The queue the job belongs to.
            reset_attempts: Whether to reset the attempt counter.

        Returns:
            The updated Job or None if it was not in FAILED.
        """
        now = self.clock()
        values: dict[str, Any] = {
            "state": JobState.WAITING.value,
            "available_at": now,
            "finished_at": None,
            "progress": 0,
        }
        if reset_attempts:
            values["attempts_made"] = 0

        stmt = (
            update(Job)
            .where(
                Job.id == job_id,
                Job.queue_name == queue_name,
                Job.state == JobState.FAILED.value,
            )
            .values(**values)
            .returning(Job)
            .execution_options(synchronize_session=False)
        )
        async with self._session("retry_failed") as session:
            result = await session.execute(stmt)
            job = result.scalar_one_or_none()

        if job:
            logger.info(
                "Failed job requeued",
                extra={"job_id": job_id, "queue": queue_name},
            )
        return job

    async def empty(self, queue_name: str) -> int:
        """Remove every waiting and delayed job of a queue."""
        stmt = (
            delete(Job)
            .where(Job.queue_name == queue_name, Job.state.in_(_PENDING))
            .returning(Job.id)
        )
        async with self._session("empty") as session:
            result = await session.execute(stmt)
            return len(result.scalars().all())

    # ------------------------------------------------------------------
    # Pause flag
    # ------------------------------------------------------------------

    async def set_paused(self, queue_name: str, paused: bool) -> None:
        """Persist the paused flag for a queue."""
        async with self._session("set_paused") as session:
            insert = pg_insert if session.bind.dialect.name == "postgresql" else sqlite_insert
            stmt = (
                insert(QueueState)
                .values(name=queue_name, paused=paused)
                .on_conflict_do_update(
                    index_elements=[QueueState.name],
                    set_={"paused": paused},
                )
            )
            await session.execute(stmt)

    async def is_paused(self, queue_name: str) -> bool:
        stmt = select(QueueState.paused).where(QueueState.name == queue_name)
        async with self._session("is_paused") as session:
            result = await session.execute(stmt)
            return bool(result.scalar_one_or_none())

    # ------------------------------------------------------------------
    # Worker operations
    # ------------------------------------------------------------------

    async def lease_pop(self, queue_name: str, worker_id: str) -> Job | None:
        """
        Lease the next eligible job of a queue.

        Eligible jobs are WAITING, or DELAYED with available_at in the past.
        Order is priority descending, then available_at, then insertion.
        Returns None when nothing is eligible or the queue is paused.

        This is the critical path for job distribution: the candidate
        selection and the move to ACTIVE happen in one statement, so two
        concurrent callers can never receive the same job.

        Args:
            queue_name: The queue to lease from.
            worker_id: Identifier recorded as the lease owner.

        Returns:
            The leased job, or None.
        """
        now = self.clock()

        queue_paused = exists().where(
            QueueState.name == queue_name,
            QueueState.paused.is_(True),
        )
        candidate = (
            select(Job.id)
            .where(
                Job.queue_name == queue_name,
                Job.state.in_(_PENDING),
                Job.available_at <= now,
                ~queue_paused,
            )
            .order_by(Job.priority.desc(), Job.available_at.asc(), Job.id.asc())
            .limit(1)
            .with_for_update(skip_locked=True, of=Job)
            # Same table as the outer UPDATE: must not be correlated to it
            .correlate(None)
        )

        stmt = (
            update(Job)
            .where(
                Job.id.in_(candidate),
                Job.state.in_(_PENDING),
            )
            .values(
                state=JobState.ACTIVE.value,
                lease_owner=worker_id,
                lease_token=uuid.uuid4().hex,
                lease_expires_at=now + self.lease_duration_ms,
                processed_at=now,
            )
            .returning(Job)
            .execution_options(synchronize_session=False)
        )

        async with self._session("lease_pop") as session:
            result = await session.execute(stmt)
            job = result.scalar_one_or_none()

        if job is not None:
            logger.debug(
                "Leased job",
                extra={"job_id": job.id, "queue": queue_name, "worker_id": worker_id},
            )
        return job

    async def complete(
        self,
        job_id: int,
        lease_token: str,
        result: Any = None,
        remove: bool = False,
    ) -> Job | None:
        """
        Mark a leased job as COMPLETED.

        Args:
            job_id: The job id.
            lease_token: Token of the lease the caller holds.
            result: Handler output to store.
            remove: Delete the record instead of keeping it.

        Returns:
            The completed Job, or None if the caller no longer holds the lease.
        """
        now = self.clock()
        stmt = (
            update(Job)
            .where(
                Job.id == job_id,
                Job.state == JobState.ACTIVE.value,
                Job.lease_token == lease_token,
            )
            .values(
                state=JobState.COMPLETED.value,
                finished_at=now,
                progress=100,
                result=result,
                lease_owner=None,
                lease_token=None,
                lease_expires_at=None,
            )
            .returning(Job)
            .execution_options(synchronize_session=False)
        )

        async with self._session("complete") as session:
            job = (await session.execute(stmt)).scalar_one_or_none()
            if job is not None and remove:
                await session.execute(delete(Job).where(Job.id == job_id))

        if job is None:
            logger.warning(
                "Completion rejected - lease no longer held",
                extra={"job_id": job_id},
            )
        return job

    async def fail(
        self,
        job_id: int,
        lease_token: str,
        error: str,
        *,
        attempts_made: int,
        retry_at: int | None,
        remove: bool = False,
    ) -> Job | None:
        """
        Record a failed attempt on a leased job.

        Args:
            job_id: The job id.
            lease_token: Token of the lease the caller holds.
            error: Failure reason, stored as last_error.
            attempts_made: New attempt count.
            retry_at: When set, the job moves to DELAYED until this time;
                otherwise it moves to FAILED.
            remove: Delete the record when it becomes FAILED.

        Returns:
            The updated Job, or None if the caller no longer holds the lease.
        """
        now = self.clock()
        values: dict[str, Any] = {
            "attempts_made": attempts_made,
            "last_error": error,
            "lease_owner": None,
            "lease_token": None,
            "lease_expires_at": None,
        }
        if retry_at is None:
            values.update(state=JobState.FAILED.value, finished_at=now)
        else:
            values.update(state=JobState.DELAYED.value, available_at=retry_at)

        stmt = (
            update(Job)
            .where(
                Job.id == job_id,
                Job.state == JobState.ACTIVE.value,
                Job.lease_token == lease_token,
            )
            .values(**values)
            .returning(Job)
            .execution_options(synchronize_session=False)
        )

        async with self._session("fail") as session:
            job = (await session.execute(stmt)).scalar_one_or_none()
            if job is not None and remove and retry_at is None:
                await session.execute(delete(Job).where(Job.id == job_id))

        if job is None:
            logger.warning(
                "Failure rejected - lease no longer held",
                extra={"job_id": job_id},
            )
        return job

    async def extend_lease(self, job_id: int, lease_token: str) -> bool:
        """
        Extend the lease on a job (heartbeat).

        Returns:
            True if the lease was extended, False if it is no longer held.
        """
        now = self.clock()
        stmt = (
            update(Job)
            .where(
                Job.id == job_id,
                Job.state == JobState.ACTIVE.value,
                Job.lease_token == lease_token,
            )
            .values(lease_expires_at=now + self.lease_duration_ms)
            .returning(Job.id)
        )
        async with self._session("extend_lease") as session:
            result = await session.execute(stmt)
            return result.scalar_one_or_none() is not None

    async def update_progress(self, job_id: int, lease_token: str, progress: int) -> bool:
        """Store advisory progress and renew the lease."""
        now = self.clock()
        stmt = (
            update(Job)
            .where(
                Job.id == job_id,
                Job.state == JobState.ACTIVE.value,
                Job.lease_token == lease_token,
            )
            .values(progress=progress, lease_expires_at=now + self.lease_duration_ms)
            .returning(Job.id)
        )
        async with self._session("update_progress") as session:
            result = await session.execute(stmt)
            return result.scalar_one_or_none() is not None

    # ------------------------------------------------------------------
    # Maintenance operations
    # ------------------------------------------------------------------

    async def reclaim_expired_leases(
        self,
        queue_name: str,
        max_stalled_count: int | None = None,
    ) -> ReclaimResult:
        """
        Return ACTIVE jobs whose lease has expired to WAITING.

        This is called by the reaper to recover from worker crashes. A
        reclaim is not a failure: attempts_made is left untouched and only
        reclaim_count is incremented. Jobs that were already reclaimed
        max_stalled_count times are failed instead.

        Running this concurrently from several processes is safe; each
        expired job is moved by exactly one caller.

        Returns:
            Counts of requeued and failed jobs.
        """
        now = self.clock()
        expired = and_(
            Job.queue_name == queue_name,
            Job.state == JobState.ACTIVE.value,
            Job.lease_expires_at < now,
        )
        cleared_lease = {
            "lease_owner": None,
            "lease_token": None,
            "lease_expires_at": None,
        }

        async with self._session("reclaim_expired_leases") as session:
            failed: Sequence[int] = []
            if max_stalled_count is not None:
                stalled = (
                    update(Job)
                    .where(expired, Job.reclaim_count >= max_stalled_count)
                    .values(
                        state=JobState.FAILED.value,
                        finished_at=now,
                        last_error=ERROR_STALLED,
                        **cleared_lease,
                    )
                    .returning(Job.id)
                )
                failed = (await session.execute(stalled)).scalars().all()

            requeue = (
                update(Job)
                .where(expired)
                .values(
                    state=JobState.WAITING.value,
                    reclaim_count=Job.reclaim_count + 1,
                    **cleared_lease,
                )
                .returning(Job.id)
            )
            requeued = (await session.execute(requeue)).scalars().all()

        outcome = ReclaimResult(requeued=len(requeued), failed=len(failed))
        if outcome.total:
            logger.info(
                f"Reclaimed {outcome.total} jobs with expired leases",
                extra={
                    "queue": queue_name,
                    "requeued": list(requeued),
                    "failed": list(failed),
                },
            )
        return outcome

    async def promote_delayed(self, queue_name: str) -> int:
        """
        Move DELAYED jobs whose available_at has passed to WAITING.

        lease_pop already treats due delayed jobs as eligible; promoting
        keeps the per-state counts accurate.

        Returns:
            Number of promoted jobs.
        """
        now = self.clock()
        stmt = (
            update(Job)
            .where(
                Job.queue_name == queue_name,
                Job.state == JobState.DELAYED.value,
                Job.available_at <= now,
            )
            .values(state=JobState.WAITING.value)
            .returning(Job.id)
        )
        async with self._session("promote_delayed") as session:
            result = await session.execute(stmt)
            return len(result.scalars().all())

    async def stats(self, queue_name: str) -> QueueStats:
        """
        Get job counts per state for a queue.

        Returns:
            QueueStats with paused set to 1 when the queue is paused.
        """
        counts_stmt = (
            select(Job.state, func.count())
            .where(Job.queue_name == queue_name)
            .group_by(Job.state)
        )
        paused_stmt = select(QueueState.paused).where(QueueState.name == queue_name)

        async with self._session("stats") as session:
            counts = {state: count for state, count in (await session.execute(counts_stmt)).all()}
            paused = bool((await session.execute(paused_stmt)).scalar_one_or_none())

        return QueueStats(
            **{state.value: counts.get(state.value, 0) for state in JobState},
            paused=1 if paused else 0,
        )

    async def sweep(
        self,
        queue_name: str,
        older_than_ms: int,
        state: JobState,
        limit: int,
    ) -> int:
        """
        Delete up to limit jobs in state that are strictly older than
        older_than_ms. A job exactly older_than_ms old is kept.

        Age is measured from finished_at for terminal states and from
        created_at otherwise. ACTIVE jobs are never swept.

        Returns:
            Number of deleted jobs.
        """
        state = JobState(state)
        if state == JobState.ACTIVE:
            raise ValueError("Active jobs cannot be swept")

        cutoff = self.clock() - older_than_ms
        timestamp = Job.finished_at if state in TERMINAL_STATES else Job.created_at
        victims = (
            select(Job.id)
            .where(
                Job.queue_name == queue_name,
                Job.state == state.value,
                timestamp < cutoff,
            )
            .order_by(timestamp.asc(), Job.id.asc())
            .limit(limit)
            .correlate(None)
        )
        stmt = delete(Job).where(Job.id.in_(victims)).returning(Job.id)

        async with self._session("sweep") as session:
            result = await session.execute(stmt)
            removed = len(result.scalars().all())

        if removed:
            logger.info(
                f"Swept {removed} {state.value} jobs",
                extra={"queue": queue_name, "older_than_ms": older_than_ms},
            )
        return removed

    async def trim(self, queue_name: str, state: JobState, keep: int, limit: int) -> int:
        """
        Count-based retention: delete all but the newest keep jobs in state.

        Returns:
            Number of deleted jobs (at most limit).
        """
        state = JobState(state)
        if state not in TERMINAL_STATES:
            raise ValueError("Only terminal states can be trimmed")

        newest = (
            select(Job.id)
            .where(Job.queue_name == queue_name, Job.state == state.value)
            .order_by(Job.finished_at.desc(), Job.id.desc())
            .limit(keep)
            .correlate(None)
        )
        victims = (
            select(Job.id)
            .where(
                Job.queue_name == queue_name,
                Job.state == state.value,
                Job.id.not_in(newest),
            )
            .order_by(Job.finished_at.asc(), Job.id.asc())
            .limit(limit)
            .correlate(None)
        )
        stmt = delete(Job).where(Job.id.in_(victims)).returning(Job.id)

        async with self._session("trim") as session:
            result = await session.execute(stmt)
            removed = len(result.scalars().all())

        if removed:
            logger.info(
                f"Trimmed {removed} {state.value} jobs",
                extra={"queue": queue_name, "keep": keep},
            )
        return removed
