"""
Retry coordination.

Decides, after a failed execution, whether a job is retried later or fails
permanently, and records that decision in the store.
"""

import logging
import random
from dataclasses import dataclass

from jobqueue.backoff import BackoffPolicy
from jobqueue.db.models import Job
from jobqueue.db.store import JobStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryDecision:
    """
    Outcome of a failed attempt.

    retry_at is None when the job is permanently failed.
    """

    attempts_made: int
    retry_at: int | None
    delay_ms: int = 0

    @property
    def will_retry(self) -> bool:
        return self.retry_at is not None


class RetryCoordinator:
    """
    Applies the retry algorithm:

    1. Increment attempts_made.
    2. If attempts_made >= max_attempts (or the failure is permanent),
       the job fails.
    3. Otherwise the job is delayed by backoff.compute(attempts_made).
    """

    def __init__(self, store: JobStore, rng: random.Random | None = None):
        self._store = store
        self._rng = rng

    def decide(
        self,
        attempts_made: int,
        max_attempts: int,
        backoff: BackoffPolicy,
        now_ms: int,
        permanent: bool = False,
    ) -> RetryDecision:
        """
        Compute the decision for a failed attempt.

        Args:
            attempts_made: Attempts made before this failure.
            max_attempts: The job's attempt ceiling.
            backoff: The job's backoff policy.
            now_ms: Current time in epoch milliseconds.
            permanent: Skip retries regardless of remaining attempts.

        Returns:
            The retry decision. Deterministic unless the policy has jitter.
        """
        attempts = min(attempts_made + 1, max_attempts)

        if permanent or attempts >= max_attempts:
            return RetryDecision(attempts_made=attempts, retry_at=None)

        delay = backoff.compute(attempts, rng=self._rng)
        return RetryDecision(attempts_made=attempts, retry_at=now_ms + delay, delay_ms=delay)

    async def handle_failure(
        self,
        job: Job,
        lease_token: str,
        error: str,
        permanent: bool = False,
        remove_on_fail: bool = False,
    ) -> RetryDecision | None:
        """
        Decide and persist the outcome of a failed attempt.

        Args:
            job: The leased job, as returned by lease_pop.
            lease_token: The lease token the worker holds.
            error: Failure reason.
            permanent: Fail without retrying.
            remove_on_fail: Delete the record if it fails permanently.

        Returns:
            The decision, or None if the lease was lost before it could be
            recorded (the job was reclaimed by the reaper).
        """
        decision = self.decide(
            attempts_made=job.attempts_made,
            max_attempts=job.max_attempts,
            backoff=job.backoff_policy,
            now_ms=self._store.clock(),
            permanent=permanent,
        )

        updated = await self._store.fail(
            job.id,
            lease_token,
            error,
            attempts_made=decision.attempts_made,
            retry_at=decision.retry_at,
            remove=remove_on_fail,
        )
        if updated is None:
            return None

        if decision.will_retry:
            logger.info(
                "Job scheduled for retry",
                extra={
                    "job_id": job.id,
                    "queue": job.queue_name,
                    "attempt": decision.attempts_made,
                    "delay_ms": decision.delay_ms,
                },
            )
        else:
            logger.warning(
                f"Job failed after {decision.attempts_made} attempts",
                extra={"job_id": job.id, "queue": job.queue_name, "error": error},
            )
        return decision
