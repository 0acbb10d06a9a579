"""
Unit tests for the retention sweeper.
"""

from jobqueue.backoff import BackoffPolicy
from jobqueue.cleanup import CleanupSweeper
from jobqueue.config import QueueConfig
from jobqueue.constants import JobPriority, JobState
from jobqueue.db.models import Job
from jobqueue.db.store import JobStore
from jobqueue.observability.metrics import MetricsCollector
from tests.conftest import FakeClock

HOUR_MS = 60 * 60 * 1000


async def finish(store: JobStore, queue: str, failed: bool = False) -> Job:
    await store.push(
        queue,
        "send",
        {},
        priority=JobPriority.NORMAL,
        max_attempts=1,
        backoff=BackoffPolicy.fixed(0),
    )
    job = await store.lease_pop(queue, "w1")
    if failed:
        return await store.fail(job.id, job.lease_token, "boom", attempts_made=1, retry_at=None)
    return await store.complete(job.id, job.lease_token)


class TestCleanupSweeper:
    """Tests for CleanupSweeper."""

    async def test_age_retention(
        self,
        store: JobStore,
        clock: FakeClock,
        metrics: MetricsCollector,
    ):
        """Test completed and failed jobs expire on their own windows."""
        queues = {
            "email": QueueConfig(
                remove_on_complete=None,
                remove_on_fail=None,
                completed_retention_seconds=3600,
                failed_retention_seconds=2 * 3600,
            ),
        }
        completed = await finish(store, "email")
        failed = await finish(store, "email", failed=True)
        clock.advance(HOUR_MS + 1)
        sweeper = CleanupSweeper(store, queues, metrics=metrics)

        assert await sweeper.run_once() == 1
        assert await store.get(completed.id) is None
        assert await store.get(failed.id) is not None

        clock.advance(HOUR_MS)

        assert await sweeper.run_once() == 1
        assert await store.get(failed.id) is None
        assert metrics.registry.get_sample_value(
            "jobs_swept_total", {"queue": "email", "state": "completed"}
        ) == 1
        assert metrics.registry.get_sample_value(
            "jobs_swept_total", {"queue": "email", "state": "failed"}
        ) == 1

    async def test_count_retention(self, store: JobStore, clock: FakeClock, metrics: MetricsCollector):
        """Test only the newest remove_on_complete jobs are kept."""
        queues = {"email": QueueConfig(remove_on_complete=2, remove_on_fail=None)}
        for _ in range(5):
            await finish(store, "email")
            clock.advance(1000)
        sweeper = CleanupSweeper(store, queues, metrics=metrics)

        assert await sweeper.run_once() == 3
        assert (await store.stats("email")).completed == 2

    async def test_batch_limit(self, store: JobStore, clock: FakeClock, metrics: MetricsCollector):
        queues = {"email": QueueConfig(remove_on_complete=None, completed_retention_seconds=0)}
        for _ in range(5):
            await finish(store, "email")
        clock.advance(1)
        sweeper = CleanupSweeper(store, queues, batch_limit=2, metrics=metrics)

        assert await sweeper.run_once() == 2
        assert await sweeper.run_once() == 2
        assert await sweeper.run_once() == 1
        assert await sweeper.run_once() == 0

    async def test_pending_jobs_untouched(
        self,
        store: JobStore,
        clock: FakeClock,
        metrics: MetricsCollector,
    ):
        queues = {
            "email": QueueConfig(
                remove_on_complete=0,
                remove_on_fail=0,
                completed_retention_seconds=0,
                failed_retention_seconds=0,
            ),
        }
        await store.push(
            "email",
            "send",
            {},
            priority=JobPriority.NORMAL,
            max_attempts=1,
            backoff=BackoffPolicy.fixed(0),
        )
        clock.advance(HOUR_MS)

        assert await CleanupSweeper(store, queues, metrics=metrics).run_once() == 0
        assert (await store.stats("email")).waiting == 1

    async def test_only_configured_queues(
        self,
        store: JobStore,
        clock: FakeClock,
        metrics: MetricsCollector,
    ):
        queues = {"email": QueueConfig(completed_retention_seconds=0)}
        kept = await finish(store, "data")
        clock.advance(HOUR_MS)

        await CleanupSweeper(store, queues, metrics=metrics).run_once()

        assert (await store.get(kept.id)).job_state == JobState.COMPLETED
