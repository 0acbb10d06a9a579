"""
Integration tests for worker functionality.

The dispatcher is driven one iteration at a time and the pool is drained
after each dispatch, so every test runs against the fake clock without
real sleeps (except where a timeout has to elapse).
"""

import asyncio

import pytest
import pytest_asyncio

from jobqueue.config import QueueConfig, Settings
from jobqueue.constants import ERROR_NO_HANDLER, JobState
from jobqueue.db.models import Job
from jobqueue.db.store import JobStore
from jobqueue.exceptions import UnknownQueueError
from jobqueue.observability.metrics import MetricsCollector
from jobqueue.queue import QueueManager
from jobqueue.reaper import Reaper
from jobqueue.types.job import JobContext, JobOptions, JobResult
from jobqueue.worker import Dispatcher, HandlerRegistry, Worker, WorkerPool
from tests.conftest import LEASE_MS, FakeClock


class Harness:
    """One queue's dispatcher and pool, stepped manually."""

    def __init__(self, dispatcher: Dispatcher, pool: WorkerPool):
        self.dispatcher = dispatcher
        self.pool = pool

    async def step(self) -> Job | None:
        """Lease at most one job and wait for it to finish."""
        job = await self.dispatcher.run_once()
        await self.pool.drain()
        return job


class TestWorkerIntegration:
    """Integration tests for worker job processing."""

    @pytest_asyncio.fixture
    async def manager(
        self,
        store: JobStore,
        queue_configs: dict[str, QueueConfig],
        metrics: MetricsCollector,
    ) -> QueueManager:
        return QueueManager(store, queue_configs, metrics=metrics)

    @pytest.fixture
    def harness(
        self,
        store: JobStore,
        registry: HandlerRegistry,
        queue_configs: dict[str, QueueConfig],
        metrics: MetricsCollector,
    ):
        def build(queue_name: str) -> Harness:
            pool = WorkerPool(
                queue_name,
                queue_configs[queue_name],
                store,
                registry,
                worker_id="test-worker",
                metrics=metrics,
            )
            dispatcher = Dispatcher(queue_name, store, pool, "test-worker", metrics=metrics)
            return Harness(dispatcher, pool)

        return build

    async def test_full_job_lifecycle_success(
        self,
        manager: QueueManager,
        registry: HandlerRegistry,
        harness,
        metrics: MetricsCollector,
    ):
        """Test complete job lifecycle: enqueue -> lease -> run -> complete."""
        seen: list[JobContext] = []

        @registry.handler("email", "send-email")
        async def send_email(ctx: JobContext) -> dict:
            seen.append(ctx)
            return {"sent_to": ctx.payload["to"]}

        job_id = await manager.enqueue("email", "send-email", {"to": "a@example.com"})

        leased = await harness("email").step()

        assert leased.id == job_id
        assert seen[0].attempt == 1
        assert seen[0].max_attempts == 3
        job = await manager.get_job("email", job_id)
        assert job.job_state == JobState.COMPLETED
        assert job.result == {"sent_to": "a@example.com"}
        assert job.attempts_made == 0
        assert metrics.registry.get_sample_value(
            "jobs_completed_total", {"queue": "email", "status": "completed"}
        ) == 1

    async def test_always_failing_job_exhausts_attempts(
        self,
        manager: QueueManager,
        registry: HandlerRegistry,
        harness,
        clock: FakeClock,
    ):
        """Test a handler that always fails ends failed after 3 attempts."""
        calls = 0

        @registry.handler("email", "send-email")
        async def always_fails(ctx: JobContext) -> None:
            nonlocal calls
            calls += 1
            raise RuntimeError(f"SMTP down (attempt {ctx.attempt})")

        job_id = await manager.enqueue("email", "send-email", {})
        h = harness("email")

        await h.step()
        job = await manager.get_job("email", job_id)
        assert job.job_state == JobState.DELAYED
        assert job.attempts_made == 1
        assert job.available_at == clock.now + 1000

        # Not due yet
        assert await h.step() is None

        clock.advance(1000)
        await h.step()
        job = await manager.get_job("email", job_id)
        assert job.job_state == JobState.DELAYED
        assert job.attempts_made == 2
        assert job.available_at == clock.now + 2000

        clock.advance(2000)
        await h.step()
        job = await manager.get_job("email", job_id)
        assert job.job_state == JobState.FAILED
        assert job.attempts_made == 3
        assert job.last_error == "SMTP down (attempt 3)"
        assert calls == 3

        clock.advance(60_000)
        assert await h.step() is None

    async def test_job_succeeds_after_retries(
        self,
        manager: QueueManager,
        registry: HandlerRegistry,
        harness,
        clock: FakeClock,
    ):
        """Test a handler failing twice then succeeding ends completed."""

        @registry.handler("email", "send-email")
        async def flaky(ctx: JobContext) -> str:
            if ctx.attempt < 3:
                raise ConnectionError("temporary")
            return "ok"

        job_id = await manager.enqueue("email", "send-email", {})
        h = harness("email")

        await h.step()
        clock.advance(1000)
        await h.step()
        clock.advance(2000)
        await h.step()

        job = await manager.get_job("email", job_id)
        assert job.job_state == JobState.COMPLETED
        assert job.attempts_made == 2
        assert job.result == "ok"
        assert job.last_error == "temporary"

    async def test_job_result_failure_is_retried(
        self,
        manager: QueueManager,
        registry: HandlerRegistry,
        harness,
    ):
        """Test returning JobResult(success=False) counts as a failed attempt."""

        @registry.handler("email", "send-email")
        async def reports_failure(ctx: JobContext) -> JobResult:
            return JobResult(success=False, error="mailbox full")

        job_id = await manager.enqueue("email", "send-email", {})

        await harness("email").step()

        job = await manager.get_job("email", job_id)
        assert job.job_state == JobState.DELAYED
        assert job.last_error == "mailbox full"

    async def test_paused_queue_holds_jobs(
        self,
        manager: QueueManager,
        registry: HandlerRegistry,
        harness,
    ):
        """Test a paused queue keeps its job waiting until resumed."""
        ran: list[int] = []

        @registry.handler("email", "send-email")
        async def send_email(ctx: JobContext) -> None:
            ran.append(ctx.job_id)

        await manager.pause_queue("email")
        job_id = await manager.enqueue("email", "send-email", {})
        h = harness("email")

        assert await h.step() is None
        assert (await manager.get_job("email", job_id)).job_state == JobState.WAITING
        assert ran == []

        await manager.resume_queue("email")

        assert (await h.step()).id == job_id
        assert ran == [job_id]
        assert (await manager.get_job("email", job_id)).job_state == JobState.COMPLETED

    async def test_unregistered_job_fails_permanently(
        self,
        manager: QueueManager,
        harness,
    ):
        """Test a job without a handler fails without retries."""
        job_id = await manager.enqueue("email", "unknown-job", {})

        await harness("email").step()

        job = await manager.get_job("email", job_id)
        assert job.job_state == JobState.FAILED
        assert job.attempts_made == 1
        assert job.last_error == f"{ERROR_NO_HANDLER}: unknown-job"

    async def test_non_awaitable_handler_fails_permanently(
        self,
        manager: QueueManager,
        registry: HandlerRegistry,
        harness,
        monkeypatch: pytest.MonkeyPatch,
    ):
        """Test a handler returning a plain value is not retried."""

        def send_sync(ctx: JobContext) -> dict:
            return {"sent": True}

        monkeypatch.setattr(registry, "get", lambda queue_name, job_name: send_sync)
        job_id = await manager.enqueue("email", "send-email", {})

        await harness("email").step()

        job = await manager.get_job("email", job_id)
        assert job.job_state == JobState.FAILED
        assert job.attempts_made == 1
        assert "did not return an awaitable" in job.last_error

    async def test_timeout_counts_as_attempt(
        self,
        manager: QueueManager,
        registry: HandlerRegistry,
        harness,
    ):
        """Test a handler exceeding its timeout is failed but not cancelled."""
        release = asyncio.Event()
        finished = asyncio.Event()

        @registry.handler("email", "slow")
        async def slow(ctx: JobContext) -> str:
            await release.wait()
            finished.set()
            return "late"

        job_id = await manager.enqueue("email", "slow", {}, JobOptions(timeout_ms=50))

        await harness("email").step()

        job = await manager.get_job("email", job_id)
        assert job.job_state == JobState.DELAYED
        assert job.attempts_made == 1
        assert job.last_error == "Job timed out after 0.05s"

        # The orphaned handler still runs to completion; its result is discarded
        release.set()
        await asyncio.wait_for(finished.wait(), timeout=1)
        await asyncio.sleep(0)

        job = await manager.get_job("email", job_id)
        assert job.job_state == JobState.DELAYED
        assert job.result is None

    async def test_progress_renews_lease(
        self,
        manager: QueueManager,
        registry: HandlerRegistry,
        harness,
        store: JobStore,
        clock: FakeClock,
    ):
        """Test reporting progress keeps a long job from being reclaimed."""
        reported = asyncio.Event()
        release = asyncio.Event()

        @registry.handler("email", "export")
        async def export(ctx: JobContext) -> None:
            clock.advance(LEASE_MS - 1000)
            await ctx.report_progress(50)
            reported.set()
            await release.wait()

        job_id = await manager.enqueue("email", "export", {})
        h = harness("email")

        await h.dispatcher.run_once()
        await asyncio.wait_for(reported.wait(), timeout=1)

        job = await store.get(job_id)
        assert job.progress == 50
        assert job.lease_expires_at == clock.now + LEASE_MS

        # Past the original lease, but within the renewed one
        clock.advance(2000)
        assert (await store.reclaim_expired_leases("email")).total == 0

        release.set()
        await h.pool.drain()
        assert (await store.get(job_id)).job_state == JobState.COMPLETED

    async def test_lost_lease_discards_outcome(
        self,
        manager: QueueManager,
        registry: HandlerRegistry,
        harness,
        store: JobStore,
        clock: FakeClock,
    ):
        """Test a handler finishing after its job was reclaimed changes nothing."""

        @registry.handler("email", "send-email")
        async def stalls(ctx: JobContext) -> str:
            clock.advance(LEASE_MS + 1)
            await store.reclaim_expired_leases("email")
            return "too late"

        job_id = await manager.enqueue("email", "send-email", {})

        await harness("email").step()

        job = await store.get(job_id)
        assert job.job_state == JobState.WAITING
        assert job.reclaim_count == 1
        assert job.result is None

    async def test_concurrency_limit(
        self,
        manager: QueueManager,
        registry: HandlerRegistry,
        harness,
    ):
        """Test the pool never runs more than `concurrency` jobs."""
        release = asyncio.Event()

        @registry.handler("email", "send-email")
        async def blocks(ctx: JobContext) -> None:
            await release.wait()

        for _ in range(3):
            await manager.enqueue("email", "send-email", {})
        h = harness("email")

        assert await h.dispatcher.run_once() is not None
        assert await h.dispatcher.run_once() is not None
        assert h.pool.active_count == 2
        assert h.pool.has_free_slot() is False

        third = asyncio.create_task(h.dispatcher.run_once())
        await asyncio.sleep(0.05)
        assert not third.done()
        assert (await manager.get_queue_stats("email")).waiting == 1

        release.set()
        assert await asyncio.wait_for(third, timeout=1) is not None
        await h.pool.drain()
        assert (await manager.get_queue_stats("email")).completed == 3

    async def test_remove_on_complete_zero(
        self,
        store: JobStore,
        registry: HandlerRegistry,
        metrics: MetricsCollector,
    ):
        """Test remove_on_complete=0 deletes the record on completion."""
        config = QueueConfig(remove_on_complete=0)
        manager = QueueManager(store, {"report": config}, metrics=metrics)
        pool = WorkerPool("report", config, store, registry, metrics=metrics)
        dispatcher = Dispatcher("report", store, pool, "test-worker", metrics=metrics)

        @registry.handler("report", "daily")
        async def daily(ctx: JobContext) -> None:
            return None

        job_id = await manager.enqueue("report", "daily", {})
        await dispatcher.run_once()
        await pool.drain()

        assert await store.get(job_id) is None


class TestReaperIntegration:
    """Integration tests for stalled-job recovery."""

    async def test_crashed_worker_job_is_recovered(
        self,
        store: JobStore,
        clock: FakeClock,
        queue_configs: dict[str, QueueConfig],
        metrics: MetricsCollector,
    ):
        """Test a job abandoned by a crashed worker is leased again."""
        manager = QueueManager(store, queue_configs, metrics=metrics)
        reaper = Reaper(store, queue_configs, metrics=metrics)
        job_id = await manager.enqueue("email", "send-email", {})

        # Leased by a worker that never reports back
        await store.lease_pop("email", "crashed-worker")

        assert await reaper.run_once() == 0

        clock.advance(LEASE_MS + 1)

        assert await reaper.run_once() == 1
        job = await store.get(job_id)
        assert job.job_state == JobState.WAITING
        assert job.attempts_made == 0
        assert job.reclaim_count == 1
        assert metrics.registry.get_sample_value("lease_expired_total", {"queue": "email"}) == 1

        leased = await store.lease_pop("email", "healthy-worker")
        assert leased.id == job_id
        assert leased.lease_owner == "healthy-worker"

    async def test_reaper_promotes_due_delayed_jobs(
        self,
        store: JobStore,
        clock: FakeClock,
        queue_configs: dict[str, QueueConfig],
        metrics: MetricsCollector,
    ):
        manager = QueueManager(store, queue_configs, metrics=metrics)
        reaper = Reaper(store, queue_configs, metrics=metrics)
        await manager.enqueue("email", "send-email", {}, {"delay_ms": 1000})
        clock.advance(1000)

        await reaper.run_once()

        stats = await manager.get_queue_stats("email")
        assert stats.delayed == 0
        assert stats.waiting == 1


class TestWorker:
    """Tests for the worker process wiring."""

    async def test_wiring(
        self,
        store: JobStore,
        registry: HandlerRegistry,
        test_settings: Settings,
        metrics: MetricsCollector,
    ):
        worker = Worker(store, registry, test_settings, worker_id="w1", metrics=metrics)

        assert worker.worker_id == "w1"
        assert set(worker.dispatchers) == {"email", "data"}
        assert worker.pools["email"].concurrency == 2
        assert [service.name for service in worker.services] == ["reaper", "stats-reporter"]

    async def test_cleanup_enabled_adds_sweeper(
        self,
        store: JobStore,
        registry: HandlerRegistry,
        test_settings: Settings,
        metrics: MetricsCollector,
    ):
        settings = test_settings.model_copy(update={"cleanup_enabled": True})

        worker = Worker(store, registry, settings, worker_id="w1", metrics=metrics)

        assert [service.name for service in worker.services] == [
            "reaper",
            "stats-reporter",
            "cleanup",
        ]

    async def test_unknown_queue_rejected(
        self,
        store: JobStore,
        registry: HandlerRegistry,
        test_settings: Settings,
        metrics: MetricsCollector,
    ):
        with pytest.raises(UnknownQueueError):
            Worker(store, registry, test_settings, queue_names=["nope"], metrics=metrics)

    async def test_runs_jobs_until_stopped(
        self,
        store: JobStore,
        registry: HandlerRegistry,
        test_settings: Settings,
        metrics: MetricsCollector,
    ):
        """Test a running worker processes jobs and shuts down cleanly."""
        done = asyncio.Event()

        @registry.handler("email", "send-email")
        async def send_email(ctx: JobContext) -> str:
            done.set()
            return "sent"

        manager = QueueManager.from_settings(store, test_settings, metrics=metrics)
        worker = Worker(store, registry, test_settings, worker_id="w1", metrics=metrics)
        job_id = await manager.enqueue("email", "send-email", {})

        task = asyncio.create_task(worker.start())
        await asyncio.wait_for(done.wait(), timeout=5)

        await worker.stop()
        await asyncio.wait_for(task, timeout=5)

        assert worker.running is False
        assert (await store.get(job_id)).job_state == JobState.COMPLETED
