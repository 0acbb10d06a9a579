"""
Pytest configuration and shared fixtures.
"""

from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio
from prometheus_client import CollectorRegistry
from sqlalchemy.ext.asyncio import AsyncEngine

from jobqueue.backoff import BackoffPolicy
from jobqueue.config import QueueConfig, Settings
from jobqueue.db import JobStore, close_db, create_engine, create_session_factory, init_db
from jobqueue.observability.metrics import MetricsCollector
from jobqueue.worker.registry import HandlerRegistry

# 2023-11-14T22:13:20Z
START_MS = 1_700_000_000_000
LEASE_MS = 30_000


class FakeClock:
    """Deterministic epoch-millisecond clock."""

    def __init__(self, start: int = START_MS):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def queue_configs() -> dict[str, QueueConfig]:
    """Small, fast queue configurations for tests."""
    return {
        "email": QueueConfig(
            concurrency=2,
            attempts=3,
            backoff=BackoffPolicy.exponential(1000),
            job_timeout_seconds=5,
            remove_on_complete=None,
            remove_on_fail=None,
        ),
        "data": QueueConfig(
            concurrency=1,
            attempts=1,
            backoff=BackoffPolicy.fixed(0),
            job_timeout_seconds=5,
            remove_on_complete=None,
            remove_on_fail=None,
        ),
    }


@pytest.fixture
def test_settings(tmp_path: Path, queue_configs: dict[str, QueueConfig]) -> Settings:
    """Create test settings."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}",
        queues=queue_configs,
        log_level="DEBUG",
        log_format="console",
        worker_lease_duration_seconds=LEASE_MS // 1000,
        worker_poll_interval_seconds=0.01,
        worker_heartbeat_interval_seconds=60,
        reaper_interval_seconds=60,
        stats_interval_seconds=60,
        cleanup_enabled=False,
    )


@pytest_asyncio.fixture
async def engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine]:
    """Create a SQLite database with the schema installed."""
    engine = create_engine(settings=test_settings)
    await init_db(engine)

    yield engine

    await close_db(engine)


@pytest.fixture
def store(engine: AsyncEngine, clock: FakeClock) -> JobStore:
    return JobStore(create_session_factory(engine), lease_duration_ms=LEASE_MS, clock=clock)


@pytest.fixture
def metrics() -> MetricsCollector:
    """Metrics collector on a private registry."""
    return MetricsCollector(registry=CollectorRegistry())


@pytest.fixture
def registry() -> HandlerRegistry:
    return HandlerRegistry()
