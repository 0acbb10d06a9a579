"""
Prometheus metrics collection.

The engine only records; exposing the registry over HTTP is left to the
hosting application.
"""

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from jobqueue.constants import (
    METRIC_JOB_DURATION,
    METRIC_JOBS_COMPLETED,
    METRIC_JOBS_ENQUEUED,
    METRIC_JOBS_SWEPT,
    METRIC_LEASE_ACQUIRED,
    METRIC_LEASE_EXPIRED,
    METRIC_QUEUE_DEPTH,
)
from jobqueue.types.stats import QueueStats

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the job queue.

    Collects metrics for:
    - Queue depth per state
    - Job submissions and outcomes
    - Job execution duration
    - Lease acquisition and expiry
    - Retention sweeps
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.queue_depth = Gauge(
            METRIC_QUEUE_DEPTH,
            "Number of jobs per queue and state",
            ["queue", "state"],
            registry=self._registry,
        )

        self.jobs_enqueued = Counter(
            METRIC_JOBS_ENQUEUED,
            "Total number of jobs enqueued",
            ["queue", "job_name"],
            registry=self._registry,
        )

        # status is completed, retried or failed
        self.jobs_completed = Counter(
            METRIC_JOBS_COMPLETED,
            "Total number of finished job attempts",
            ["queue", "status"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Job execution duration in seconds",
            ["queue", "status"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
            registry=self._registry,
        )

        self.lease_expired = Counter(
            METRIC_LEASE_EXPIRED,
            "Total number of expired leases reclaimed",
            ["queue"],
            registry=self._registry,
        )

        self.lease_acquired = Counter(
            METRIC_LEASE_ACQUIRED,
            "Total number of leases acquired",
            ["queue", "worker_id"],
            registry=self._registry,
        )

        self.jobs_swept = Counter(
            METRIC_JOBS_SWEPT,
            "Total number of jobs removed by retention",
            ["queue", "state"],
            registry=self._registry,
        )

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    def record_job_enqueued(self, queue: str, job_name: str) -> None:
        self.jobs_enqueued.labels(queue=queue, job_name=job_name).inc()

    def record_job_finished(
        self,
        queue: str,
        status: str,
        duration_seconds: float,
    ) -> None:
        """Record the outcome of one attempt."""
        self.jobs_completed.labels(queue=queue, status=status).inc()
        self.job_duration.labels(queue=queue, status=status).observe(duration_seconds)

    def record_lease_expired(self, queue: str, count: int = 1) -> None:
        self.lease_expired.labels(queue=queue).inc(count)

    def record_lease_acquired(self, queue: str, worker_id: str) -> None:
        self.lease_acquired.labels(queue=queue, worker_id=worker_id).inc()

    def record_jobs_swept(self, queue: str, state: str, count: int) -> None:
        self.jobs_swept.labels(queue=queue, state=state).inc(count)

    def update_queue_depth(self, queue: str, stats: QueueStats) -> None:
        """Publish per-state counts for a queue."""
        for state, count in stats.model_dump(exclude={"paused"}).items():
            self.queue_depth.labels(queue=queue, state=state).set(count)

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)


def setup_metrics(registry: CollectorRegistry | None = None) -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector(registry)
    return _metrics


def get_metrics() -> MetricsCollector:
    """Get the metrics collector instance, creating it on first use."""
    if _metrics is None:
        return setup_metrics()
    return _metrics
