"""
Queue statistics and health reporting.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from jobqueue.config import Settings
from jobqueue.constants import HEALTH_SEVERITY, HealthStatus
from jobqueue.db.store import JobStore
from jobqueue.exceptions import StoreUnavailableError
from jobqueue.observability.metrics import MetricsCollector, get_metrics
from jobqueue.periodic import PeriodicService
from jobqueue.types.stats import OverallHealth, QueueHealth, QueueStats

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HealthThresholds:
    """Backlog limits used to classify a queue."""

    backlog_warning: int = 100
    backlog_critical: int = 500
    failed_threshold: int = 50

    @classmethod
    def from_settings(cls, settings: Settings) -> "HealthThresholds":
        return cls(
            backlog_warning=settings.backlog_warning,
            backlog_critical=settings.backlog_critical,
            failed_threshold=settings.failed_threshold,
        )


def classify(stats: QueueStats, thresholds: HealthThresholds) -> QueueHealth:
    """
    Classify a queue from its counts.

    - waiting > backlog_critical -> unhealthy
    - waiting > backlog_warning  -> degraded
    - failed > failed_threshold  -> unhealthy
    """
    status = HealthStatus.HEALTHY
    errors: list[str] = []

    if stats.waiting > thresholds.backlog_critical:
        status = HealthStatus.UNHEALTHY
        errors.append(f"Critical backlog: {stats.waiting} waiting jobs")
    elif stats.waiting > thresholds.backlog_warning:
        status = HealthStatus.DEGRADED
        errors.append(f"Warning backlog: {stats.waiting} waiting jobs")

    if stats.failed > thresholds.failed_threshold:
        status = HealthStatus.UNHEALTHY
        errors.append(f"Too many failed jobs: {stats.failed}")

    return QueueHealth(status=status, stats=stats, errors=errors)


def worst_status(statuses: list[HealthStatus]) -> HealthStatus:
    """Return the most severe status (healthy when empty)."""
    return max(statuses, key=HEALTH_SEVERITY.__getitem__, default=HealthStatus.HEALTHY)


class StatsReporter(PeriodicService):
    """
    Periodically computes per-queue stats and health.

    Publishes queue depth gauges and logs queues that are not healthy.
    Never mutates job state.
    """

    name = "stats-reporter"

    def __init__(
        self,
        store: JobStore,
        queue_names: list[str],
        thresholds: HealthThresholds | None = None,
        interval_seconds: float = 60.0,
        retry_interval_seconds: float | None = None,
        metrics: MetricsCollector | None = None,
    ):
        super().__init__(interval_seconds, retry_interval_seconds)
        self._store = store
        self._queue_names = list(queue_names)
        self.thresholds = thresholds or HealthThresholds()
        self._metrics = metrics or get_metrics()
        self.last_report: OverallHealth | None = None

    async def queue_health(self, queue_name: str) -> QueueHealth:
        """
        Health of one queue.

        A store failure is reported as an unhealthy verdict rather than
        raised.
        """
        try:
            stats = await self._store.stats(queue_name)
        except StoreUnavailableError as e:
            return QueueHealth(
                status=HealthStatus.UNHEALTHY,
                stats=QueueStats(),
                errors=[f"Queue error: {e}"],
            )

        self._metrics.update_queue_depth(queue_name, stats)
        return classify(stats, self.thresholds)

    async def overall_health(self) -> OverallHealth:
        """Health of every queue plus the worst verdict among them."""
        queues = {name: await self.queue_health(name) for name in self._queue_names}
        return OverallHealth(
            status=worst_status([health.status for health in queues.values()]),
            queues=queues,
            timestamp=datetime.now(timezone.utc),
        )

    async def run_once(self) -> OverallHealth:
        report = await self.overall_health()
        self.last_report = report

        for name, health in report.queues.items():
            if health.status != HealthStatus.HEALTHY:
                logger.warning(
                    f"Queue {name} is {health.status}",
                    extra={"queue": name, "errors": health.errors},
                )
        return report
