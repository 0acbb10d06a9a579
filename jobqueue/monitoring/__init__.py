"""
Monitoring module.
Queue statistics and health verdicts for the external monitoring collaborator.
"""

from jobqueue.monitoring.reporter import (
    HealthThresholds,
    StatsReporter,
    classify,
    worst_status,
)

__all__ = [
    "HealthThresholds",
    "StatsReporter",
    "classify",
    "worst_status",
]
