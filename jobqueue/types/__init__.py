"""
Type definitions for the job queue.
Contains input/output type definitions for all functions, grouped by module.
"""

from jobqueue.types.job import (
    JobContext,
    JobOptions,
    JobResult,
    ProgressReporter,
)
from jobqueue.types.stats import (
    OverallHealth,
    QueueHealth,
    QueueStats,
)

__all__ = [
    # Job types
    "JobOptions",
    "JobResult",
    "JobContext",
    "ProgressReporter",
    # Monitoring types
    "QueueStats",
    "QueueHealth",
    "OverallHealth",
]
