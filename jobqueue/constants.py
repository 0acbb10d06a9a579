"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import IntEnum, StrEnum


class JobState(StrEnum):
    """
    Job lifecycle states.

    State transitions:
    - WAITING -> ACTIVE (lease acquired)
    - DELAYED -> ACTIVE (lease acquired once available_at has passed)
    - DELAYED -> WAITING (promoted once available_at has passed)
    - ACTIVE -> COMPLETED (handler succeeded)
    - ACTIVE -> DELAYED (handler failed, attempts remaining)
    - ACTIVE -> FAILED (attempts exhausted or no handler)
    - ACTIVE -> WAITING (lease expired - crash recovery)
    - FAILED -> WAITING (manual retry)
    """

    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES: frozenset[JobState] = frozenset({JobState.COMPLETED, JobState.FAILED})
PENDING_STATES: frozenset[JobState] = frozenset({JobState.WAITING, JobState.DELAYED})


class JobPriority(IntEnum):
    """Priority tiers (higher = dispatched first)."""

    LOW = 10
    NORMAL = 50
    HIGH = 100


class BackoffType(StrEnum):
    """Retry delay strategies."""

    FIXED = "fixed"
    EXPONENTIAL = "exponential"


class HealthStatus(StrEnum):
    """Queue health verdicts, ordered from best to worst."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


HEALTH_SEVERITY: dict[HealthStatus, int] = {
    HealthStatus.HEALTHY: 0,
    HealthStatus.DEGRADED: 1,
    HealthStatus.UNHEALTHY: 2,
}

# Default values
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_LEASE_DURATION_SECONDS = 30
DEFAULT_PRIORITY = JobPriority.NORMAL
DEFAULT_BACKOFF_DELAY_MS = 2000
DEFAULT_MAX_BACKOFF_DELAY_MS = 24 * 60 * 60 * 1000

# Error messages recorded as last_error
ERROR_NO_HANDLER = "No handler registered for job"
ERROR_STALLED = "Job stalled more than allowable limit"

# Metrics names
METRIC_QUEUE_DEPTH = "job_queue_depth"
METRIC_JOBS_ENQUEUED = "jobs_enqueued_total"
METRIC_JOBS_COMPLETED = "jobs_completed_total"
METRIC_JOB_DURATION = "job_duration_seconds"
METRIC_LEASE_EXPIRED = "lease_expired_total"
METRIC_LEASE_ACQUIRED = "lease_acquired_total"
METRIC_JOBS_SWEPT = "jobs_swept_total"

# Trace span names
SPAN_ENQUEUE_JOB = "enqueue_job"
SPAN_ACQUIRE_LEASE = "acquire_lease"
SPAN_EXECUTE_JOB = "execute_job"
