"""
Monitoring-facing type definitions.
"""

from datetime import datetime

from pydantic import BaseModel, Field

from jobqueue.constants import HealthStatus


class QueueStats(BaseModel):
    """Job counts per state for one queue."""

    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
    paused: int = Field(default=0, description="1 if the queue is paused, else 0")


class QueueHealth(BaseModel):
    """Health verdict for one queue."""

    status: HealthStatus
    stats: QueueStats
    errors: list[str] = Field(default_factory=list)


class OverallHealth(BaseModel):
    """Aggregate verdict across all queues (worst queue wins)."""

    status: HealthStatus
    queues: dict[str, QueueHealth]
    timestamp: datetime
