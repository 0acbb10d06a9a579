"""
SQLAlchemy database models.
Defines the job table and the per-queue state table.
"""

from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from jobqueue.backoff import BackoffPolicy
from jobqueue.constants import DEFAULT_PRIORITY, TERMINAL_STATES, JobState

# BIGSERIAL on PostgreSQL, INTEGER PRIMARY KEY (rowid alias) on SQLite.
JobId = BigInteger().with_variant(Integer(), "sqlite")
JsonType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class Job(Base):
    """
    Job record: a unit of work in a named queue.

    This is the authoritative source of truth for job state.
    All lifecycle transitions are conditional updates against this table,
    so two workers can never both move the same job out of a state.

    Key constraints:
    - id increases monotonically and doubles as insertion order
    - state transitions follow the JobState state machine
    - lease_token identifies the current lease; every transition out of
      ACTIVE must present it
    - all timestamps are epoch milliseconds
    """

    __tablename__ = "queue_jobs"

    id: Mapped[int] = mapped_column(JobId, primary_key=True, autoincrement=True)

    # Identity
    queue_name: Mapped[str] = mapped_column(String(100), nullable=False)
    job_name: Mapped[str] = mapped_column(String(255), nullable=False)
    payload: Mapped[Any] = mapped_column(JsonType, nullable=True)
    priority: Mapped[int] = mapped_column(
        Integer, nullable=False, default=int(DEFAULT_PRIORITY)
    )

    # State
    state: Mapped[str] = mapped_column(
        String(20), nullable=False, default=JobState.WAITING.value
    )
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Retry tracking
    attempts_made: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    backoff: Mapped[dict] = mapped_column(JsonType, nullable=False, default=dict)
    timeout_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    # Scheduling
    available_at: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # Lease management
    lease_owner: Mapped[str | None] = mapped_column(String(255), nullable=True)
    lease_token: Mapped[str | None] = mapped_column(String(64), nullable=True)
    lease_expires_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    reclaim_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Timestamps
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    processed_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    finished_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    # Outcome
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    result: Mapped[Any] = mapped_column(JsonType, nullable=True)

    __table_args__ = (
        # Lease polling: eligible jobs of a queue in dispatch order
        Index(
            "ix_queue_jobs_dispatch",
            "queue_name",
            "state",
            "priority",
            "available_at",
            "id",
        ),
        # Reaper: active jobs by lease expiry
        Index("ix_queue_jobs_lease_expiry", "queue_name", "state", "lease_expires_at"),
        # Retention sweeps: terminal jobs by finish time
        Index("ix_queue_jobs_finished", "queue_name", "state", "finished_at"),
    )

    @property
    def job_state(self) -> JobState:
        return JobState(self.state)

    @property
    def backoff_policy(self) -> BackoffPolicy:
        """The backoff policy captured at enqueue time."""
        return BackoffPolicy.model_validate(self.backoff or {})

    @property
    def is_terminal(self) -> bool:
        return self.job_state in TERMINAL_STATES

    def __repr__(self) -> str:
        return (
            f"Job(id={self.id}, queue={self.queue_name}, name={self.job_name}, "
            f"state={self.state}, attempts={self.attempts_made}/{self.max_attempts})"
        )


class QueueState(Base):
    """
    Shared per-queue flags.

    Stored alongside the jobs so that pausing a queue is observed by every
    worker process, not just the one that received the request.
    """

    __tablename__ = "queue_states"

    name: Mapped[str] = mapped_column(String(100), primary_key=True)
    paused: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
