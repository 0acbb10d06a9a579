"""
Job-related type definitions for internal use.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, Field

from jobqueue.backoff import BackoffPolicy

ProgressReporter = Callable[[int], Awaitable[None]]


class JobOptions(BaseModel):
    """
    Options accepted by enqueue.
    Unset fields fall back to the queue configuration.
    """

    priority: int | None = Field(default=None, description="Higher is dispatched first")
    delay_ms: int = Field(default=0, ge=0, description="Delay before the job becomes eligible")
    attempts: int | None = Field(default=None, ge=1, description="Maximum attempts")
    backoff: BackoffPolicy | None = Field(default=None, description="Retry backoff policy")
    timeout_ms: int | None = Field(default=None, gt=0, description="Execution timeout")


class JobResult(BaseModel):
    """
    Result of job execution.
    Handlers may return this to report a failure without raising.
    """

    success: bool
    output: dict[str, Any] | None = None
    error: str | None = None


@dataclass
class JobContext:
    """
    Context passed to job handlers during execution.
    Contains job metadata and utilities for the handler.
    """

    job_id: int
    queue_name: str
    job_name: str
    payload: Any
    attempt: int
    max_attempts: int
    priority: int
    _progress_reporter: ProgressReporter | None = field(default=None, repr=False)

    @property
    def is_last_attempt(self) -> bool:
        """Check if this is the last retry attempt."""
        return self.attempt >= self.max_attempts

    @property
    def remaining_attempts(self) -> int:
        """Get remaining retry attempts after this one."""
        return max(0, self.max_attempts - self.attempt)

    async def report_progress(self, progress: int) -> None:
        """
        Report advisory progress (0-100).

        Progress never affects scheduling, but it renews the job lease so
        long-running handlers are not reclaimed as stalled.
        """
        if not 0 <= progress <= 100:
            raise ValueError(f"progress must be between 0 and 100, got {progress}")
        if self._progress_reporter is not None:
            await self._progress_reporter(progress)
