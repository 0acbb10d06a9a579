"""
Exceptions raised by the queue engine.

Validation errors are raised synchronously to producers. Store errors are
transient and are retried by the background loops. Handler errors never
surface here; they end up in job state and ``last_error``.
"""


class QueueError(Exception):
    """Base class for all queue engine errors."""


class StoreUnavailableError(QueueError):
    """The backing store could not be reached or is temporarily locked.

    Attributes:
        operation: The store operation that failed.
    """

    def __init__(self, operation: str, cause: BaseException | None = None):
        self.operation = operation
        message = f"Job store unavailable during {operation}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)


class UnknownQueueError(QueueError):
    """Raised when a queue name is not in the configuration."""

    def __init__(self, queue_name: str):
        self.queue_name = queue_name
        super().__init__(f"Unknown queue: {queue_name}")


class JobNotFoundError(QueueError):
    """Raised when an operation targets a job that does not exist."""

    def __init__(self, queue_name: str, job_id: int):
        self.queue_name = queue_name
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found in queue {queue_name}")


class InvalidJobStateError(QueueError):
    """Raised when an operation is not valid for the job's current state.

    Attributes:
        job_id: The job identifier.
        state: The state the job was found in.
        expected: The state(s) the operation requires.
    """

    def __init__(self, job_id: int, state: str, expected: str):
        self.job_id = job_id
        self.state = state
        self.expected = expected
        super().__init__(
            f"Job {job_id} is {state}, operation requires {expected}"
        )


class InvalidJobOptionsError(QueueError):
    """Raised when enqueue options are rejected."""


class JobTimeoutError(QueueError):
    """A handler ran past its execution timeout.

    Counted as a failed attempt. The handler itself is not cancelled.
    """

    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Job timed out after {timeout_seconds:g}s")


class InvalidHandlerError(QueueError):
    """A job handler is not an async callable.

    Rejected at registration; a job whose handler still returns a
    non-awaitable fails permanently.
    """
