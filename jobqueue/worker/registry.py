"""
Job handler registry.

Handlers are registered explicitly at startup, keyed by (queue name, job
name). Handlers must be idempotent: a job may run more than once if its
worker crashes or its lease expires mid-execution.
"""

import importlib
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from jobqueue.exceptions import InvalidHandlerError
from jobqueue.types.job import JobContext

logger = logging.getLogger(__name__)

# Type alias for job handler functions
JobHandler = Callable[[JobContext], Awaitable[Any]]


class HandlerRegistry:
    """
    Mapping of (queue name, job name) to handler coroutine functions.

    Example:
        registry = HandlerRegistry()

        @registry.handler("email", "send-email")
        async def send_email(ctx: JobContext) -> dict:
            ...
    """

    def __init__(self) -> None:
        self._handlers: dict[tuple[str, str], JobHandler] = {}

    def register(self, queue_name: str, job_name: str, handler: JobHandler) -> None:
        """
        Associate a handler with a job name on a queue.

        Registering the same pair twice replaces the previous handler.

        Raises:
            InvalidHandlerError: If handler is not an async callable.
        """
        if not _is_async_callable(handler):
            raise InvalidHandlerError(
                f"Handler for {queue_name}:{job_name} must be an async function, got {handler!r}"
            )

        key = (queue_name, job_name)
        if key in self._handlers:
            logger.warning(
                "Replacing job handler",
                extra={"queue": queue_name, "job_name": job_name},
            )
        self._handlers[key] = handler
        logger.info(f"Registered handler for {queue_name}:{job_name}")

    def handler(self, queue_name: str, job_name: str) -> Callable[[JobHandler], JobHandler]:
        """Decorator form of register()."""

        def decorator(fn: JobHandler) -> JobHandler:
            self.register(queue_name, job_name, fn)
            return fn

        return decorator

    def get(self, queue_name: str, job_name: str) -> JobHandler | None:
        return self._handlers.get((queue_name, job_name))

    def job_names(self, queue_name: str) -> list[str]:
        """List job names registered on a queue."""
        return sorted(name for queue, name in self._handlers if queue == queue_name)

    def queue_names(self) -> set[str]:
        return {queue for queue, _ in self._handlers}

    def __contains__(self, key: tuple[str, str]) -> bool:
        return key in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)


def _is_async_callable(handler: object) -> bool:
    if inspect.iscoroutinefunction(handler):
        return True
    return callable(handler) and inspect.iscoroutinefunction(getattr(handler, "__call__", None))


def load_registry(path: str) -> HandlerRegistry:
    """
    Import a registry from a "package.module:attribute" path.

    Raises:
        ValueError: If the path is malformed or does not name a HandlerRegistry.
    """
    module_name, _, attribute = path.partition(":")
    if not module_name or not attribute:
        raise ValueError(f"Handler path must look like 'module:attribute', got {path!r}")

    registry = getattr(importlib.import_module(module_name), attribute, None)
    if not isinstance(registry, HandlerRegistry):
        raise ValueError(f"{path} is not a HandlerRegistry")
    return registry
