"""
Unit tests for the handler registry.
"""

import sys
from pathlib import Path

import pytest

from jobqueue.exceptions import InvalidHandlerError
from jobqueue.types.job import JobContext
from jobqueue.worker.registry import HandlerRegistry, load_registry


async def send_email(ctx: JobContext) -> dict:
    return {"sent": ctx.payload["to"]}


class TestHandlerRegistry:
    """Tests for HandlerRegistry."""

    def test_register_and_get(self, registry: HandlerRegistry):
        registry.register("email", "send-email", send_email)

        assert registry.get("email", "send-email") is send_email
        assert ("email", "send-email") in registry
        assert len(registry) == 1

    def test_get_missing(self, registry: HandlerRegistry):
        """Test lookups are scoped by queue and job name."""
        registry.register("email", "send-email", send_email)

        assert registry.get("email", "other") is None
        assert registry.get("notification", "send-email") is None

    def test_decorator(self, registry: HandlerRegistry):
        @registry.handler("report", "daily")
        async def daily(ctx: JobContext) -> None:
            return None

        assert registry.get("report", "daily") is daily

    def test_register_replaces(self, registry: HandlerRegistry):
        async def other(ctx: JobContext) -> None:
            return None

        registry.register("email", "send-email", send_email)
        registry.register("email", "send-email", other)

        assert registry.get("email", "send-email") is other
        assert len(registry) == 1

    def test_listing(self, registry: HandlerRegistry):
        registry.register("email", "welcome", send_email)
        registry.register("email", "digest", send_email)
        registry.register("file", "resize", send_email)

        assert registry.job_names("email") == ["digest", "welcome"]
        assert registry.queue_names() == {"email", "file"}

    def test_sync_handler_rejected(self, registry: HandlerRegistry):
        """Test plain functions cannot be registered as handlers."""

        def send_sync(ctx: JobContext) -> dict:
            return {}

        with pytest.raises(InvalidHandlerError):
            registry.register("email", "send-email", send_sync)

        with pytest.raises(InvalidHandlerError):
            registry.handler("email", "send-email")(send_sync)

        assert len(registry) == 0

    def test_async_callable_object_accepted(self, registry: HandlerRegistry):
        class Sender:
            async def __call__(self, ctx: JobContext) -> None:
                return None

        sender = Sender()
        registry.register("email", "send-email", sender)

        assert registry.get("email", "send-email") is sender


class TestLoadRegistry:
    """Tests for importing a registry by path."""

    def test_load_from_module(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        (tmp_path / "handlers_for_test.py").write_text(
            "from jobqueue.worker.registry import HandlerRegistry\n"
            "registry = HandlerRegistry()\n"
        )
        monkeypatch.syspath_prepend(str(tmp_path))
        monkeypatch.delitem(sys.modules, "handlers_for_test", raising=False)

        registry = load_registry("handlers_for_test:registry")

        assert isinstance(registry, HandlerRegistry)

    def test_malformed_path(self):
        with pytest.raises(ValueError):
            load_registry("jobqueue.worker.registry")

    def test_not_a_registry(self):
        with pytest.raises(ValueError):
            load_registry("jobqueue.config:get_settings")


class TestJobContext:
    """Tests for the context passed to handlers."""

    def test_attempt_helpers(self):
        ctx = JobContext(
            job_id=1,
            queue_name="email",
            job_name="send-email",
            payload={},
            attempt=2,
            max_attempts=3,
            priority=50,
        )

        assert ctx.is_last_attempt is False
        assert ctx.remaining_attempts == 1

    async def test_progress_out_of_range(self):
        ctx = JobContext(
            job_id=1,
            queue_name="email",
            job_name="send-email",
            payload={},
            attempt=1,
            max_attempts=1,
            priority=50,
        )

        with pytest.raises(ValueError):
            await ctx.report_progress(101)

    async def test_progress_forwarded(self):
        reported: list[int] = []

        async def reporter(progress: int) -> None:
            reported.append(progress)

        ctx = JobContext(
            job_id=1,
            queue_name="email",
            job_name="send-email",
            payload={},
            attempt=1,
            max_attempts=1,
            priority=50,
            _progress_reporter=reporter,
        )

        await ctx.report_progress(25)

        assert reported == [25]
