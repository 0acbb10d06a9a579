"""
Base class for background loops that run on a fixed interval.
"""

import asyncio
import logging

from jobqueue.exceptions import StoreUnavailableError

logger = logging.getLogger(__name__)


class PeriodicService:
    """
    Runs run_once() every `interval` seconds until stopped.

    Store outages are logged and retried after `retry_interval` instead of
    ending the loop. stop() wakes a sleeping loop immediately.
    """

    name = "periodic"

    def __init__(self, interval: float, retry_interval: float | None = None):
        self.interval = interval
        self.retry_interval = retry_interval if retry_interval is not None else interval
        self._stopped = asyncio.Event()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def run_once(self) -> object:
        raise NotImplementedError

    async def start(self) -> None:
        """Run the loop until stop() is called."""
        logger.info(f"{self.name} starting with interval {self.interval}s")
        self._running = True
        self._stopped.clear()

        while not self._stopped.is_set():
            delay = self.interval
            try:
                await self.run_once()
            except StoreUnavailableError as e:
                logger.warning(f"{self.name}: {e}; retrying in {self.retry_interval}s")
                delay = self.retry_interval
            except Exception as e:
                logger.exception(f"Error in {self.name} loop: {e}")

            await self.sleep(delay)

        self._running = False
        logger.info(f"{self.name} stopped")

    async def stop(self) -> None:
        """Stop the loop after the current iteration."""
        logger.info(f"{self.name} stopping")
        self._stopped.set()

    async def sleep(self, seconds: float) -> None:
        """Sleep for `seconds`, returning early if stop() is called."""
        try:
            await asyncio.wait_for(self._stopped.wait(), timeout=seconds)
        except TimeoutError:
            pass
