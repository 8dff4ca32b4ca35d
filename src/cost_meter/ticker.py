"""Cooperative once-per-interval recomputation while the timer runs."""

import asyncio
import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

DEFAULT_TICK_INTERVAL = 1.0


class Ticker:
    """
    Runs a callback once immediately, then every `interval` seconds while
    running. The schedule is rebuilt from scratch on every reschedule so no
    loop keeps ticking over a stale anchor.
    """

    def __init__(
        self,
        callback: Callable[[], Awaitable[None]],
        interval: float = DEFAULT_TICK_INTERVAL,
    ):
        self.callback = callback
        self.interval = interval
        self._task: asyncio.Task | None = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    async def reschedule(self, running: bool):
        """Tear down the current schedule, recompute now, and tick again if running."""
        self.cancel()
        await self._tick()
        if running:
            self._task = asyncio.create_task(self._run())

    def cancel(self):
        if self._task and not self._task.done():
            self._task.cancel()
        self._task = None

    async def _tick(self):
        try:
            await self.callback()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.warning("Tick recomputation failed", exc_info=True)

    async def _run(self):
        try:
            while True:
                await asyncio.sleep(self.interval)
                await self._tick()
        except asyncio.CancelledError:
            pass
