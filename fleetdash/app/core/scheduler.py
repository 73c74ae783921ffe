"""Explicit periodic task with a start/stop lifecycle.

Loops own an ``asyncio.Task`` and sleep through an injectable coroutine so
tests can drive time with a fake clock instead of wall-clock timers.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]


class PeriodicTask:
    """Run ``callback`` every ``interval`` seconds until stopped."""

    def __init__(
        self,
        name: str,
        callback: Callable[[], Awaitable[object]],
        interval: float,
        *,
        sleep: SleepFunc = asyncio.sleep,
        run_immediately: bool = True,
        stop_on: tuple[type[BaseException], ...] = (),
    ):
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self.name = name
        self.interval = interval
        self._callback = callback
        self._sleep = sleep
        self._run_immediately = run_immediately
        self._stop_on = stop_on
        self._task: asyncio.Task | None = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        """Start the loop. Calling start on a running task is a no-op."""
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name=self.name)
        logger.debug("Periodic task %s started (every %ss)", self.name, self.interval)

    async def stop(self):
        """Cancel the loop and wait for it to finish."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.debug("Periodic task %s stopped", self.name)

    async def _loop(self):
        if not self._run_immediately:
            await self._sleep(self.interval)

        while True:
            try:
                await self._callback()
            except asyncio.CancelledError:
                raise
            except self._stop_on as e:
                logger.warning("Periodic task %s halted: %s", self.name, e)
                return
            except Exception as e:
                logger.error("Periodic task %s tick failed: %s", self.name, e)
            self.ticks += 1

            await self._sleep(self.interval)
