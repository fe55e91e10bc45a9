"""Cancellable periodic task used by hosts for their auto-test tick."""

import asyncio
import logging
import random
from contextlib import suppress
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


Sleep = Callable[[float], Awaitable[None]]


def pick_interval(rng: random.Random, min_interval: float, jitter: float) -> float:
    """Period = min_interval + uniform[0, jitter), never below min_interval."""
    if jitter <= 0:
        return max(min_interval, 0.0)
    return max(min_interval, min_interval + rng.random() * jitter)


class PeriodicTask:
    """
    Runs ``callback`` every ``interval`` seconds until stopped.

    The interval is fixed at construction. Callback exceptions are logged
    and the loop keeps going; cancellation stops it.
    """

    def __init__(
        self,
        name: str,
        callback: Callable[[], Awaitable[None]],
        interval: float,
        sleep: Optional[Sleep] = None,
    ):
        self.name = name
        self.callback = callback
        self.interval = interval
        self._sleep = sleep or asyncio.sleep
        self._task: Optional[asyncio.Task] = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Cancel the loop and wait for it to finish."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

    async def _run(self) -> None:
        while True:
            await self._sleep(self.interval)
            self.ticks += 1
            try:
                await self.callback()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"[PERIODIC] {self.name} tick {self.ticks} failed: {e}")
