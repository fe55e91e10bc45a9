"""Per-second resource samples of the harness process."""

import asyncio
import logging
import os
from contextlib import suppress
from typing import Optional, TextIO

import psutil

logger = logging.getLogger(__name__)


class ResourceSampler:
    """
    Appends one line ``pid threads cpu% rss`` per ``interval`` to ``path``.

    Write and psutil errors are logged and sampling continues.
    """

    def __init__(self, path: str, interval: float = 1.0, pid: Optional[int] = None):
        self.path = path
        self.interval = interval
        self.process = psutil.Process(pid or os.getpid())
        self.samples = 0
        self._file: Optional[TextIO] = None
        self._task: Optional[asyncio.Task] = None

    def sample(self) -> str:
        with self.process.oneshot():
            line = (
                f"{self.process.pid} {self.process.num_threads()} "
                f"{self.process.cpu_percent(interval=None):.1f} "
                f"{self.process.memory_info().rss}"
            )
        return line

    def start(self) -> None:
        self._file = open(self.path, "w", encoding="utf-8")
        # first cpu_percent call only primes the counter
        self.process.cpu_percent(interval=None)
        self._task = asyncio.create_task(self._run())
        logger.info(f"[MONITOR] sampling process {self.process.pid} into {self.path}")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        if self._file is not None:
            self._file.close()
            self._file = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                self._file.write(self.sample() + "\n")
                self._file.flush()
                self.samples += 1
            except (OSError, psutil.Error) as e:
                logger.warning(f"[MONITOR] sample failed: {e}")
