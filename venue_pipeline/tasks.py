"""Background tasks owned by the service lifecycle."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Union

logger = logging.getLogger(__name__)

Callback = Callable[[], Union[None, Awaitable[None], object]]


class PeriodicTask:
    """Run *callback* every *interval* seconds between :meth:`start` and :meth:`stop`.

    Failures inside the callback are logged and do not stop the schedule.
    """

    def __init__(self, name: str, callback: Callback, *, interval: float) -> None:
        if interval <= 0:
            raise ValueError("interval must be > 0")
        self.name = name
        self._callback = callback
        self._interval = interval
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name=self.name)
        logger.debug("Started periodic task %s (every %.0fs)", self.name, self._interval)

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.debug("Stopped periodic task %s", self.name)

    async def run_once(self) -> None:
        try:
            result = self._callback()
            if asyncio.iscoroutine(result):
                await result
        except Exception as exc:
            logger.warning("Periodic task %s failed: %s", self.name, exc)

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            await self.run_once()
