"""PeriodicTask: an asyncio interval loop owned by whoever started it."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Run *func* every *interval* seconds until ``stop()`` is awaited.

    The first run happens one interval after ``start()``.  Exceptions from
    *func* are logged and the loop keeps going.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        func: Callable[[], Awaitable[None] | None],
    ) -> None:
        self.name = name
        self.interval = interval
        self._func = func
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> "PeriodicTask":
        if self.running:
            return self
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name=f"periodic:{self.name}",
        )
        return self

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                result = self._func()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning("Periodic task %s failed: %s", self.name, e, exc_info=True)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
