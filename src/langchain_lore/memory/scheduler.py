"""
Task scheduler for the engine's cooperative async work.

Everything the engine schedules (queue drains, delayed re-enqueues, the
watchdog, periodic maintenance) goes through one ``AsyncioScheduler`` so it
can be cancelled together and so tests can swap the sleep function out.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

AsyncCallback = Callable[[], Awaitable[None]]


class AsyncioScheduler:
    def __init__(self, sleep: Optional[Callable[[float], Awaitable[None]]] = None):
        self._sleep = sleep or asyncio.sleep
        self._tasks: set[asyncio.Task] = set()
        self._periodic: set[asyncio.Task] = set()

    async def sleep(self, seconds: float) -> None:
        if seconds > 0:
            await self._sleep(seconds)

    def submit(self, callback: AsyncCallback, name: str = "") -> asyncio.Task:
        """Run ``callback`` as a background task on the running loop."""
        task = asyncio.get_running_loop().create_task(self._guard(callback, name), name=name or None)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def call_later(self, delay: float, callback: AsyncCallback, name: str = "") -> asyncio.Task:
        async def delayed() -> None:
            await self.sleep(delay)
            await callback()

        return self.submit(delayed, name)

    def every(self, interval: float, callback: AsyncCallback, name: str = "") -> asyncio.Task:
        async def repeat() -> None:
            while True:
                await self.sleep(interval)
                await self._guard(callback, name)

        task = asyncio.get_running_loop().create_task(repeat(), name=name or None)
        self._periodic.add(task)
        task.add_done_callback(self._periodic.discard)
        return task

    def cancel_all(self) -> None:
        for task in list(self._tasks | self._periodic):
            task.cancel()
        self._tasks.clear()
        self._periodic.clear()

    async def drain(self) -> None:
        """Wait until every one-shot task has finished; periodic tasks keep running."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    @staticmethod
    async def _guard(callback: AsyncCallback, name: str) -> None:
        try:
            await callback()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Scheduled task %s failed: %s", name or callback, e)
