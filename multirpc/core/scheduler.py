"""
multirpc - Background Scheduler

Periodic tasks owned by the router (health probes, cache sweep, quota
tick). Tasks sleep on the injected clock and are cancelled on shutdown.
"""

import asyncio
from typing import Awaitable, Callable, Dict, Optional

from .clock import Clock, SystemClock
from ..observability.logging import get_logger

logger = get_logger(__name__)


class PeriodicTask:
    """Runs an async callback every `interval` seconds until stopped."""

    def __init__(
        self,
        name: str,
        interval: float,
        callback: Callable[[], Awaitable[None]],
        clock: Optional[Clock] = None,
    ):
        self.name = name
        self.interval = interval
        self._callback = callback
        self._clock = clock or SystemClock()
        self._task: Optional[asyncio.Task] = None
        self.runs = 0
        self.failures = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name=f"multirpc:{self.name}")

    async def _loop(self) -> None:
        while True:
            await self._clock.sleep(self.interval)
            await self.run_once()

    async def run_once(self) -> None:
        """Invoke the callback now. Errors are logged, never raised."""
        try:
            await self._callback()
            self.runs += 1
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failures += 1
            logger.error(
                f"Background task {self.name} failed",
                task=self.name,
                error=str(e),
                exc_info=True,
            )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None


class Scheduler:
    """Owns a set of named periodic tasks."""

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or SystemClock()
        self._tasks: Dict[str, PeriodicTask] = {}

    def add(self, name: str, interval: float, callback: Callable[[], Awaitable[None]]) -> PeriodicTask:
        task = PeriodicTask(name, interval, callback, clock=self._clock)
        self._tasks[name] = task
        return task

    def get(self, name: str) -> PeriodicTask:
        return self._tasks[name]

    @property
    def tasks(self) -> Dict[str, PeriodicTask]:
        return dict(self._tasks)

    @property
    def running(self) -> bool:
        return any(task.running for task in self._tasks.values())

    def start(self) -> None:
        for task in self._tasks.values():
            task.start()
        logger.info("Scheduler started", tasks=sorted(self._tasks))

    async def stop(self) -> None:
        for task in self._tasks.values():
            await task.stop()
        logger.info("Scheduler stopped")
