"""
multirpc - Clock

Every time read and every sleep in the router goes through a Clock, so
window resets, backoff and background schedules can be driven in
virtual time.
"""

import asyncio
import heapq
import itertools
import time
from abc import ABC, abstractmethod
from typing import List, Tuple


class Clock(ABC):
    """Abstract time source."""

    @abstractmethod
    def time(self) -> float:
        """Current Unix timestamp in seconds."""
        pass

    @abstractmethod
    async def sleep(self, seconds: float) -> None:
        """Suspend the calling task for `seconds`."""
        pass


class SystemClock(Clock):
    """Production clock backed by wall time and asyncio."""

    def time(self) -> float:
        return time.time()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


class ManualClock(Clock):
    """
    Virtual clock for tests.

    Time only moves when the test says so. `sleep()` suspends until
    `advance()` (or `tick()`) carries the clock past the sleeper's
    deadline. With `auto_advance=True`, sleeps complete immediately
    after moving the clock forward; every requested delay is recorded
    in `sleeps`.
    """

    def __init__(self, start: float = 1_700_000_000.0, auto_advance: bool = False):
        self._now = float(start)
        self.auto_advance = auto_advance
        self.sleeps: List[float] = []
        self._sleepers: List[Tuple[float, int, asyncio.Future]] = []
        self._seq = itertools.count()

    def time(self) -> float:
        return self._now

    async def sleep(self, seconds: float) -> None:
        seconds = max(0.0, seconds)
        self.sleeps.append(seconds)

        if self.auto_advance:
            self._now += seconds
            await asyncio.sleep(0)
            return

        if seconds == 0:
            await asyncio.sleep(0)
            return

        future = asyncio.get_running_loop().create_future()
        heapq.heappush(self._sleepers, (self._now + seconds, next(self._seq), future))
        await future

    def next_deadline(self):
        self._discard_done()
        return self._sleepers[0][0] if self._sleepers else None

    def advance(self, seconds: float) -> None:
        """Move time forward and release every sleeper now due."""
        self._now += seconds
        self._wake_due()

    async def tick(self, seconds: float, settle_rounds: int = 50) -> None:
        """
        Advance in steps, stopping at every sleeper deadline on the way.

        Periodic tasks that re-arm themselves inside the span get to run
        once per period instead of once per call.
        """
        target = self._now + seconds
        # let freshly started tasks reach their first sleep
        await self._settle(settle_rounds)
        while True:
            deadline = self.next_deadline()
            if deadline is None or deadline > target:
                break
            self._now = max(self._now, deadline)
            self._wake_due()
            await self._settle(settle_rounds)
        self._now = target
        self._wake_due()
        await self._settle(settle_rounds)

    async def _settle(self, rounds: int) -> None:
        for _ in range(rounds):
            await asyncio.sleep(0)

    def _discard_done(self) -> None:
        while self._sleepers and self._sleepers[0][2].done():
            heapq.heappop(self._sleepers)

    def _wake_due(self) -> None:
        while self._sleepers and self._sleepers[0][0] <= self._now:
            _, _, future = heapq.heappop(self._sleepers)
            if not future.done():
                future.set_result(None)
