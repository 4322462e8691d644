from __future__ import annotations

import asyncio
import itertools
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Deque

from loguru import logger


@dataclass
class Permit:
    """Capacity token held for the duration of one fetch."""

    number: int
    started_at: float
    released: bool = field(default=False)


class RateLimiter:
    """Admission control for fetches.

    Two independent limits apply before a fetch may start:

    * no more than ``parallel`` permits are held at once; callers beyond
      that wait in FIFO order and each release hands its slot to exactly
      one waiter;
    * consecutive starts are at least ``delay_ms`` apart, measured from the
      most recent start across all callers.
    """

    def __init__(self, parallel: int, delay_ms: float) -> None:
        if parallel < 1:
            raise ValueError("parallel must be at least 1")
        if delay_ms < 0:
            raise ValueError("delay_ms must be non-negative")

        self.parallel = parallel
        self.delay = delay_ms / 1000
        self._active = 0
        self._waiters: Deque[asyncio.Future] = deque()
        self._spacing = asyncio.Lock()
        self._last_start: float | None = None
        self._numbers = itertools.count(1)

    @property
    def active(self) -> int:
        return self._active

    @property
    def waiting(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    async def acquire(self) -> Permit:
        await self._take_slot()
        try:
            started_at = await self._space_start()
        except BaseException:
            self._give_back_slot()
            raise
        return Permit(number=next(self._numbers), started_at=started_at)

    def release(self, permit: Permit) -> None:
        if permit.released:
            return
        permit.released = True
        self._give_back_slot()

    @asynccontextmanager
    async def limit(self) -> AsyncIterator[Permit]:
        permit = await self.acquire()
        try:
            yield permit
        finally:
            self.release(permit)

    async def _take_slot(self) -> None:
        if self._active < self.parallel and not self._waiters:
            self._active += 1
            return

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            # the releasing caller transfers its slot, _active is unchanged
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # slot was handed over just before the cancellation landed
                self._give_back_slot()
            elif waiter in self._waiters:
                self._waiters.remove(waiter)
            raise

    def _give_back_slot(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        self._active -= 1

    async def _space_start(self) -> float:
        loop = asyncio.get_running_loop()
        async with self._spacing:
            if self._last_start is not None:
                while True:
                    wait = self._last_start + self.delay - loop.time()
                    if wait <= 0:
                        break
                    logger.trace(f"Rate limiter spacing start by {wait:.3f}s")
                    await asyncio.sleep(wait)
            self._last_start = loop.time()
            return self._last_start
