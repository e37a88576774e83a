from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def optimal_concurrency(total_dependencies: int) -> int:
    """Concurrency limit suited to a workload of the given size."""
    if total_dependencies <= 50:
        return 10
    if total_dependencies <= 200:
        return 25
    return 50


class ConcurrencyGate:
    """FIFO admission control: at most ``max_concurrent`` tasks run at once.

    Tasks beyond the limit wait in arrival order. A task's failure is
    propagated to its own caller only; the slot is always released.
    """

    def __init__(self, max_concurrent: int = 10) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        self._max = max_concurrent
        self._active = 0
        self._waiters: deque[asyncio.Future[None]] = deque()

    @property
    def max_concurrent(self) -> int:
        return self._max

    @property
    def active_count(self) -> int:
        return self._active

    @property
    def queued_count(self) -> int:
        return len(self._waiters)

    def resize(self, max_concurrent: int) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        if max_concurrent != self._max:
            logger.debug(f"Concurrency limit {self._max} -> {max_concurrent}")
        self._max = max_concurrent
        self._wake()

    async def acquire(self) -> None:
        if self._active < self._max and not self._waiters:
            self._active += 1
            return
        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        try:
            await fut
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled():
                # slot was handed over just before cancellation
                self.release()
            elif fut in self._waiters:
                self._waiters.remove(fut)
            raise

    def release(self) -> None:
        self._active -= 1
        self._wake()

    def _wake(self) -> None:
        while self._waiters and self._active < self._max:
            fut = self._waiters.popleft()
            if fut.done():
                continue
            self._active += 1
            fut.set_result(None)

    async def enqueue(self, task_factory: Callable[[], Awaitable[T]]) -> T:
        await self.acquire()
        try:
            return await task_factory()
        finally:
            self.release()
