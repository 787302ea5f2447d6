"""Bounded concurrency for async jobs."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from typing import TypeVar

T = TypeVar("T")
R = TypeVar("R")


class BoundedRunner:
    """Runs coroutines with a fixed ceiling on how many are in flight."""

    def __init__(self, limit: int = 5) -> None:
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self.limit = limit
        self._semaphore = asyncio.Semaphore(limit)
        self.in_flight = 0
        self.peak_in_flight = 0

    async def run(self, fn: Callable[[T], Awaitable[R]], item: T) -> R:
        async with self._semaphore:
            self.in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
            try:
                return await fn(item)
            finally:
                self.in_flight -= 1

    async def map(self, fn: Callable[[T], Awaitable[R]], items: Iterable[T]) -> list[R]:
        """Apply ``fn`` to every item, returning results in input order."""
        return list(await asyncio.gather(*(self.run(fn, item) for item in items)))
