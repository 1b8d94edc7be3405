"""Time-bounded cache for a value shared between concurrent integration tasks."""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable


class TokenCache:
    """Hold one token (or any small payload) for ``ttl`` seconds behind an ``asyncio.Lock``.

    ``get_or_fetch`` serialises refreshes so that concurrent callers trigger a
    single fetch.
    """

    def __init__(self, ttl: float, *, clock: Callable[[], float] | None = None) -> None:
        if ttl <= 0:
            raise ValueError("ttl must be > 0")
        self._ttl = ttl
        self._clock = clock or time.monotonic
        self._lock = asyncio.Lock()
        self._value: str | None = None
        self._fetched_at: float | None = None

    def _fresh(self) -> bool:
        return self._fetched_at is not None and self._clock() - self._fetched_at < self._ttl

    async def get(self) -> str | None:
        async with self._lock:
            return self._value if self._fresh() else None

    async def set(self, value: str) -> None:
        async with self._lock:
            self._value = value
            self._fetched_at = self._clock()

    async def invalidate(self) -> None:
        async with self._lock:
            self._value = None
            self._fetched_at = None

    async def get_or_fetch(self, fetch: Callable[[], Awaitable[str]]) -> str:
        async with self._lock:
            if self._fresh() and self._value is not None:
                return self._value
            value = await fetch()
            self._value = value
            self._fetched_at = self._clock()
            return value


__all__ = ["TokenCache"]
