"""Sliding-window rate limiters.

The security layer depends only on :class:`RateLimiter`; the in-memory
implementation suits a single process and tests, the Redis implementation
shares the window across every engine instance.
"""

import time
from abc import ABC, abstractmethod
from collections import deque
from typing import Callable
from uuid import uuid4

import structlog
from redis import asyncio as redis_async

logger = structlog.get_logger()


class RateLimiter(ABC):
    """Strategy interface for per-key request accounting."""

    @abstractmethod
    async def hit(self, key: str, limit: int, window_seconds: float) -> bool:
        """Record one request for ``key`` if it fits in the window.

        Args:
            key: Accounting key, e.g. ``"<userId>:db.find"``
            limit: Maximum requests allowed inside the window
            window_seconds: Length of the sliding window

        Returns:
            True if the request is allowed, False if the limit is reached
        """

    async def reset(self, key: str | None = None) -> None:
        """Forget recorded requests for one key, or for every key."""


class InMemoryRateLimiter(RateLimiter):
    """Process-local sliding window keyed by ``userId:operation``.

    Rejected requests are not recorded, so a caller that backs off regains
    capacity as soon as old requests leave the window. Keys whose requests
    have all left the widest window seen are dropped.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._requests: dict[str, deque[float]] = {}
        self._widest_window = 0.0
        self._last_sweep = clock()

    def __len__(self) -> int:
        return len(self._requests)

    async def hit(self, key: str, limit: int, window_seconds: float) -> bool:
        now = self._clock()
        self._widest_window = max(self._widest_window, window_seconds)
        if now - self._last_sweep >= self._widest_window:
            self._sweep(now)

        window = self._requests.get(key, deque())
        while window and now - window[0] >= window_seconds:
            window.popleft()
        if len(window) >= limit:
            if not window:
                self._requests.pop(key, None)
            return False
        window.append(now)
        self._requests[key] = window
        return True

    def _sweep(self, now: float) -> None:
        stale = [
            key
            for key, window in self._requests.items()
            if not window or now - window[-1] >= self._widest_window
        ]
        for key in stale:
            del self._requests[key]
        self._last_sweep = now

    async def reset(self, key: str | None = None) -> None:
        if key is None:
            self._requests.clear()
        else:
            self._requests.pop(key, None)


class RedisRateLimiter(RateLimiter):
    """Sliding window stored in a Redis sorted set per key.

    Each request is a member scored by its timestamp; members older than the
    window are trimmed on every hit.
    """

    def __init__(
        self,
        client: redis_async.Redis,
        prefix: str = "blockflow:ratelimit:",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client = client
        self._prefix = prefix
        self._clock = clock

    async def hit(self, key: str, limit: int, window_seconds: float) -> bool:
        redis_key = f"{self._prefix}{key}"
        now = self._clock()
        member = f"{now}:{uuid4().hex}"

        async with self._client.pipeline(transaction=True) as pipe:
            pipe.zremrangebyscore(redis_key, 0, now - window_seconds)
            pipe.zadd(redis_key, {member: now})
            pipe.zcard(redis_key)
            pipe.expire(redis_key, int(window_seconds) + 1)
            _, _, count, _ = await pipe.execute()

        if count > limit:
            await self._client.zrem(redis_key, member)
            return False
        return True

    async def reset(self, key: str | None = None) -> None:
        if key is not None:
            await self._client.delete(f"{self._prefix}{key}")
            return
        async for redis_key in self._client.scan_iter(match=f"{self._prefix}*"):
            await self._client.delete(redis_key)


def create_rate_limiter(
    backend: str,
    redis_client: redis_async.Redis | None = None,
) -> RateLimiter:
    """Build the configured limiter, falling back to memory without Redis."""
    if backend == "redis":
        if redis_client is not None:
            return RedisRateLimiter(redis_client)
        logger.warning("rate_limiter_redis_unavailable", fallback="memory")
    return InMemoryRateLimiter()
