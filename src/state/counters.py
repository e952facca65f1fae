# Fleetwatch/src/state/counters.py
# @ai-rules:
# 1. [Pattern]: CounterStore is the only shared mutable state in the request path. Business code gets it injected.
# 2. [Constraint]: hit() must be atomic per key. Cross-key coordination is never needed.
# 3. [Gotcha]: Losing counters on restart (memory backend) under-enforces limits for one window. Acceptable.
"""
Fixed-window counters for rate governance.

A window starts on the first hit for a key and resets entirely once it
elapses. Both backends return (count_including_this_hit, seconds_until_reset).
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from redis.exceptions import WatchError

from ..utils.clock import Clock, utc_now

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = logging.getLogger(__name__)

# In-memory sweep threshold for expired windows
_SWEEP_AT = 10_000


class CounterStore(ABC):
    @abstractmethod
    async def hit(self, key: str, window_seconds: int) -> tuple[int, float]:
        """Increment `key`, opening a new window if none is live."""

    @abstractmethod
    async def release(self, key: str) -> None:
        """Give one admission back to a live window. No-op if the window is gone."""


class InMemoryCounterStore(CounterStore):
    """Single-process counters. Used by tests and STORAGE_BACKEND=memory."""

    def __init__(self, clock: Clock = utc_now):
        self._clock = clock
        self._windows: dict[str, list[float]] = {}  # key -> [count, window_end_ts]

    async def hit(self, key: str, window_seconds: int) -> tuple[int, float]:
        now = self._clock().timestamp()
        # No await between read and write: atomic on the event loop.
        if len(self._windows) > _SWEEP_AT:
            self._sweep(now)
        window = self._windows.get(key)
        if window is None or now >= window[1]:
            window = [0, now + window_seconds]
            self._windows[key] = window
        window[0] += 1
        return int(window[0]), window[1] - now

    async def release(self, key: str) -> None:
        window = self._windows.get(key)
        if window is None or self._clock().timestamp() >= window[1]:
            return
        window[0] = max(0, window[0] - 1)

    def _sweep(self, now: float) -> None:
        expired = [k for k, (_, end) in self._windows.items() if now >= end]
        for k in expired:
            del self._windows[k]
        logger.debug(f"Swept {len(expired)} expired rate windows")


class RedisCounterStore(CounterStore):
    """Shared counters for multi-instance deployments. Window = key TTL."""

    def __init__(self, redis: "Redis"):
        self.redis = redis

    async def hit(self, key: str, window_seconds: int) -> tuple[int, float]:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(key, 0, ex=window_seconds, nx=True)
            pipe.incr(key)
            pipe.pttl(key)
            _, count, ttl_ms = await pipe.execute()

        if ttl_ms is None or ttl_ms < 0:
            # Key survived without expiry (e.g. created by a stray DECR). Restart its window.
            await self.redis.expire(key, window_seconds)
            ttl_ms = window_seconds * 1000
        return int(count), ttl_ms / 1000.0

    async def release(self, key: str) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    current = await pipe.get(key)
                    if current is None or int(current) <= 0:
                        return
                    pipe.multi()
                    pipe.decr(key)
                    await pipe.execute()
                    return
                except WatchError:
                    continue
