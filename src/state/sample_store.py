# Fleetwatch/src/state/sample_store.py
# @ai-rules:
# 1. [Constraint]: Append-only. Nothing here updates or deletes a sample; retention is a store policy outside this service.
# 2. [Pattern]: ZSET score = capture timestamp, so out-of-order samples still land in time order.
"""
Telemetry sample history.

Redis Schema:
    fleetwatch:samples:{identity}    ZSET    {sample_json: capture_epoch}
"""
from __future__ import annotations

import bisect
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import TYPE_CHECKING, Optional

from ..models import TelemetrySample

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = logging.getLogger(__name__)


class SampleStore(ABC):
    @abstractmethod
    async def append(self, sample: TelemetrySample) -> None:
        ...

    @abstractmethod
    async def history(
        self,
        identity_key: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        offset: int = 0,
        limit: int = 100,
    ) -> tuple[list[TelemetrySample], int]:
        """Newest first. Returns (page, total matching)."""


class InMemorySampleStore(SampleStore):
    def __init__(self):
        self._samples: dict[str, list[tuple[float, TelemetrySample]]] = {}

    async def append(self, sample: TelemetrySample) -> None:
        series = self._samples.setdefault(sample.identity_key, [])
        bisect.insort(series, (sample.timestamp.timestamp(), sample), key=lambda item: item[0])

    async def history(self, identity_key, start=None, end=None, offset=0, limit=100):
        lo = start.timestamp() if start else float("-inf")
        hi = end.timestamp() if end else float("inf")
        matching = [s for ts, s in self._samples.get(identity_key, []) if lo <= ts <= hi]
        matching.reverse()
        return matching[offset:offset + limit], len(matching)


class RedisSampleStore(SampleStore):
    SAMPLES_PREFIX = "fleetwatch:samples:"

    def __init__(self, redis: "Redis"):
        self.redis = redis

    async def append(self, sample: TelemetrySample) -> None:
        key = f"{self.SAMPLES_PREFIX}{sample.identity_key}"
        await self.redis.zadd(key, {sample.model_dump_json(by_alias=True): sample.timestamp.timestamp()})

    async def history(self, identity_key, start=None, end=None, offset=0, limit=100):
        key = f"{self.SAMPLES_PREFIX}{identity_key}"
        lo = start.timestamp() if start else "-inf"
        hi = end.timestamp() if end else "+inf"
        async with self.redis.pipeline(transaction=False) as pipe:
            pipe.zcount(key, lo, hi)
            pipe.zrevrangebyscore(key, hi, lo, start=offset, num=limit)
            total, members = await pipe.execute()
        return [TelemetrySample.model_validate_json(m) for m in members], int(total)
