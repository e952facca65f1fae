# Fleetwatch/src/state/identity_store.py
# @ai-rules:
# 1. [Constraint]: upsert_seen is ONE atomic step (MULTI of HSETNX defaults + HSET lastSeenAt + HGETALL). Never read-then-write.
# 2. [Pattern]: Defaults are written with HSETNX so registry-set thresholds are never overwritten by ingestion.
# 3. [Gotcha]: alertSettings is a JSON string inside the hash; everything else is a flat string field.
"""
Identity records.

Redis Schema:
    fleetwatch:identity:{key}    HASH    {label, active, powerThreshold, alertSettings, createdAt, lastSeenAt}
    fleetwatch:identities        SET     [identity keys]
"""
from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import TYPE_CHECKING, Optional

from ..models import AlertSettings, Identity

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = logging.getLogger(__name__)


class IdentityStore(ABC):
    @abstractmethod
    async def upsert_seen(self, defaults: Identity) -> Identity:
        """
        Create the identity from `defaults` if absent, then set lastSeenAt.

        `defaults.last_seen_at` is the value written. Returns the stored record.
        """

    @abstractmethod
    async def get(self, key: str) -> Optional[Identity]:
        ...


class InMemoryIdentityStore(IdentityStore):
    def __init__(self):
        self._identities: dict[str, Identity] = {}

    async def upsert_seen(self, defaults: Identity) -> Identity:
        existing = self._identities.get(defaults.key)
        if existing is None:
            self._identities[defaults.key] = defaults.model_copy(deep=True)
        else:
            existing.last_seen_at = defaults.last_seen_at
        return self._identities[defaults.key].model_copy(deep=True)

    async def get(self, key: str) -> Optional[Identity]:
        identity = self._identities.get(key)
        return identity.model_copy(deep=True) if identity else None

    def put(self, identity: Identity) -> None:
        """Registry-side write (tests and fixtures)."""
        self._identities[identity.key] = identity.model_copy(deep=True)


class RedisIdentityStore(IdentityStore):
    IDENTITY_PREFIX = "fleetwatch:identity:"
    IDENTITIES = "fleetwatch:identities"

    def __init__(self, redis: "Redis"):
        self.redis = redis

    async def upsert_seen(self, defaults: Identity) -> Identity:
        key = f"{self.IDENTITY_PREFIX}{defaults.key}"
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hsetnx(key, "label", defaults.label)
            pipe.hsetnx(key, "active", "1" if defaults.active else "0")
            pipe.hsetnx(key, "powerThreshold", str(defaults.power_threshold))
            pipe.hsetnx(key, "alertSettings", defaults.alert_settings.model_dump_json(by_alias=True))
            pipe.hsetnx(key, "createdAt", defaults.created_at.isoformat())
            pipe.hset(key, "lastSeenAt", defaults.last_seen_at.isoformat())
            pipe.sadd(self.IDENTITIES, defaults.key)
            pipe.hgetall(key)
            results = await pipe.execute()

        created = bool(results[0])
        if created:
            logger.info(f"Identity {defaults.key} created on first contact")
        return self._from_hash(defaults.key, results[-1])

    async def get(self, key: str) -> Optional[Identity]:
        data = await self.redis.hgetall(f"{self.IDENTITY_PREFIX}{key}")
        if not data:
            return None
        return self._from_hash(key, data)

    @staticmethod
    def _from_hash(key: str, data: dict[str, str]) -> Identity:
        settings = data.get("alertSettings")
        return Identity(
            key=key,
            label=data.get("label", key),
            active=data.get("active", "1") == "1",
            power_threshold=float(data.get("powerThreshold", "20")),
            alert_settings=AlertSettings.model_validate(json.loads(settings)) if settings else AlertSettings(),
            created_at=datetime.fromisoformat(data["createdAt"]),
            last_seen_at=datetime.fromisoformat(data["lastSeenAt"]),
        )
