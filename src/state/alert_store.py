# Fleetwatch/src/state/alert_store.py
# @ai-rules:
# 1. [Constraint]: Lifecycle mutations (acknowledge/resolve/archive) go through _mutate(). Redis uses WATCH/MULTI/EXEC, memory uses a lock.
# 2. [Pattern]: The legality check runs inside _mutate against the freshly read document, never a caller-held copy.
# 3. [Gotcha]: Archived alerts are invisible to lifecycle commands and to ArchivedPolicy.EXCLUDE queries -- they 404.
# 4. [Pattern]: Catch redis WatchError specifically and retry. IllegalStateTransition propagates out of the loop.
"""
Alert Lifecycle Store.

State machine per alert:
    open -> acknowledged -> resolved
    open -> resolved
archive is orthogonal and one-way here.

Redis Schema:
    fleetwatch:alert:{id}                  STRING  alert JSON
    fleetwatch:alerts                      ZSET    {id: raisedAt_epoch}
    fleetwatch:alerts:{identity}:{type}    ZSET    {id: raisedAt_epoch}   dedup index
"""
from __future__ import annotations

import asyncio
import logging
import math
from abc import ABC, abstractmethod
from collections import Counter
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, Optional

from redis.exceptions import WatchError

from ..errors import NotFound
from ..models import (
    Alert,
    AlertFilter,
    AlertPage,
    AlertStats,
    AlertStatus,
    AlertType,
    ArchivedPolicy,
    Severity,
    TrendBucket,
    TypeBreakdown,
)

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = logging.getLogger(__name__)

Mutation = Callable[[Alert], None]


class AlertStore(ABC):
    """Backend-independent lifecycle and query logic. Subclasses supply storage primitives."""

    # -------------------------------------------------------------------------
    # Storage primitives
    # -------------------------------------------------------------------------

    @abstractmethod
    async def insert(self, alert: Alert) -> None:
        ...

    @abstractmethod
    async def get(self, alert_id: str) -> Optional[Alert]:
        """Raw lookup, archived included."""

    @abstractmethod
    async def _mutate(self, alert_id: str, mutation: Mutation) -> Alert:
        """Apply `mutation` atomically to the current stored document and persist it."""

    @abstractmethod
    async def _scan(self, alert_filter: AlertFilter) -> list[Alert]:
        """All alerts matching the filter, newest first."""

    @abstractmethod
    async def find_unresolved_since(
        self, identity_key: str, rule_type: AlertType, since: datetime
    ) -> Optional[Alert]:
        """Newest non-archived, unresolved alert of this (identity, type) raised at or after `since`."""

    # -------------------------------------------------------------------------
    # Lifecycle commands
    # -------------------------------------------------------------------------

    async def acknowledge(self, alert_id: str, now: datetime, by: Optional[str] = None) -> Alert:
        alert = await self._mutate(alert_id, lambda a: a.acknowledge(now, by))
        logger.info(f"Alert {alert_id} acknowledged by {by or 'unknown'}")
        return alert

    async def resolve(
        self, alert_id: str, now: datetime, by: Optional[str] = None, notes: Optional[str] = None
    ) -> Alert:
        alert = await self._mutate(alert_id, lambda a: a.resolve(now, by, notes))
        logger.info(f"Alert {alert_id} resolved by {by or 'unknown'}")
        return alert

    async def archive(self, alert_id: str, now: datetime, by: Optional[str] = None) -> Alert:
        alert = await self._mutate(alert_id, lambda a: a.archive_as(now, by))
        logger.info(f"Alert {alert_id} archived by {by or 'admin'}")
        return alert

    async def get_visible(self, alert_id: str) -> Alert:
        """Lookup for API consumers: archived alerts do not exist."""
        alert = await self.get(alert_id)
        if alert is None or alert.is_archived:
            raise NotFound(f"Alert {alert_id} not found")
        return alert

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def query(self, alert_filter: AlertFilter, page: int = 1, limit: int = 50) -> AlertPage:
        matching = await self._scan(alert_filter)
        offset = (page - 1) * limit
        return AlertPage(
            items=matching[offset:offset + limit],
            total=len(matching),
            page=page,
            limit=limit,
            pages=math.ceil(len(matching) / limit) if limit else 0,
        )

    async def aggregate(self, alert_filter: AlertFilter) -> AlertStats:
        alerts = await self._scan(alert_filter)
        statuses = Counter(a.status for a in alerts)
        by_severity = {s: 0 for s in Severity}
        by_severity.update(Counter(a.severity for a in alerts))

        resolution_times = [
            (a.resolved_at - a.raised_at).total_seconds() / 60.0
            for a in alerts
            if a.resolved_at is not None
        ]
        avg_resolution = (
            round(sum(resolution_times) / len(resolution_times), 2) if resolution_times else None
        )

        per_type: dict[AlertType, list[Alert]] = {}
        for a in alerts:
            per_type.setdefault(a.rule_type, []).append(a)
        by_type = sorted(
            (
                TypeBreakdown(
                    rule_type=rule_type,
                    count=len(group),
                    resolved=sum(1 for a in group if a.status is AlertStatus.RESOLVED),
                    critical=sum(1 for a in group if a.severity is Severity.CRITICAL),
                )
                for rule_type, group in per_type.items()
            ),
            key=lambda b: b.count,
            reverse=True,
        )

        return AlertStats(
            total=len(alerts),
            open=statuses[AlertStatus.OPEN],
            acknowledged=statuses[AlertStatus.ACKNOWLEDGED],
            resolved=statuses[AlertStatus.RESOLVED],
            unresolved=len(alerts) - statuses[AlertStatus.RESOLVED],
            by_severity=by_severity,
            avg_resolution_minutes=avg_resolution,
            by_type=by_type,
        )

    async def hourly_trend(
        self, alert_filter: AlertFilter, now: datetime, hours: int = 24
    ) -> list[TrendBucket]:
        """`hours` buckets ending at the current hour, oldest first, empty buckets included."""
        current_hour = now.replace(minute=0, second=0, microsecond=0)
        first_hour = current_hour - timedelta(hours=hours - 1)
        window = alert_filter.model_copy(update={"start": first_hour, "end": now})
        buckets = {first_hour + timedelta(hours=i): [0, 0] for i in range(hours)}

        for alert in await self._scan(window):
            hour = alert.raised_at.replace(minute=0, second=0, microsecond=0)
            if hour in buckets:
                buckets[hour][0] += 1
                if alert.severity is Severity.CRITICAL:
                    buckets[hour][1] += 1

        return [TrendBucket(hour=h, count=c, critical=crit) for h, (c, crit) in buckets.items()]


class InMemoryAlertStore(AlertStore):
    def __init__(self):
        self._alerts: dict[str, Alert] = {}
        self._lock = asyncio.Lock()

    async def insert(self, alert: Alert) -> None:
        async with self._lock:
            self._alerts[alert.id] = alert.model_copy(deep=True)

    async def get(self, alert_id: str) -> Optional[Alert]:
        alert = self._alerts.get(alert_id)
        return alert.model_copy(deep=True) if alert else None

    async def _mutate(self, alert_id: str, mutation: Mutation) -> Alert:
        async with self._lock:
            stored = self._alerts.get(alert_id)
            if stored is None or stored.is_archived:
                raise NotFound(f"Alert {alert_id} not found")
            alert = stored.model_copy(deep=True)
            mutation(alert)
            self._alerts[alert_id] = alert
            return alert.model_copy(deep=True)

    async def _scan(self, alert_filter: AlertFilter) -> list[Alert]:
        matching = [a.model_copy(deep=True) for a in self._alerts.values() if alert_filter.matches(a)]
        matching.sort(key=lambda a: a.raised_at, reverse=True)
        return matching

    async def find_unresolved_since(self, identity_key, rule_type, since):
        candidates = await self._scan(
            AlertFilter(
                archived=ArchivedPolicy.EXCLUDE,
                identity_key=identity_key,
                rule_type=rule_type,
                start=since,
            )
        )
        return next((a for a in candidates if a.status is not AlertStatus.RESOLVED), None)


class RedisAlertStore(AlertStore):
    ALERT_PREFIX = "fleetwatch:alert:"
    ALERTS = "fleetwatch:alerts"
    INDEX_PREFIX = "fleetwatch:alerts:"

    def __init__(self, redis: "Redis"):
        self.redis = redis

    def _index_key(self, identity_key: str, rule_type: AlertType) -> str:
        return f"{self.INDEX_PREFIX}{identity_key}:{rule_type.value}"

    async def insert(self, alert: Alert) -> None:
        score = alert.raised_at.timestamp()
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(f"{self.ALERT_PREFIX}{alert.id}", alert.model_dump_json(by_alias=True))
            pipe.zadd(self.ALERTS, {alert.id: score})
            pipe.zadd(self._index_key(alert.identity_key, alert.rule_type), {alert.id: score})
            await pipe.execute()

    async def get(self, alert_id: str) -> Optional[Alert]:
        data = await self.redis.get(f"{self.ALERT_PREFIX}{alert_id}")
        if not data:
            return None
        return Alert.model_validate_json(data)

    async def _mutate(self, alert_id: str, mutation: Mutation) -> Alert:
        key = f"{self.ALERT_PREFIX}{alert_id}"
        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    data = await pipe.get(key)
                    if not data:
                        raise NotFound(f"Alert {alert_id} not found")
                    alert = Alert.model_validate_json(data)
                    if alert.is_archived:
                        raise NotFound(f"Alert {alert_id} not found")
                    mutation(alert)
                    pipe.multi()
                    pipe.set(key, alert.model_dump_json(by_alias=True))
                    await pipe.execute()
                    return alert
                except WatchError:
                    continue

    async def _load(self, ids: list[str]) -> list[Alert]:
        if not ids:
            return []
        # Pipeline: batch-GET all alert documents in one roundtrip
        async with self.redis.pipeline(transaction=False) as pipe:
            for alert_id in ids:
                pipe.get(f"{self.ALERT_PREFIX}{alert_id}")
            docs = await pipe.execute()
        return [Alert.model_validate_json(raw) for raw in docs if raw]

    async def _scan(self, alert_filter: AlertFilter) -> list[Alert]:
        if alert_filter.identity_key and alert_filter.rule_type:
            index = self._index_key(alert_filter.identity_key, alert_filter.rule_type)
        else:
            index = self.ALERTS
        lo = alert_filter.start.timestamp() if alert_filter.start else "-inf"
        hi = alert_filter.end.timestamp() if alert_filter.end else "+inf"
        ids = await self.redis.zrevrangebyscore(index, hi, lo)
        return [a for a in await self._load(ids) if alert_filter.matches(a)]

    async def find_unresolved_since(self, identity_key, rule_type, since):
        ids = await self.redis.zrevrangebyscore(
            self._index_key(identity_key, rule_type), "+inf", since.timestamp()
        )
        for alert in await self._load(ids):
            if not alert.is_archived and alert.status is not AlertStatus.RESOLVED:
                return alert
        return None
