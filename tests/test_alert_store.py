# Fleetwatch/tests/test_alert_store.py
# @ai-rules:
# 1. [Pattern]: Lifecycle + query semantics are tested on InMemoryAlertStore (shared base-class logic).
# 2. [Pattern]: RedisAlertStore is tested against a MagicMock pipeline to pin the WATCH/MULTI/EXEC retry and key layout.
"""Alert Lifecycle Store: state machine, archive policy, queries, aggregation, trend."""
from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import WatchError

from conftest import T0
from src.errors import IllegalStateTransition, NotFound
from src.models import Alert, AlertFilter, AlertStatus, AlertType, ArchivedPolicy, Severity
from src.state.alert_store import InMemoryAlertStore, RedisAlertStore


def _make_alert(
    identity_key: str = "DEV1",
    rule_type: AlertType = AlertType.LOW_BATTERY,
    severity: Severity = Severity.HIGH,
    minutes_after_t0: float = 0,
) -> Alert:
    return Alert(
        identity_key=identity_key,
        rule_type=rule_type,
        severity=severity,
        title="Low battery",
        message="Battery at 8.3%",
        raised_at=T0 + timedelta(minutes=minutes_after_t0),
    )


@pytest.fixture
def store() -> InMemoryAlertStore:
    return InMemoryAlertStore()


def _visible(**kwargs) -> AlertFilter:
    return AlertFilter(archived=ArchivedPolicy.EXCLUDE, **kwargs)


class TestStateMachine:
    @pytest.mark.asyncio
    async def test_acknowledge_then_resolve(self, store):
        alert = _make_alert()
        await store.insert(alert)
        acked = await store.acknowledge(alert.id, T0 + timedelta(minutes=2), by="ops")
        assert acked.status is AlertStatus.ACKNOWLEDGED
        assert acked.acknowledged_by == "ops"
        resolved = await store.resolve(alert.id, T0 + timedelta(minutes=9), by="ops", notes="swapped battery")
        assert resolved.status is AlertStatus.RESOLVED
        assert resolved.acknowledged_at == acked.acknowledged_at
        assert resolved.resolution_minutes() == 9

    @pytest.mark.asyncio
    async def test_resolve_directly_from_open(self, store):
        alert = _make_alert()
        await store.insert(alert)
        resolved = await store.resolve(alert.id, T0 + timedelta(minutes=1))
        assert resolved.status is AlertStatus.RESOLVED
        assert resolved.acknowledged_at is None

    @pytest.mark.asyncio
    async def test_acknowledge_after_resolve_is_illegal(self, store):
        alert = _make_alert()
        await store.insert(alert)
        await store.resolve(alert.id, T0)
        with pytest.raises(IllegalStateTransition) as exc:
            await store.acknowledge(alert.id, T0)
        assert "resolved -> acknowledge" in exc.value.message
        assert exc.value.status_code == 400

    @pytest.mark.asyncio
    async def test_double_acknowledge_and_double_resolve(self, store):
        alert = _make_alert()
        await store.insert(alert)
        await store.acknowledge(alert.id, T0)
        with pytest.raises(IllegalStateTransition):
            await store.acknowledge(alert.id, T0)
        await store.resolve(alert.id, T0)
        with pytest.raises(IllegalStateTransition):
            await store.resolve(alert.id, T0)

    @pytest.mark.asyncio
    async def test_failed_transition_leaves_document_unchanged(self, store):
        alert = _make_alert()
        await store.insert(alert)
        resolved = await store.resolve(alert.id, T0, by="a")
        with pytest.raises(IllegalStateTransition):
            await store.resolve(alert.id, T0 + timedelta(hours=1), by="b")
        assert await store.get(alert.id) == resolved

    @pytest.mark.asyncio
    async def test_timestamps_never_precede_raise(self, store):
        alert = _make_alert(minutes_after_t0=10)
        await store.insert(alert)
        acked = await store.acknowledge(alert.id, T0)
        assert acked.acknowledged_at == alert.raised_at

    @pytest.mark.asyncio
    async def test_concurrent_acknowledge_exactly_one_wins(self, store):
        alert = _make_alert()
        await store.insert(alert)
        results = await asyncio.gather(
            *(store.acknowledge(alert.id, T0, by=f"op{i}") for i in range(5)),
            return_exceptions=True,
        )
        assert sum(1 for r in results if isinstance(r, Alert)) == 1
        assert sum(1 for r in results if isinstance(r, IllegalStateTransition)) == 4

    @pytest.mark.asyncio
    async def test_unknown_alert(self, store):
        with pytest.raises(NotFound):
            await store.acknowledge("alr-missing", T0)


class TestArchive:
    @pytest.mark.asyncio
    async def test_archived_hidden_from_default_queries(self, store):
        alert = _make_alert()
        await store.insert(alert)
        archived = await store.archive(alert.id, T0, by="master")
        assert archived.is_archived
        assert archived.archive.by == "master"

        assert (await store.query(_visible())).total == 0
        assert (await store.query(AlertFilter(archived=ArchivedPolicy.ONLY))).total == 1
        assert (await store.query(AlertFilter(archived=ArchivedPolicy.INCLUDE))).total == 1
        with pytest.raises(NotFound):
            await store.get_visible(alert.id)

    @pytest.mark.asyncio
    async def test_archived_rejects_lifecycle_commands(self, store):
        alert = _make_alert()
        await store.insert(alert)
        await store.archive(alert.id, T0)
        with pytest.raises(NotFound):
            await store.resolve(alert.id, T0)
        # Still physically present
        assert (await store.get(alert.id)) is not None

    def test_filter_requires_archived_policy(self):
        with pytest.raises(ValueError):
            AlertFilter()


class TestQueries:
    @pytest.mark.asyncio
    async def test_filters_and_pagination(self, store):
        for i in range(7):
            await store.insert(_make_alert(minutes_after_t0=i))
        await store.insert(_make_alert(identity_key="DEV2", severity=Severity.CRITICAL))
        await store.insert(_make_alert(rule_type=AlertType.TEMPERATURE))

        page = await store.query(_visible(identity_key="DEV1", rule_type=AlertType.LOW_BATTERY), page=2, limit=3)
        assert page.total == 7
        assert page.pages == 3
        assert [a.raised_at for a in page.items] == [T0 + timedelta(minutes=m) for m in (3, 2, 1)]

        assert (await store.query(_visible(severity=Severity.CRITICAL))).total == 1
        ranged = await store.query(_visible(start=T0 + timedelta(minutes=5), end=T0 + timedelta(minutes=6)))
        assert ranged.total == 2

    @pytest.mark.asyncio
    async def test_status_filter(self, store):
        a, b, c = _make_alert(), _make_alert(), _make_alert()
        for alert in (a, b, c):
            await store.insert(alert)
        await store.acknowledge(b.id, T0)
        await store.resolve(c.id, T0)
        assert [x.id for x in (await store.query(_visible(status=AlertStatus.OPEN))).items] == [a.id]
        assert [x.id for x in (await store.query(_visible(status=AlertStatus.ACKNOWLEDGED))).items] == [b.id]

    @pytest.mark.asyncio
    async def test_aggregate(self, store):
        a = _make_alert(severity=Severity.CRITICAL)
        b = _make_alert(rule_type=AlertType.TEMPERATURE)
        c = _make_alert()
        archived = _make_alert()
        for alert in (a, b, c, archived):
            await store.insert(alert)
        await store.acknowledge(b.id, T0)
        await store.resolve(c.id, T0 + timedelta(minutes=30))
        await store.resolve(a.id, T0 + timedelta(minutes=10))
        await store.archive(archived.id, T0)

        stats = await store.aggregate(_visible())
        assert (stats.total, stats.open, stats.acknowledged, stats.resolved) == (3, 0, 1, 2)
        assert stats.unresolved == 1
        assert stats.by_severity[Severity.CRITICAL] == 1
        assert stats.by_severity[Severity.HIGH] == 2
        assert stats.by_severity[Severity.LOW] == 0
        assert stats.avg_resolution_minutes == 20.0
        low_battery = next(t for t in stats.by_type if t.rule_type is AlertType.LOW_BATTERY)
        assert (low_battery.count, low_battery.resolved, low_battery.critical) == (2, 2, 1)

    @pytest.mark.asyncio
    async def test_empty_aggregate(self, store):
        stats = await store.aggregate(_visible())
        assert stats.total == 0
        assert stats.avg_resolution_minutes is None

    @pytest.mark.asyncio
    async def test_hourly_trend_includes_empty_buckets(self, store):
        now = T0 + timedelta(minutes=30)
        await store.insert(_make_alert(minutes_after_t0=5, severity=Severity.CRITICAL))
        await store.insert(_make_alert(minutes_after_t0=-90))
        await store.insert(_make_alert(minutes_after_t0=-60 * 30))

        trend = await store.hourly_trend(_visible(), now)
        assert len(trend) == 24
        assert trend[-1].hour == T0
        assert (trend[-1].count, trend[-1].critical) == (1, 1)
        assert trend[-3].hour == T0 - timedelta(hours=2)
        assert trend[-3].count == 1
        assert sum(b.count for b in trend) == 2


def _mock_redis_with_pipeline(pipe: MagicMock) -> MagicMock:
    pipe.__aenter__ = AsyncMock(return_value=pipe)
    pipe.__aexit__ = AsyncMock(return_value=False)
    redis = MagicMock()
    redis.pipeline = MagicMock(return_value=pipe)
    return redis


class TestRedisAlertStore:
    @pytest.mark.asyncio
    async def test_insert_writes_document_and_both_indexes(self):
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[True, 1, 1])
        store = RedisAlertStore(_mock_redis_with_pipeline(pipe))
        alert = _make_alert()

        await store.insert(alert)

        pipe.set.assert_called_once()
        assert pipe.set.call_args.args[0] == f"fleetwatch:alert:{alert.id}"
        zadd_keys = [c.args[0] for c in pipe.zadd.call_args_list]
        assert zadd_keys == ["fleetwatch:alerts", "fleetwatch:alerts:DEV1:low_battery"]

    @pytest.mark.asyncio
    async def test_mutate_retries_on_watch_error(self):
        alert = _make_alert()
        pipe = MagicMock()
        pipe.watch = AsyncMock()
        pipe.get = AsyncMock(return_value=alert.model_dump_json(by_alias=True))
        pipe.execute = AsyncMock(side_effect=[WatchError(), [True]])
        store = RedisAlertStore(_mock_redis_with_pipeline(pipe))

        acked = await store.acknowledge(alert.id, T0, by="ops")

        assert acked.status is AlertStatus.ACKNOWLEDGED
        assert pipe.execute.await_count == 2
        assert pipe.watch.await_count == 2

    @pytest.mark.asyncio
    async def test_mutate_checks_stored_state(self):
        alert = _make_alert()
        alert.resolve(T0)
        pipe = MagicMock()
        pipe.watch = AsyncMock()
        pipe.get = AsyncMock(return_value=alert.model_dump_json(by_alias=True))
        pipe.execute = AsyncMock()
        store = RedisAlertStore(_mock_redis_with_pipeline(pipe))

        with pytest.raises(IllegalStateTransition):
            await store.acknowledge(alert.id, T0)
        pipe.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_mutate_missing_document(self):
        pipe = MagicMock()
        pipe.watch = AsyncMock()
        pipe.get = AsyncMock(return_value=None)
        store = RedisAlertStore(_mock_redis_with_pipeline(pipe))
        with pytest.raises(NotFound):
            await store.resolve("alr-missing", T0)

    @pytest.mark.asyncio
    async def test_round_trip_preserves_archive_state(self):
        alert = _make_alert()
        alert.archive_as(T0, by="master")
        restored = Alert.model_validate_json(alert.model_dump_json(by_alias=True))
        assert restored.is_archived
        assert restored.archive.at == T0
