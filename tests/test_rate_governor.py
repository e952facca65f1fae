# Fleetwatch/tests/test_rate_governor.py
# @ai-rules:
# 1. [Pattern]: In-memory counters driven by FakeClock; Redis counters checked against an AsyncMock pipeline.
# 2. [Constraint]: Boundary test is exact: limit admissions pass, limit+1 fails.
"""RateGovernor + counter stores: fixed windows, independence, retry-after, refunds."""
from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from src.errors import RateGoverned
from src.pipeline.rate_governor import (
    RateGovernor,
    RateLimit,
    RouteClass,
    admission_key,
    limits_from_settings,
)
from src.config import RateLimitSettings
from src.state.counters import InMemoryCounterStore, RedisCounterStore


@pytest.fixture
def governor(clock) -> RateGovernor:
    return RateGovernor(InMemoryCounterStore(clock), limits_from_settings(RateLimitSettings()))


class TestAdmissionKey:
    def test_identity_preferred(self):
        assert admission_key("DEV1", "10.0.0.1") == "identity:DEV1"

    def test_falls_back_to_ip(self):
        assert admission_key(None, "10.0.0.1") == "caller-ip:10.0.0.1"
        assert admission_key("", None) == "caller-ip:unknown"


class TestFixedWindow:
    @pytest.mark.asyncio
    async def test_sixty_pass_sixty_first_rejected(self, governor, clock):
        for i in range(60):
            admission = await governor.admit(RouteClass.TELEMETRY, "identity:DEV1")
            assert admission.allowed, f"request {i + 1} should pass"
            clock.advance(milliseconds=500)

        rejected = await governor.admit(RouteClass.TELEMETRY, "identity:DEV1")
        assert not rejected.allowed
        assert 1 <= rejected.retry_after <= 60
        assert rejected.remaining == 0

    @pytest.mark.asyncio
    async def test_window_resets_entirely(self, governor, clock):
        for _ in range(61):
            await governor.admit(RouteClass.TELEMETRY, "identity:DEV1")
        clock.advance(seconds=60)
        admission = await governor.admit(RouteClass.TELEMETRY, "identity:DEV1")
        assert admission.allowed
        assert admission.remaining == 59

    @pytest.mark.asyncio
    async def test_enforce_raises_with_retry_after(self, governor, clock):
        for _ in range(5):
            await governor.enforce(RouteClass.LIFECYCLE, "caller-ip:1.2.3.4")
        clock.advance(seconds=20)
        with pytest.raises(RateGoverned) as exc:
            await governor.enforce(RouteClass.LIFECYCLE, "caller-ip:1.2.3.4")
        assert exc.value.retry_after == 40
        assert exc.value.status_code == 429


class TestIndependence:
    @pytest.mark.asyncio
    async def test_identities_do_not_share_budget(self, governor):
        for _ in range(60):
            await governor.admit(RouteClass.TELEMETRY, "identity:NOISY")
        assert not (await governor.admit(RouteClass.TELEMETRY, "identity:NOISY")).allowed
        assert (await governor.admit(RouteClass.TELEMETRY, "identity:QUIET")).allowed

    @pytest.mark.asyncio
    async def test_route_classes_do_not_share_budget(self, governor):
        for _ in range(10):
            await governor.admit(RouteClass.ALERT_CREATE, "identity:DEV1")
        assert not (await governor.admit(RouteClass.ALERT_CREATE, "identity:DEV1")).allowed
        assert (await governor.admit(RouteClass.TELEMETRY, "identity:DEV1")).allowed


class TestRefund:
    @pytest.mark.asyncio
    async def test_alert_creation_refund_restores_budget(self, governor):
        for _ in range(10):
            await governor.admit(RouteClass.ALERT_CREATE, "identity:DEV1")
            await governor.refund(RouteClass.ALERT_CREATE, "identity:DEV1")
        admission = await governor.admit(RouteClass.ALERT_CREATE, "identity:DEV1")
        assert admission.allowed
        assert admission.remaining == 9

    @pytest.mark.asyncio
    async def test_refund_ignored_for_non_refunding_class(self, governor):
        await governor.admit(RouteClass.TELEMETRY, "identity:DEV1")
        await governor.refund(RouteClass.TELEMETRY, "identity:DEV1")
        admission = await governor.admit(RouteClass.TELEMETRY, "identity:DEV1")
        assert admission.remaining == 58

    @pytest.mark.asyncio
    async def test_refund_after_window_is_noop(self, clock):
        counters = InMemoryCounterStore(clock)
        governor = RateGovernor(counters, {RouteClass.ALERT_CREATE: RateLimit(2, 60, refund_failures=True)})
        await governor.admit(RouteClass.ALERT_CREATE, "identity:DEV1")
        clock.advance(seconds=61)
        await governor.refund(RouteClass.ALERT_CREATE, "identity:DEV1")
        admission = await governor.admit(RouteClass.ALERT_CREATE, "identity:DEV1")
        assert admission.remaining == 1


def _mock_pipeline(results: list) -> MagicMock:
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=results)
    pipe.__aenter__ = AsyncMock(return_value=pipe)
    pipe.__aexit__ = AsyncMock(return_value=False)
    return pipe


class TestRedisCounterStore:
    @pytest.mark.asyncio
    async def test_hit_uses_set_nx_incr_pttl(self):
        pipe = _mock_pipeline([True, 3, 45_000])
        redis = MagicMock()
        redis.pipeline = MagicMock(return_value=pipe)
        store = RedisCounterStore(redis)

        count, ttl = await store.hit("fleetwatch:rl:telemetry:identity:DEV1", 60)

        assert (count, ttl) == (3, 45.0)
        redis.pipeline.assert_called_once_with(transaction=True)
        pipe.set.assert_called_once_with("fleetwatch:rl:telemetry:identity:DEV1", 0, ex=60, nx=True)
        pipe.incr.assert_called_once_with("fleetwatch:rl:telemetry:identity:DEV1")

    @pytest.mark.asyncio
    async def test_hit_repairs_key_without_ttl(self):
        pipe = _mock_pipeline([None, 7, -1])
        redis = MagicMock()
        redis.pipeline = MagicMock(return_value=pipe)
        redis.expire = AsyncMock()
        store = RedisCounterStore(redis)

        count, ttl = await store.hit("k", 60)

        assert (count, ttl) == (7, 60.0)
        redis.expire.assert_awaited_once_with("k", 60)
