# Fleetwatch/tests/test_ingest.py
"""TelemetryPipeline + StatsAggregator wired over in-memory stores, without HTTP."""
from __future__ import annotations

import pytest

from conftest import TEST_SECRET, T0
from src.config import Settings
from src.dependencies import build_services
from src.errors import IdentityMismatch
from src.models import AlertFilter, AlertType, ArchivedPolicy, Severity


@pytest.fixture
def services(clock):
    return build_services(Settings(token_secret=TEST_SECRET), clock=clock)


class TestIngest:
    @pytest.mark.asyncio
    async def test_sample_identity_and_alert_written(self, services, mint):
        result = await services.pipeline.ingest(mint({"identityKey": "DEV1", "powerReading": 3.1}))
        assert result.alerts_created == 1

        samples, total = await services.samples.history("DEV1")
        assert total == 1
        assert samples[0].id == result.sample_id
        identity = await services.identities.get("DEV1")
        assert identity.last_seen_at == T0

    @pytest.mark.asyncio
    async def test_mismatch_writes_nothing(self, services, mint):
        with pytest.raises(IdentityMismatch):
            await services.pipeline.ingest(mint({"identityKey": "DEV2", "powerReading": 3.1}), bound_identity="DEV1")
        assert await services.samples.history("DEV2") == ([], 0)
        assert await services.identities.get("DEV2") is None

    @pytest.mark.asyncio
    async def test_out_of_range_position_raises_gps_alert(self, services, mint):
        result = await services.pipeline.ingest(
            mint({"identityKey": "DEV1", "powerReading": 4.0, "latitude": 0.0, "longitude": 250.0})
        )
        assert result.alerts_created == 1
        page = await services.alerts.query(AlertFilter(archived=ArchivedPolicy.EXCLUDE))
        assert page.items[0].rule_type is AlertType.GPS_MALFUNCTION


class TestManualAlert:
    @pytest.mark.asyncio
    async def test_legacy_claim_names(self, services, mint):
        alert = await services.pipeline.create_alert(
            mint({"deviceId": "DEV1", "type": "gyroscope_malfunction", "message": "drift", "latitude": 1.0, "longitude": 2.0})
        )
        assert alert.identity_key == "DEV1"
        assert alert.severity is Severity.HIGH
        assert alert.position.latitude == 1.0
        assert (await services.identities.get("DEV1")) is not None

    @pytest.mark.asyncio
    async def test_explicit_severity_wins(self, services, mint):
        alert = await services.pipeline.create_alert(
            mint({"identityKey": "DEV1", "ruleType": "obd2_malfunction", "message": "no bus", "severity": "low"})
        )
        assert alert.severity is Severity.LOW

    @pytest.mark.asyncio
    async def test_manual_alerts_bypass_dedup(self, services, mint):
        token = mint({"identityKey": "DEV1", "ruleType": "custom", "message": "button pressed"})
        await services.pipeline.create_alert(token)
        await services.pipeline.create_alert(token)
        page = await services.alerts.query(AlertFilter(archived=ArchivedPolicy.EXCLUDE))
        assert page.total == 2
        assert page.items[0].severity is Severity.MEDIUM


class TestStatsAggregator:
    @pytest.mark.asyncio
    async def test_summary_applies_archived_policy(self, services, mint, clock):
        await services.pipeline.ingest(mint({"identityKey": "DEV1", "powerReading": 3.1}))
        await services.pipeline.ingest(mint({"identityKey": "DEV2", "powerReading": 3.1}))
        hidden = (await services.alerts.query(AlertFilter(archived=ArchivedPolicy.EXCLUDE, identity_key="DEV2"))).items[0]
        await services.alerts.archive(hidden.id, clock())

        stats = await services.stats.summary(AlertFilter(archived=ArchivedPolicy.EXCLUDE), clock())
        assert stats.total == 1
        assert sum(b.count for b in stats.trend) == 1

        everything = await services.stats.summary(AlertFilter(archived=ArchivedPolicy.INCLUDE), clock())
        assert everything.total == 2
