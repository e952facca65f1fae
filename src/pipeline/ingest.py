# Fleetwatch/src/pipeline/ingest.py
# @ai-rules:
# 1. [Pattern]: Per-submission order: verify -> normalize -> identity binding check -> sample append -> identity touch -> rules.
# 2. [Constraint]: Nothing is written before the binding check passes. A 403 leaves no trace in any store.
# 3. [Gotcha]: No server-side retry anywhere in here. Store errors propagate; the device owns retry decisions.
"""
Ingestion orchestration.

Rate governance runs in the route dependency before any of this, so the
pipeline only sees admitted requests.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

from pydantic import ValidationError

from ..errors import IdentityMismatch, PayloadShapeError
from ..models import (
    Alert,
    AlertType,
    IngestResult,
    Location,
    ManualAlert,
    Position,
    Severity,
)
from ..state.alert_store import AlertStore
from ..state.sample_store import SampleStore
from ..utils.clock import Clock, utc_now
from .identity_tracker import IdentityTracker
from .normalizer import SampleNormalizer, power_status
from .rule_engine import AlertRuleEngine
from .token_verifier import TokenVerifier

logger = logging.getLogger(__name__)

# Hardware fault types default to a higher severity when the device omits one
HARDWARE_SEVERITY = {
    AlertType.WATCHDOG_TRIGGERED: Severity.CRITICAL,
    AlertType.OBD2_MALFUNCTION: Severity.CRITICAL,
    AlertType.GPS_MALFUNCTION: Severity.HIGH,
    AlertType.GYROSCOPE_MALFUNCTION: Severity.HIGH,
}


def _field_errors(exc: ValidationError) -> list[dict[str, str]]:
    return [
        {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
        for err in exc.errors()
    ]


def _check_binding(bound_identity: Optional[str], claimed: str) -> None:
    if bound_identity is not None and bound_identity != claimed:
        logger.warning(f"Identity mismatch: credential bound to {bound_identity}, payload claims {claimed}")
        raise IdentityMismatch(f"Credential is not authorized to submit for identity {claimed}")


class TelemetryPipeline:
    def __init__(
        self,
        verifier: TokenVerifier,
        tracker: IdentityTracker,
        samples: SampleStore,
        engine: AlertRuleEngine,
        alerts: AlertStore,
        normalizer: Optional[SampleNormalizer] = None,
        clock: Clock = utc_now,
    ):
        self.verifier = verifier
        self.tracker = tracker
        self.samples = samples
        self.engine = engine
        self.alerts = alerts
        self.normalizer = normalizer or SampleNormalizer()
        self._clock = clock

    async def ingest(self, token: Any, bound_identity: Optional[str] = None) -> IngestResult:
        claims = self.verifier.verify(token)
        now = self._clock()
        sample = self.normalizer.normalize(claims.payload, now)
        _check_binding(bound_identity, sample.identity_key)

        await self.samples.append(sample)
        identity = await self.tracker.touch(sample.identity_key, now)
        raised = await self.engine.evaluate(sample, identity, now)

        logger.info(
            f"Sample {sample.id} from {sample.identity_key}: "
            f"{sample.power.percentage}% power, {len(raised)} alert(s) raised"
        )
        position = sample.position
        return IngestResult(
            identity_key=sample.identity_key,
            timestamp=sample.timestamp,
            power_status=power_status(sample.power),
            alerts_created=len(raised),
            location=Location(lat=position.latitude, lng=position.longitude) if position else None,
            sample_id=sample.id,
        )

    async def create_alert(self, token: Any, bound_identity: Optional[str] = None) -> Alert:
        """Manual alert intake. Bypasses dedup: the device decided this one matters."""
        claims = self.verifier.verify(token).payload
        try:
            manual = ManualAlert.model_validate(self._manual_fields(claims))
        except ValidationError as e:
            raise PayloadShapeError("Alert payload failed validation", errors=_field_errors(e))
        _check_binding(bound_identity, manual.identity_key)

        now = self._clock()
        await self.tracker.touch(manual.identity_key, now)
        alert = Alert(
            identity_key=manual.identity_key,
            rule_type=manual.rule_type,
            severity=manual.severity or HARDWARE_SEVERITY.get(manual.rule_type, Severity.MEDIUM),
            title=manual.title or manual.rule_type.value.replace("_", " ").title(),
            message=manual.message,
            position=(
                Position(latitude=manual.position.latitude, longitude=manual.position.longitude)
                if manual.position
                else None
            ),
            data=manual.data,
            raised_at=now,
        )
        await self.alerts.insert(alert)
        logger.warning(
            f"Manual alert {alert.id} {alert.rule_type.value}/{alert.severity.value} "
            f"from {alert.identity_key}"
        )
        return alert

    @staticmethod
    def _manual_fields(claims: dict[str, Any]) -> dict[str, Any]:
        """Accept the firmware's legacy claim names alongside the canonical ones."""
        fields = dict(claims)
        if "identityKey" not in fields and "deviceId" in fields:
            fields["identityKey"] = fields.pop("deviceId")
        if "ruleType" not in fields and "type" in fields:
            fields["ruleType"] = fields.pop("type")
        if "position" not in fields and isinstance(fields.get("location"), dict):
            fields["position"] = fields.pop("location")
        if "position" not in fields and "latitude" in fields and "longitude" in fields:
            fields["position"] = {"latitude": fields.pop("latitude"), "longitude": fields.pop("longitude")}
        return fields
