# Fleetwatch/src/models.py
# @ai-rules:
# 1. [Constraint]: All models are Pydantic BaseModel. API-facing models extend CamelModel (camelCase on the wire, snake_case in Python).
# 2. [Pattern]: Alert.status is derived, never stored. resolved > acknowledged > open.
# 3. [Pattern]: Alert.archive is a tagged union (Active | Archived). Every query passes an explicit ArchivedPolicy.
# 4. [Gotcha]: All datetimes are timezone-aware UTC. Naive datetimes must never reach the stores.
"""Pydantic schemas for Fleetwatch telemetry, identities and alerts."""
from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictBool, computed_field
from pydantic.alias_generators import to_camel

from .errors import IllegalStateTransition


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# Enumerations
# =============================================================================

class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertType(str, Enum):
    """Rule types. The first block is raised by rules, the rest arrive via manual alert intake."""
    LOW_BATTERY = "low_battery"
    TEMPERATURE = "temperature"
    GPS_MALFUNCTION = "gps_malfunction"
    VIBRATION = "vibration"
    TAMPERING = "tampering"
    GEOFENCE = "geofence"
    OFFLINE = "offline"
    CUSTOM = "custom"
    WATCHDOG_TRIGGERED = "watchdog_triggered"
    OBD2_MALFUNCTION = "obd2_malfunction"
    GYROSCOPE_MALFUNCTION = "gyroscope_malfunction"


class AlertStatus(str, Enum):
    OPEN = "open"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


class PowerStatus(str, Enum):
    CRITICAL = "critical"
    LOW = "low"
    MEDIUM = "medium"
    GOOD = "good"


class ArchivedPolicy(str, Enum):
    """How a query treats archived alerts. There is no default on purpose."""
    EXCLUDE = "exclude"
    INCLUDE = "include"
    ONLY = "only"


# =============================================================================
# Telemetry
# =============================================================================

class Position(CamelModel):
    """Reported position. Values are stored as reported, never range-checked here."""
    latitude: float
    longitude: float
    altitude: Optional[float] = None
    course: Optional[float] = None
    speed: Optional[float] = None
    accuracy: Optional[float] = None
    satellites: Optional[int] = None

    @property
    def in_range(self) -> bool:
        return -90.0 <= self.latitude <= 90.0 and -180.0 <= self.longitude <= 180.0


class AlertPosition(CamelModel):
    """Position attached to a manual alert. Unlike telemetry, this one is validated."""
    latitude: float = Field(..., ge=-90.0, le=90.0)
    longitude: float = Field(..., ge=-180.0, le=180.0)


class PowerReading(CamelModel):
    voltage: Optional[float] = Field(None, description="Battery voltage in volts")
    percentage: Optional[float] = Field(None, description="Charge percentage 0-100")


ChannelValue = Union[StrictBool, float]


class TelemetrySample(CamelModel):
    """One accepted report. Immutable once stored."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str = Field(default_factory=lambda: f"smp-{uuid.uuid4().hex[:12]}")
    identity_key: str
    timestamp: datetime = Field(..., description="Capture time reported by the device")
    received_at: datetime
    position: Optional[Position] = None
    power: PowerReading
    channels: dict[str, ChannelValue] = Field(
        default_factory=dict,
        description="Open-ended named readings; new firmware channels land here unchanged",
    )


# =============================================================================
# Identity
# =============================================================================

class AlertSettings(CamelModel):
    """Per-rule enable flags."""
    low_battery: bool = True
    temperature: bool = True
    gps_malfunction: bool = True

    def enabled(self, rule_type: AlertType) -> bool:
        return bool(getattr(self, rule_type.value, False))


class Identity(CamelModel):
    key: str
    label: str
    active: bool = True
    power_threshold: float = Field(20.0, description="Low-power threshold, percent")
    alert_settings: AlertSettings = Field(default_factory=AlertSettings)
    created_at: datetime
    last_seen_at: datetime


# =============================================================================
# Alerts
# =============================================================================

class Active(CamelModel):
    state: Literal["active"] = "active"


class Archived(CamelModel):
    state: Literal["archived"] = "archived"
    at: datetime
    by: Optional[str] = None


ArchiveState = Annotated[Union[Active, Archived], Field(discriminator="state")]


def new_alert_id() -> str:
    return f"alr-{uuid.uuid4().hex[:16]}"


class Alert(CamelModel):
    id: str = Field(default_factory=new_alert_id)
    identity_key: str
    rule_type: AlertType
    severity: Severity
    title: str
    message: str
    position: Optional[Position] = None
    data: dict[str, Any] = Field(default_factory=dict, description="Free-form diagnostic payload")
    raised_at: datetime
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolution_notes: Optional[str] = None
    archive: ArchiveState = Field(default_factory=Active)

    @computed_field
    @property
    def status(self) -> AlertStatus:
        if self.resolved_at is not None:
            return AlertStatus.RESOLVED
        if self.acknowledged_at is not None:
            return AlertStatus.ACKNOWLEDGED
        return AlertStatus.OPEN

    @property
    def is_archived(self) -> bool:
        return isinstance(self.archive, Archived)

    def acknowledge(self, now: datetime, by: Optional[str] = None) -> None:
        """open -> acknowledged. Raises IllegalStateTransition from any other state."""
        if self.status is not AlertStatus.OPEN:
            raise IllegalStateTransition(self.id, self.status.value, "acknowledge")
        # Timestamps never run backwards relative to raisedAt.
        self.acknowledged_at = max(now, self.raised_at)
        self.acknowledged_by = by

    def resolve(self, now: datetime, by: Optional[str] = None, notes: Optional[str] = None) -> None:
        """open|acknowledged -> resolved."""
        if self.status is AlertStatus.RESOLVED:
            raise IllegalStateTransition(self.id, self.status.value, "resolve")
        self.resolved_at = max(now, self.acknowledged_at or self.raised_at)
        self.resolved_by = by
        self.resolution_notes = notes

    def archive_as(self, now: datetime, by: Optional[str] = None) -> None:
        self.archive = Archived(at=now, by=by)

    def age_minutes(self, now: datetime) -> int:
        return int((now - self.raised_at).total_seconds() // 60)

    def resolution_minutes(self) -> Optional[int]:
        if self.resolved_at is None:
            return None
        return int((self.resolved_at - self.raised_at).total_seconds() // 60)


class AlertFilter(BaseModel):
    """Query filter. `archived` is required so every caller states its policy."""
    archived: ArchivedPolicy
    identity_key: Optional[str] = None
    rule_type: Optional[AlertType] = None
    severity: Optional[Severity] = None
    status: Optional[AlertStatus] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    def matches(self, alert: Alert) -> bool:
        if self.archived is ArchivedPolicy.EXCLUDE and alert.is_archived:
            return False
        if self.archived is ArchivedPolicy.ONLY and not alert.is_archived:
            return False
        if self.identity_key is not None and alert.identity_key != self.identity_key:
            return False
        if self.rule_type is not None and alert.rule_type is not self.rule_type:
            return False
        if self.severity is not None and alert.severity is not self.severity:
            return False
        if self.status is not None and alert.status is not self.status:
            return False
        if self.start is not None and alert.raised_at < self.start:
            return False
        if self.end is not None and alert.raised_at > self.end:
            return False
        return True


class AlertPage(CamelModel):
    items: list[Alert]
    total: int
    page: int
    limit: int
    pages: int


class TypeBreakdown(CamelModel):
    rule_type: AlertType
    count: int
    resolved: int
    critical: int


class TrendBucket(CamelModel):
    hour: datetime
    count: int
    critical: int


class AlertStats(CamelModel):
    total: int = 0
    open: int = 0
    acknowledged: int = 0
    resolved: int = 0
    unresolved: int = 0
    by_severity: dict[Severity, int] = Field(default_factory=lambda: {s: 0 for s in Severity})
    avg_resolution_minutes: Optional[float] = None
    by_type: list[TypeBreakdown] = Field(default_factory=list)
    trend: list[TrendBucket] = Field(default_factory=list)


# =============================================================================
# Tokens and requests
# =============================================================================

class TokenClaims(BaseModel):
    """Verified claim set. Reserved registered claims are split out of `payload`."""
    issuer: Optional[str] = None
    issued_at: datetime
    expires_at: datetime
    payload: dict[str, Any] = Field(default_factory=dict)


class ManualAlert(CamelModel):
    """Claims accepted by the manual alert intake."""
    identity_key: str = Field(..., min_length=1, max_length=100)
    rule_type: AlertType
    message: str = Field(..., min_length=1, max_length=500)
    severity: Optional[Severity] = None
    title: Optional[str] = Field(None, max_length=100)
    position: Optional[AlertPosition] = None
    data: dict[str, Any] = Field(default_factory=dict)


class AcknowledgeRequest(CamelModel):
    acknowledged_by: Optional[str] = Field(None, max_length=100)


class ResolveRequest(CamelModel):
    resolved_by: Optional[str] = Field(None, max_length=100)
    resolution_notes: Optional[str] = Field(None, max_length=1000)


class Location(BaseModel):
    lat: float
    lng: float


class IngestResult(CamelModel):
    identity_key: str
    timestamp: datetime
    power_status: PowerStatus
    alerts_created: int
    location: Optional[Location] = None
    sample_id: str
