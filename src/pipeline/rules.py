# Fleetwatch/src/pipeline/rules.py
# @ai-rules:
# 1. [Pattern]: A rule = condition + severity + dedup window + enable flag. evaluate() is pure and sees only sample + identity.
# 2. [Constraint]: Rules never see each other's output. Do not add cross-rule state here.
# 3. [Pattern]: New rule -> subclass Rule, add a flag to AlertSettings, register in default_rules().
"""Built-in alert rules."""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Optional

from ..config import RuleSettings
from ..models import AlertType, Identity, Severity, TelemetrySample

# Distance past a range bound that escalates to critical
ESCALATION_DISTANCE = 20.0


@dataclass(frozen=True)
class RuleMatch:
    severity: Severity
    title: str
    message: str
    data: dict[str, Any] = field(default_factory=dict)


class Rule(ABC):
    rule_type: AlertType

    def __init__(self, dedup_window: timedelta):
        self.dedup_window = dedup_window

    def enabled(self, identity: Identity) -> bool:
        return identity.alert_settings.enabled(self.rule_type)

    @abstractmethod
    def evaluate(self, sample: TelemetrySample, identity: Identity) -> Optional[RuleMatch]:
        ...

    def __repr__(self) -> str:
        return f"{type(self).__name__}(window={self.dedup_window})"


class LowPowerRule(Rule):
    """Charge percentage below the identity's threshold. Critical below the hard floor."""

    rule_type = AlertType.LOW_BATTERY

    def __init__(self, critical_floor: float = 5.0, dedup_window: timedelta = timedelta(minutes=30)):
        super().__init__(dedup_window)
        self.critical_floor = critical_floor

    def evaluate(self, sample, identity):
        pct = sample.power.percentage
        if pct is None or pct >= identity.power_threshold:
            return None
        severity = Severity.CRITICAL if pct < self.critical_floor else Severity.HIGH
        return RuleMatch(
            severity=severity,
            title="Low battery",
            message=f"Battery at {pct:.1f}% (threshold {identity.power_threshold:g}%)",
            data={
                "percentage": pct,
                "voltage": sample.power.voltage,
                "threshold": identity.power_threshold,
            },
        )


class EnvironmentalRangeRule(Rule):
    """Named channel outside [low, high]. Severity scales with distance past the bound."""

    rule_type = AlertType.TEMPERATURE

    def __init__(
        self,
        bounds: Optional[dict[str, tuple[float, float]]] = None,
        dedup_window: timedelta = timedelta(minutes=15),
    ):
        super().__init__(dedup_window)
        self.bounds = bounds or {"temperature": (-10.0, 60.0)}

    def evaluate(self, sample, identity):
        worst: Optional[tuple[float, str, float, float, float]] = None
        for channel, (low, high) in self.bounds.items():
            value = sample.channels.get(channel)
            if value is None or isinstance(value, bool):
                continue
            if value < low:
                distance = low - value
            elif value > high:
                distance = value - high
            else:
                continue
            if worst is None or distance > worst[0]:
                worst = (distance, channel, value, low, high)

        if worst is None:
            return None
        distance, channel, value, low, high = worst
        severity = Severity.CRITICAL if distance > ESCALATION_DISTANCE else Severity.HIGH
        return RuleMatch(
            severity=severity,
            title=f"{channel} out of range",
            message=f"{channel} reading {value:g} is outside [{low:g}, {high:g}]",
            data={"channel": channel, "value": value, "low": low, "high": high},
        )


class PositionSanityRule(Rule):
    """Coordinates outside the valid globe. Stored verbatim, reported as a GPS fault."""

    rule_type = AlertType.GPS_MALFUNCTION

    def __init__(self, dedup_window: timedelta = timedelta(minutes=30)):
        super().__init__(dedup_window)

    def evaluate(self, sample, identity):
        position = sample.position
        if position is None or position.in_range:
            return None
        return RuleMatch(
            severity=Severity.HIGH,
            title="GPS malfunction",
            message=f"Reported position ({position.latitude:g}, {position.longitude:g}) is out of range",
            data={"latitude": position.latitude, "longitude": position.longitude},
        )


def default_rules(settings: Optional[RuleSettings] = None) -> list[Rule]:
    settings = settings or RuleSettings()
    return [
        LowPowerRule(
            critical_floor=settings.low_power_critical_floor,
            dedup_window=timedelta(minutes=settings.low_power_dedup_minutes),
        ),
        EnvironmentalRangeRule(
            bounds={"temperature": (settings.temperature_low, settings.temperature_high)},
            dedup_window=timedelta(minutes=settings.temperature_dedup_minutes),
        ),
        PositionSanityRule(dedup_window=timedelta(minutes=settings.position_dedup_minutes)),
    ]
