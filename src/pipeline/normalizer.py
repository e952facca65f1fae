# Fleetwatch/src/pipeline/normalizer.py
# @ai-rules:
# 1. [Constraint]: Pure. No I/O, no clock reads -- `now` is passed in.
# 2. [Pattern]: Unknown numeric/boolean claims become channels verbatim. New firmware fields need no server change.
# 3. [Gotcha]: No range checks on coordinates or physical readings. Out-of-range values are rule-engine signal.
# 4. [Pattern]: An explicit percentage is never overwritten by the voltage-derived one.
# 5. [Constraint]: Every number read from claims must be finite. NaN, Infinity and ints past float range are field errors.
"""Verified claims -> canonical TelemetrySample."""
from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from typing import Any, Optional

from ..errors import PayloadShapeError
from ..models import Position, PowerReading, PowerStatus, TelemetrySample

logger = logging.getLogger(__name__)

# Linear charge map for single-cell Li-ion packs
VOLTAGE_EMPTY = 3.0
VOLTAGE_FULL = 4.2

IDENTITY_FIELDS = ("identityKey", "deviceId")
VOLTAGE_FIELDS = ("powerReading", "batteryVoltage", "voltage")
PERCENTAGE_FIELDS = ("powerPercentage", "batteryPercentage")
POSITION_FIELDS = ("latitude", "longitude", "altitude", "course", "speed", "accuracy", "satellites")
KNOWN_FIELDS = frozenset(
    IDENTITY_FIELDS + VOLTAGE_FIELDS + PERCENTAGE_FIELDS + POSITION_FIELDS + ("timestamp",)
)


def voltage_to_percentage(voltage: float) -> float:
    """3.0 V -> 0 %, 4.2 V -> 100 %, clamped, 2 decimals."""
    pct = (voltage - VOLTAGE_EMPTY) / (VOLTAGE_FULL - VOLTAGE_EMPTY) * 100.0
    return round(min(100.0, max(0.0, pct)), 2)


def power_status(power: PowerReading) -> PowerStatus:
    """Voltage bands when voltage is known, else the equivalent percentage bands."""
    if power.voltage is not None:
        v = power.voltage
        if v < 3.3:
            return PowerStatus.CRITICAL
        if v < 3.6:
            return PowerStatus.LOW
        if v < 3.8:
            return PowerStatus.MEDIUM
        return PowerStatus.GOOD
    pct = power.percentage if power.percentage is not None else 0.0
    if pct < voltage_to_percentage(3.3):
        return PowerStatus.CRITICAL
    if pct < voltage_to_percentage(3.6):
        return PowerStatus.LOW
    if pct < voltage_to_percentage(3.8):
        return PowerStatus.MEDIUM
    return PowerStatus.GOOD


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _finite(value: Any) -> Optional[float]:
    """float(value) for a finite JSON number, else None (NaN, Infinity, ints past float range)."""
    if not _is_number(value):
        return None
    try:
        number = float(value)
    except OverflowError:
        return None
    return number if math.isfinite(number) else None


def _first(claims: dict[str, Any], names: tuple[str, ...]) -> tuple[Optional[str], Any]:
    for name in names:
        if claims.get(name) is not None:
            return name, claims[name]
    return None, None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """ISO-8601 string or epoch seconds (milliseconds accepted above 1e12)."""
    if _is_number(value):
        number = _finite(value)
        if number is None:
            return None
        seconds = number / 1000.0 if number > 1e12 else number
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    return None


class SampleNormalizer:
    def normalize(self, claims: dict[str, Any], now: datetime) -> TelemetrySample:
        errors: list[dict[str, str]] = []

        _, identity = _first(claims, IDENTITY_FIELDS)
        if not isinstance(identity, str) or not identity.strip():
            errors.append({"field": "identityKey", "message": "identity key is required"})
            identity = None
        else:
            identity = identity.strip()

        power = self._power(claims, errors)
        position = self._position(claims, errors)
        channels = self._channels(claims, errors)

        timestamp = now
        if claims.get("timestamp") is not None:
            parsed = parse_timestamp(claims["timestamp"])
            if parsed is None:
                errors.append({"field": "timestamp", "message": "must be ISO-8601 or epoch seconds"})
            else:
                timestamp = parsed

        if errors:
            raise PayloadShapeError("Telemetry payload failed validation", errors=errors)

        return TelemetrySample(
            identity_key=identity,
            timestamp=timestamp,
            received_at=now,
            position=position,
            power=power,
            channels=channels,
        )

    def _power(self, claims: dict[str, Any], errors: list[dict[str, str]]) -> Optional[PowerReading]:
        v_name, raw_voltage = _first(claims, VOLTAGE_FIELDS)
        p_name, raw_percentage = _first(claims, PERCENTAGE_FIELDS)
        if raw_voltage is None and raw_percentage is None:
            errors.append({"field": "powerReading", "message": "a power reading is required"})
            return None

        voltage = percentage = None
        if raw_voltage is not None:
            voltage = _finite(raw_voltage)
            if voltage is None:
                errors.append({"field": v_name, "message": _number_error(raw_voltage)})
                return None
        if raw_percentage is not None:
            percentage = _finite(raw_percentage)
            if percentage is None:
                errors.append({"field": p_name, "message": _number_error(raw_percentage)})
                return None
        if percentage is None:
            percentage = voltage_to_percentage(voltage)
        return PowerReading(voltage=voltage, percentage=percentage)

    def _position(self, claims: dict[str, Any], errors: list[dict[str, str]]) -> Optional[Position]:
        lat, lng = claims.get("latitude"), claims.get("longitude")
        if lat is None and lng is None:
            return None
        if lat is None or lng is None:
            missing = "latitude" if lat is None else "longitude"
            errors.append({"field": missing, "message": "latitude and longitude must be sent together"})
            return None

        fields: dict[str, Any] = {}
        for name in POSITION_FIELDS:
            value = claims.get(name)
            if value is None:
                continue
            number = _finite(value)
            if number is None:
                errors.append({"field": name, "message": _number_error(value)})
                continue
            fields[name] = int(number) if name == "satellites" else number
        if "latitude" not in fields or "longitude" not in fields:
            return None
        return Position(**fields)

    def _channels(self, claims: dict[str, Any], errors: list[dict[str, str]]) -> dict[str, Any]:
        channels: dict[str, Any] = {}

        def add(name: str, value: Any) -> None:
            if isinstance(value, bool):
                channels[name] = value
                return
            number = _finite(value)
            if number is None:
                errors.append({"field": name, "message": _number_error(value)})
            else:
                channels[name] = number

        for name, value in claims.items():
            if name in KNOWN_FIELDS:
                continue
            if isinstance(value, bool) or _is_number(value):
                add(name, value)
            elif isinstance(value, dict):
                # One level of scalar nesting, e.g. digitalInputs.input1
                for sub, sub_value in value.items():
                    if isinstance(sub_value, bool) or _is_number(sub_value):
                        add(f"{name}.{sub}", sub_value)
                    else:
                        logger.debug(f"Dropping non-scalar channel {name}.{sub}")
            else:
                logger.debug(f"Dropping non-numeric claim {name}")
        return channels


def _number_error(value: Any) -> str:
    return "must be a finite number" if _is_number(value) else "must be a number"
