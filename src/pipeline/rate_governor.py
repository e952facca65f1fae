# Fleetwatch/src/pipeline/rate_governor.py
# @ai-rules:
# 1. [Pattern]: One independent fixed window per (route class, admission key). Classes never share budget.
# 2. [Constraint]: admit() runs BEFORE token verification. A rejected request must not touch any other store.
# 3. [Gotcha]: Bursts can cluster at window boundaries (up to 2x limit across the edge). Accepted approximation.
# 4. [Pattern]: Only classes with refund_failures=True may call refund() (alert creation).
"""Per-identity / per-caller admission control."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..config import RateLimitSettings
from ..errors import RateGoverned
from ..state.counters import CounterStore

logger = logging.getLogger(__name__)

KEY_PREFIX = "fleetwatch:rl"


class RouteClass(str, Enum):
    TELEMETRY = "telemetry"
    ALERT_CREATE = "alert"
    LIFECYCLE = "lifecycle"
    GENERAL = "general"


@dataclass(frozen=True)
class RateLimit:
    limit: int
    window_seconds: int
    refund_failures: bool = False


@dataclass(frozen=True)
class Admission:
    allowed: bool
    limit: int
    remaining: int
    retry_after: int
    key: str


def admission_key(identity_key: Optional[str], caller_ip: Optional[str]) -> str:
    """`identity:<id>` when the request names an identity, else `caller-ip:<ip>`."""
    if identity_key:
        return f"identity:{identity_key}"
    return f"caller-ip:{caller_ip or 'unknown'}"


def limits_from_settings(settings: RateLimitSettings) -> dict[RouteClass, RateLimit]:
    return {
        RouteClass.TELEMETRY: RateLimit(settings.telemetry_limit, settings.telemetry_window),
        RouteClass.ALERT_CREATE: RateLimit(
            settings.alert_limit, settings.alert_window, refund_failures=True
        ),
        RouteClass.LIFECYCLE: RateLimit(settings.lifecycle_limit, settings.lifecycle_window),
        RouteClass.GENERAL: RateLimit(settings.general_limit, settings.general_window),
    }


class RateGovernor:
    def __init__(self, counters: CounterStore, limits: Optional[dict[RouteClass, RateLimit]] = None):
        self.counters = counters
        self.limits = limits or limits_from_settings(RateLimitSettings())

    def _counter_key(self, route_class: RouteClass, key: str) -> str:
        return f"{KEY_PREFIX}:{route_class.value}:{key}"

    async def admit(self, route_class: RouteClass, key: str) -> Admission:
        rule = self.limits[route_class]
        count, seconds_left = await self.counters.hit(
            self._counter_key(route_class, key), rule.window_seconds
        )
        retry_after = min(rule.window_seconds, max(1, math.ceil(seconds_left)))
        allowed = count <= rule.limit
        if not allowed:
            logger.warning(
                "Rate governed: class=%s key=%s count=%d limit=%d retry_after=%ds",
                route_class.value, key, count, rule.limit, retry_after,
            )
        return Admission(
            allowed=allowed,
            limit=rule.limit,
            remaining=max(0, rule.limit - count),
            retry_after=retry_after,
            key=key,
        )

    async def enforce(self, route_class: RouteClass, key: str) -> Admission:
        """admit() that raises RateGoverned on rejection."""
        admission = await self.admit(route_class, key)
        if not admission.allowed:
            raise RateGoverned(
                f"Too many requests; retry in {admission.retry_after}s",
                retry_after=admission.retry_after,
            )
        return admission

    async def refund(self, route_class: RouteClass, key: str) -> None:
        rule = self.limits[route_class]
        if not rule.refund_failures:
            return
        await self.counters.release(self._counter_key(route_class, key))
        logger.debug("Refunded admission: class=%s key=%s", route_class.value, key)
