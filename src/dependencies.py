# Fleetwatch/src/dependencies.py
# @ai-rules:
# 1. [Pattern]: One Services container, set in main.py lifespan via set_services(). Routes only use the get_* dependencies.
# 2. [Constraint]: Rate governance is a dependency declared FIRST on each endpoint so it runs before caller auth and token work.
# 3. [Gotcha]: Alert-creation governance is a yield dependency: any exception from the endpoint refunds the admission, then re-raises.
# 4. [Gotcha]: request.body() is cached by Starlette, so the governor and the endpoint can both read it.
"""FastAPI dependency injection for Fleetwatch."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable, Optional

from fastapi import Depends, Header, Query, Request, Response

from .auth import CallerContext, authenticate_caller, bound_identity
from .config import Settings
from .errors import StoreUnavailable
from .pipeline.identity_tracker import IdentityTracker
from .pipeline.ingest import TelemetryPipeline
from .pipeline.rate_governor import (
    Admission,
    RateGovernor,
    RouteClass,
    admission_key,
    limits_from_settings,
)
from .pipeline.rule_engine import AlertRuleEngine
from .pipeline.rules import default_rules
from .pipeline.stats import StatsAggregator
from .pipeline.token_verifier import TokenVerifier, peek_claims
from .state.alert_store import AlertStore, InMemoryAlertStore, RedisAlertStore
from .state.counters import CounterStore, InMemoryCounterStore, RedisCounterStore
from .state.identity_store import IdentityStore, InMemoryIdentityStore, RedisIdentityStore
from .state.sample_store import InMemorySampleStore, RedisSampleStore, SampleStore
from .utils.clock import Clock, utc_now

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    clock: Clock
    counters: CounterStore
    identities: IdentityStore
    samples: SampleStore
    alerts: AlertStore
    governor: RateGovernor
    pipeline: TelemetryPipeline
    stats: StatsAggregator


def build_services(settings: Settings, redis: Optional["Redis"] = None, clock: Clock = utc_now) -> Services:
    """Wire the pipeline. redis=None selects the in-memory stores."""
    if redis is not None:
        counters: CounterStore = RedisCounterStore(redis)
        identities: IdentityStore = RedisIdentityStore(redis)
        samples: SampleStore = RedisSampleStore(redis)
        alerts: AlertStore = RedisAlertStore(redis)
    else:
        counters = InMemoryCounterStore(clock)
        identities = InMemoryIdentityStore()
        samples = InMemorySampleStore()
        alerts = InMemoryAlertStore()

    verifier = TokenVerifier(
        settings.token_secret,
        max_lifetime_seconds=settings.token_max_lifetime_seconds,
        clock_skew_seconds=settings.token_clock_skew_seconds,
        clock=clock,
    )
    pipeline = TelemetryPipeline(
        verifier=verifier,
        tracker=IdentityTracker(identities, settings.rules.default_power_threshold),
        samples=samples,
        engine=AlertRuleEngine(alerts, default_rules(settings.rules)),
        alerts=alerts,
        clock=clock,
    )
    return Services(
        settings=settings,
        clock=clock,
        counters=counters,
        identities=identities,
        samples=samples,
        alerts=alerts,
        governor=RateGovernor(counters, limits_from_settings(settings.rate_limits)),
        pipeline=pipeline,
        stats=StatsAggregator(alerts),
    )


# Global instance (initialized in main.py lifespan)
_services: Optional[Services] = None


def set_services(services: Optional[Services]) -> None:
    """Set the global Services instance."""
    global _services
    _services = services


def services_ready() -> bool:
    return _services is not None


async def get_services() -> Services:
    """
    Get the wired Services.

    FastAPI dependency. 503 when startup could not reach the store.
    """
    if _services is None:
        raise StoreUnavailable("Service not initialized. Check startup sequence.")
    return _services


async def get_alert_store(services: Services = Depends(get_services)) -> AlertStore:
    return services.alerts


async def get_pipeline(services: Services = Depends(get_services)) -> TelemetryPipeline:
    return services.pipeline


# =============================================================================
# Request helpers
# =============================================================================

def extract_token(raw: bytes) -> Optional[str]:
    """
    Body is either the raw token string or {"token": "<token>"}.

    Anything else yields None and is rejected later as token_missing.
    """
    try:
        text = raw.decode("utf-8").strip()
    except UnicodeDecodeError:
        return None
    if not text:
        return None
    try:
        body: Any = json.loads(text)
    except json.JSONDecodeError:
        return text
    if isinstance(body, str):
        return body
    if isinstance(body, dict) and isinstance(body.get("token"), str):
        return body["token"]
    return None


def client_ip(request: Request, settings: Settings) -> str:
    if settings.trust_proxy:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def _presented_key(request: Request) -> Optional[str]:
    return request.headers.get("x-api-key") or request.query_params.get("apiKey")


async def get_caller(
    request: Request,
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
    api_key: Optional[str] = Query(None, alias="apiKey"),
    services: Services = Depends(get_services),
) -> CallerContext:
    caller = authenticate_caller(x_api_key or api_key, services.settings)
    request.state.caller = caller.label
    return caller


async def _admission_key(request: Request, route_class: RouteClass, services: Services) -> str:
    ip = client_ip(request, services.settings)
    if route_class not in (RouteClass.TELEMETRY, RouteClass.ALERT_CREATE):
        return admission_key(None, ip)

    identity = bound_identity(_presented_key(request), services.settings)
    if identity is None:
        # Unverified peek: only ever used to pick a rate bucket.
        claims = peek_claims(extract_token(await request.body())) or {}
        candidate = claims.get("identityKey") or claims.get("deviceId")
        identity = candidate if isinstance(candidate, str) and candidate else None
    return admission_key(identity, ip)


def _remember_admission(request: Request, route_class: RouteClass, key: str) -> None:
    """Tag the request so error handlers can log who was rejected and under which class."""
    request.state.route_class = route_class.value
    request.state.admission_key = key


def _set_rate_headers(response: Response, admission: Admission) -> None:
    response.headers["X-RateLimit-Limit"] = str(admission.limit)
    response.headers["X-RateLimit-Remaining"] = str(admission.remaining)


def governed(route_class: RouteClass) -> Callable:
    """Dependency factory: admit the request under `route_class` or raise RateGoverned."""

    async def dependency(
        request: Request,
        response: Response,
        services: Services = Depends(get_services),
    ) -> Admission:
        key = await _admission_key(request, route_class, services)
        _remember_admission(request, route_class, key)
        admission = await services.governor.enforce(route_class, key)
        _set_rate_headers(response, admission)
        return admission

    return dependency


def governed_with_refund(route_class: RouteClass) -> Callable:
    """Like governed(), but a failed request gives its admission back."""

    async def dependency(
        request: Request,
        response: Response,
        services: Services = Depends(get_services),
    ) -> AsyncIterator[Admission]:
        key = await _admission_key(request, route_class, services)
        _remember_admission(request, route_class, key)
        admission = await services.governor.enforce(route_class, key)
        _set_rate_headers(response, admission)
        try:
            yield admission
        except Exception:
            await services.governor.refund(route_class, key)
            raise

    return dependency
