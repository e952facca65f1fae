# Fleetwatch/src/main.py
# @ai-rules:
# 1. [Pattern]: create_app(services=...) is the test seam. Production uses the module-level `app` built from Settings.from_env().
# 2. [Gotcha]: Redis failure at startup does NOT abort. Services stay unset, /health and every route answer 503.
# 3. [Constraint]: All failures render through the handlers below in one envelope. Routes never build error JSON themselves.
# 4. [Constraint]: In production, 5xx bodies carry a generic message only.
"""
Fleetwatch - FastAPI Application

Ingestion and alerting core for field-device telemetry:
- Signed telemetry intake (token -> sample -> identity -> rules)
- Alert lifecycle (acknowledge / resolve / archive)
- Alert queries and statistics
"""
from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import Settings
from .dependencies import Services, build_services, services_ready, set_services
from .errors import FleetwatchError, RateGoverned, StoreUnavailable
from .routes import alerts_router, device_router
from .state.redis_client import RedisClient
from .utils.clock import utc_now

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if os.getenv("DEBUG") else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Squelch noisy loggers
for noisy in ("uvicorn.access", "httpx", "httpcore", "asyncio"):
    logging.getLogger(noisy).setLevel(logging.WARNING)


def _error_body(
    message: str,
    reason: str,
    errors: Optional[list[dict[str, Any]]] = None,
    retry_after: Optional[int] = None,
) -> dict:
    body: dict[str, Any] = {
        "success": False,
        "message": message,
        "reason": reason,
        "timestamp": utc_now().isoformat(),
    }
    if errors:
        body["errors"] = errors
    if retry_after is not None:
        body["retryAfter"] = retry_after
    return body


def _request_tags(request: Request) -> str:
    """Route class, admission key and caller recorded on request.state by the dependencies."""
    state = request.state
    return (
        f"class={getattr(state, 'route_class', '-')} "
        f"key={getattr(state, 'admission_key', '-')} "
        f"caller={getattr(state, 'caller', '-')}"
    )


def create_app(services: Optional[Services] = None, settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the application.

    services: pre-wired Services (tests). When None, the lifespan builds them
              from settings (STORAGE_BACKEND=memory or Redis).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Fleetwatch starting up...")
        redis_client: Optional[RedisClient] = None

        if services is not None:
            set_services(services)
        else:
            app_settings = settings or Settings.from_env()
            logger.info(f"Configuration: {app_settings!r}")
            if app_settings.storage_backend == "memory":
                logger.warning("STORAGE_BACKEND=memory -- state is lost on restart")
                set_services(build_services(app_settings))
            else:
                redis_client = RedisClient.from_settings(app_settings)
                try:
                    redis = await redis_client.connect()
                    set_services(build_services(app_settings, redis=redis))
                    logger.info("Redis-backed stores initialized")
                except ConnectionError as e:
                    logger.error(f"CRITICAL: Failed to connect to Redis: {e}")
                    logger.error("Startup will continue but health checks and routes will return 503.")
                    redis_client = None

        yield

        logger.info("Fleetwatch shutting down...")
        set_services(None)
        if redis_client is not None:
            await redis_client.close()

    app = FastAPI(
        title="Fleetwatch",
        description="Telemetry ingestion and alert lifecycle for field devices",
        version="1.0.0",
        lifespan=lifespan,
    )

    # =========================================================================
    # Error handlers
    # =========================================================================

    def _is_production() -> bool:
        active = services.settings if services is not None else settings
        return bool(active and active.is_production) or os.getenv("FLEETWATCH_ENV") == "production"

    @app.exception_handler(FleetwatchError)
    async def fleetwatch_error_handler(request: Request, exc: FleetwatchError) -> JSONResponse:
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(
            "Rejected %s %s: status=%d reason=%s %s",
            request.method, request.url.path, exc.status_code, exc.reason, _request_tags(request),
        )
        message = exc.message
        if exc.status_code >= 500 and _is_production():
            message = "Service temporarily unavailable"
        headers = None
        retry_after = None
        if isinstance(exc, RateGoverned):
            retry_after = exc.retry_after
            headers = {"Retry-After": str(exc.retry_after)}
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(message, exc.reason, exc.errors, retry_after),
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = [
            {"field": ".".join(str(p) for p in err["loc"] if p not in ("body", "query", "path")), "message": err["msg"]}
            for err in exc.errors()
        ]
        logger.warning(
            f"Rejected {request.method} {request.url.path}: reason=payload_invalid "
            f"{_request_tags(request)} errors={errors}"
        )
        return JSONResponse(
            status_code=400,
            content=_error_body("Request validation failed", "payload_invalid", errors),
        )

    @app.exception_handler(RedisConnectionError)
    @app.exception_handler(RedisTimeoutError)
    async def store_error_handler(request: Request, exc: Exception) -> JSONResponse:
        return await fleetwatch_error_handler(request, StoreUnavailable(f"Store unavailable: {exc}"))

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(str(exc.detail), "http_error"),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(
            f"Unhandled error on {request.method} {request.url.path}: {type(exc).__name__} "
            f"{_request_tags(request)}"
        )
        message = "Service temporarily unavailable" if _is_production() else f"Internal error: {exc}"
        return JSONResponse(
            status_code=500,
            content=_error_body(message, "internal_error"),
        )

    # =========================================================================
    # Health Endpoint
    # =========================================================================

    @app.get("/health", tags=["health"])
    async def health_check() -> dict:
        """
        Liveness/readiness probe.

        Returns 503 when the stores are not initialized (Redis connect failed).
        """
        if not services_ready():
            raise StoreUnavailable("Stores not initialized - Redis connection may have failed")
        return {"status": "ok"}

    # =========================================================================
    # Routers
    # =========================================================================

    app.include_router(device_router)
    app.include_router(alerts_router)

    return app


app = create_app()
