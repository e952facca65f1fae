# Fleetwatch/src/routes/device.py
# @ai-rules:
# 1. [Pattern]: Body is read raw (request.body()) -- either a bare token string or {"token": ...}. No pydantic body model.
# 2. [Constraint]: Depends(governed(...)) MUST be the first parameter so governance runs before auth and verification.
"""
Device telemetry ingestion and sample history.

POST /api/v1/device/update-data             signed telemetry submission
GET  /api/v1/device/{identity_key}/history  time-range sample scan, newest first
GET  /api/v1/device/{identity_key}/location latest sample
"""
from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from ..auth import CallerContext
from ..dependencies import (
    Services,
    extract_token,
    get_caller,
    get_pipeline,
    get_services,
    governed,
)
from ..errors import IdentityMismatch, NotFound, PayloadShapeError
from ..pipeline.ingest import TelemetryPipeline
from ..pipeline.rate_governor import Admission, RouteClass
from ..utils.clock import ensure_utc
from .envelope import ok

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/device", tags=["device"])

MAX_HISTORY_LIMIT = 1000


def _check_read_access(caller: CallerContext, identity_key: str) -> None:
    if caller.identity_key is not None and caller.identity_key != identity_key:
        raise IdentityMismatch(f"Credential is not authorized to read identity {identity_key}")


def check_date_range(start: Optional[datetime], end: Optional[datetime]) -> None:
    if start and end and start > end:
        raise PayloadShapeError(
            "startDate must not be after endDate",
            errors=[{"field": "startDate", "message": "must not be after endDate"}],
        )


@router.post("/update-data")
async def update_data(
    request: Request,
    _admission: Admission = Depends(governed(RouteClass.TELEMETRY)),
    caller: CallerContext = Depends(get_caller),
    pipeline: TelemetryPipeline = Depends(get_pipeline),
) -> dict:
    """Verify, normalize, store and evaluate one telemetry submission."""
    token = extract_token(await request.body())
    result = await pipeline.ingest(token, bound_identity=caller.identity_key)
    return ok(result, message="Telemetry accepted")


@router.get("/{identity_key}/history")
async def sample_history(
    identity_key: str,
    _admission: Admission = Depends(governed(RouteClass.GENERAL)),
    caller: CallerContext = Depends(get_caller),
    services: Services = Depends(get_services),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    page: int = Query(1, ge=1),
    limit: int = Query(100, ge=1, le=MAX_HISTORY_LIMIT),
) -> dict:
    """Stored samples for one identity, newest first."""
    _check_read_access(caller, identity_key)
    start_date, end_date = ensure_utc(start_date), ensure_utc(end_date)
    check_date_range(start_date, end_date)
    samples, total = await services.samples.history(
        identity_key,
        start=start_date,
        end=end_date,
        offset=(page - 1) * limit,
        limit=limit,
    )
    return ok(
        {
            "items": samples,
            "total": total,
            "page": page,
            "limit": limit,
            "pages": math.ceil(total / limit),
        }
    )


@router.get("/{identity_key}/location")
async def current_location(
    identity_key: str,
    _admission: Admission = Depends(governed(RouteClass.GENERAL)),
    caller: CallerContext = Depends(get_caller),
    services: Services = Depends(get_services),
) -> dict:
    """Latest stored sample for one identity. location is null until a sample arrives."""
    _check_read_access(caller, identity_key)
    identity = await services.identities.get(identity_key)
    if identity is None:
        raise NotFound(f"Identity {identity_key} not found")

    samples, _ = await services.samples.history(identity_key, limit=1)
    latest = samples[0] if samples else None
    return ok(
        {
            "identityKey": identity_key,
            "identity": {
                "label": identity.label,
                "active": identity.active,
                "lastSeenAt": identity.last_seen_at,
            },
            "location": latest,
        },
        message="Current location" if latest else "No location data for identity",
    )
