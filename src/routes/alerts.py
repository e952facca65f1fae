# Fleetwatch/src/routes/alerts.py
# @ai-rules:
# 1. [Gotcha]: GET /stats MUST stay before GET /{alert_id} or "stats" matches as an alert id.
# 2. [Pattern]: Every query here builds AlertFilter with ArchivedPolicy.EXCLUDE. Archived alerts are admin-only data.
# 3. [Pattern]: POST uses governed_with_refund -- failed creations give their admission back.
# 4. [Constraint]: acknowledge/resolve/archive share the LIFECYCLE class, keyed by caller IP.
"""
Alert intake, lifecycle commands, queries and statistics.

POST   /api/v1/alert                        manual alert (signed token body)
GET    /api/v1/alert                        filtered, paginated list
GET    /api/v1/alert/stats                  aggregate + 24h trend
GET    /api/v1/alert/{alert_id}             detail
PUT    /api/v1/alert/{alert_id}/acknowledge open -> acknowledged
PUT    /api/v1/alert/{alert_id}/resolve     open|acknowledged -> resolved
DELETE /api/v1/alert/{alert_id}             archive (master key)
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from ..auth import CallerContext
from ..dependencies import (
    Services,
    extract_token,
    get_alert_store,
    get_caller,
    get_pipeline,
    get_services,
    governed,
    governed_with_refund,
)
from ..models import (
    AcknowledgeRequest,
    AlertFilter,
    AlertStatus,
    AlertType,
    ArchivedPolicy,
    ResolveRequest,
    Severity,
)
from ..pipeline.ingest import TelemetryPipeline
from ..pipeline.rate_governor import Admission, RouteClass
from ..state.alert_store import AlertStore
from ..utils.clock import ensure_utc
from .device import check_date_range
from .envelope import ok

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/alert", tags=["alerts"])

MAX_PAGE_LIMIT = 100


def _visible_filter(
    identity_key: Optional[str],
    rule_type: Optional[AlertType],
    severity: Optional[Severity],
    status: Optional[AlertStatus],
    start_date: Optional[datetime],
    end_date: Optional[datetime],
) -> AlertFilter:
    start, end = ensure_utc(start_date), ensure_utc(end_date)
    check_date_range(start, end)
    return AlertFilter(
        archived=ArchivedPolicy.EXCLUDE,
        identity_key=identity_key,
        rule_type=rule_type,
        severity=severity,
        status=status,
        start=start,
        end=end,
    )


@router.post("", status_code=201)
async def create_alert(
    request: Request,
    _admission: Admission = Depends(governed_with_refund(RouteClass.ALERT_CREATE)),
    caller: CallerContext = Depends(get_caller),
    pipeline: TelemetryPipeline = Depends(get_pipeline),
) -> dict:
    """Manual alert from a device. Same token-wrapped body as telemetry."""
    token = extract_token(await request.body())
    alert = await pipeline.create_alert(token, bound_identity=caller.identity_key)
    return ok(alert, message="Alert created")


@router.get("")
async def list_alerts(
    _admission: Admission = Depends(governed(RouteClass.GENERAL)),
    _caller: CallerContext = Depends(get_caller),
    store: AlertStore = Depends(get_alert_store),
    identity_key: Optional[str] = Query(None, alias="identityKey"),
    rule_type: Optional[AlertType] = Query(None, alias="ruleType"),
    severity: Optional[Severity] = Query(None),
    status: Optional[AlertStatus] = Query(None),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=MAX_PAGE_LIMIT),
) -> dict:
    alert_filter = _visible_filter(identity_key, rule_type, severity, status, start_date, end_date)
    return ok(await store.query(alert_filter, page=page, limit=limit))


@router.get("/stats")
async def alert_stats(
    _admission: Admission = Depends(governed(RouteClass.GENERAL)),
    _caller: CallerContext = Depends(get_caller),
    services: Services = Depends(get_services),
    identity_key: Optional[str] = Query(None, alias="identityKey"),
    rule_type: Optional[AlertType] = Query(None, alias="ruleType"),
    severity: Optional[Severity] = Query(None),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
) -> dict:
    """Counts by status and severity, mean time-to-resolution, per-type breakdown, 24h trend."""
    alert_filter = _visible_filter(identity_key, rule_type, severity, None, start_date, end_date)
    return ok(await services.stats.summary(alert_filter, services.clock()))


@router.get("/{alert_id}")
async def get_alert(
    alert_id: str,
    _admission: Admission = Depends(governed(RouteClass.GENERAL)),
    _caller: CallerContext = Depends(get_caller),
    services: Services = Depends(get_services),
) -> dict:
    alert = await services.alerts.get_visible(alert_id)
    detail = alert.model_dump(mode="json", by_alias=True)
    detail["ageInMinutes"] = alert.age_minutes(services.clock())
    detail["resolutionTimeMinutes"] = alert.resolution_minutes()
    return ok(detail)


@router.put("/{alert_id}/acknowledge")
async def acknowledge_alert(
    alert_id: str,
    body: Optional[AcknowledgeRequest] = None,
    _admission: Admission = Depends(governed(RouteClass.LIFECYCLE)),
    caller: CallerContext = Depends(get_caller),
    services: Services = Depends(get_services),
) -> dict:
    by = body.acknowledged_by if body and body.acknowledged_by else caller.label
    alert = await services.alerts.acknowledge(alert_id, services.clock(), by=by)
    return ok(alert, message="Alert acknowledged")


@router.put("/{alert_id}/resolve")
async def resolve_alert(
    alert_id: str,
    body: Optional[ResolveRequest] = None,
    _admission: Admission = Depends(governed(RouteClass.LIFECYCLE)),
    caller: CallerContext = Depends(get_caller),
    services: Services = Depends(get_services),
) -> dict:
    body = body or ResolveRequest()
    alert = await services.alerts.resolve(
        alert_id,
        services.clock(),
        by=body.resolved_by or caller.label,
        notes=body.resolution_notes,
    )
    return ok(alert, message="Alert resolved")


@router.delete("/{alert_id}")
async def archive_alert(
    alert_id: str,
    _admission: Admission = Depends(governed(RouteClass.LIFECYCLE)),
    caller: CallerContext = Depends(get_caller),
    services: Services = Depends(get_services),
) -> dict:
    """Soft delete. The record stays in the store, excluded from every normal query."""
    caller.require_master()
    alert = await services.alerts.archive(alert_id, services.clock(), by=caller.label)
    return ok({"id": alert.id, "archive": alert.archive}, message="Alert archived")
