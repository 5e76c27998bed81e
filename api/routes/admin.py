"""Administration routes.

- GET  /api/v1/admin/status          - Connector, token and queue status
- GET  /api/v1/admin/config          - Runtime configuration entries
- PUT  /api/v1/admin/config/{key}    - Update a configuration value
- GET  /api/v1/admin/audit           - Query the audit trail
- GET  /api/v1/admin/audit/critical  - Error and critical entries in the last N hours
- GET  /api/v1/admin/metrics         - In-process metrics
- POST /api/v1/admin/reconcile       - Run a reconciliation pass
"""

from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from api.deps import operator_actor, services
from api.schemas import AuditEntryResponse, ConfigUpdateRequest, as_utc
from connectors.erp_base import list_available_connectors
from core.audit import AuditQuery, create_audit_entry
from core.models import (
    Actor,
    AuditAction,
    AuditCategory,
    AuditSeverity,
    utcnow,
)
from core.observability import get_logger, get_metrics
from core.storage import UnknownConfigKey
from pipeline.services import PipelineServices

logger = get_logger(__name__)

router = APIRouter(prefix="/admin")


def _entries(entries):
    return [
        AuditEntryResponse.model_validate(e.model_dump(mode="json")).model_dump(mode="json", by_alias=True)
        for e in entries
    ]


@router.get("/status")
async def system_status(svc: PipelineServices = Depends(services)):
    oauth = getattr(svc.connector, "oauth", None)
    token_status = await oauth.token_status() if oauth is not None else None
    stats = svc.store.stats()
    return {
        "success": True,
        "connector": {
            "type": svc.connector.get_connector_name(),
            "status": svc.connector.connection_status.value,
            "token": token_status,
            "available": list_available_connectors(),
        },
        "dispatchMode": svc.settings.dispatch_mode,
        "events": stats.events_by_status,
        "pendingRetries": stats.pending_retries,
        "timestamp": utcnow().isoformat(),
    }


@router.get("/config")
async def list_config(
    category: Optional[str] = Query(None),
    svc: PipelineServices = Depends(services),
):
    return {
        "success": True,
        "items": [e.model_dump(mode="json") for e in svc.config_store.list_entries(category)],
    }


@router.put("/config/{key}")
async def update_config(
    key: str,
    request: ConfigUpdateRequest,
    actor: Actor = Depends(operator_actor),
    svc: PipelineServices = Depends(services),
):
    """Change a configuration value. Applies to the next processing run."""
    previous = svc.config_store.get(key)
    try:
        entry = svc.config_store.set(key, request.value, changed_by=actor.id, reason=request.reason)
    except UnknownConfigKey:
        raise HTTPException(status_code=404, detail=f"Unknown configuration key: {key}")

    svc.audit.record(create_audit_entry(
        AuditAction.CONFIG_UPDATED,
        f"{key} changed by {actor.label}",
        AuditSeverity.WARNING,
        category=AuditCategory.ADMIN,
        actor=actor,
        before={"key": key, "value": previous},
        after={"key": key, "value": entry.value, "version": entry.version},
        details={"reason": request.reason},
    ))
    logger.warning(f"Configuration {key} changed from {previous!r} to {entry.value!r} by {actor.label}")
    return {"success": True, "entry": entry.model_dump(mode="json")}


@router.get("/audit")
async def query_audit(
    action: Optional[AuditAction] = Query(None),
    category: Optional[AuditCategory] = Query(None),
    severity: Optional[AuditSeverity] = Query(None),
    event_id: Optional[str] = Query(None, alias="eventId"),
    transaction_id: Optional[str] = Query(None, alias="transactionId"),
    actor_id: Optional[str] = Query(None, alias="actorId"),
    start_time: Optional[datetime] = Query(None, alias="startTime"),
    end_time: Optional[datetime] = Query(None, alias="endTime"),
    limit: int = Query(100, ge=1, le=500),
    skip: int = Query(0, ge=0),
    svc: PipelineServices = Depends(services),
):
    entries = svc.audit.query(AuditQuery(
        action=action,
        category=category,
        severity=severity,
        event_id=event_id,
        transaction_id=transaction_id,
        actor_id=actor_id,
        start_time=as_utc(start_time),
        end_time=as_utc(end_time),
        limit=limit,
        skip=skip,
    ))
    return {"success": True, "items": _entries(entries), "limit": limit, "skip": skip}


@router.get("/audit/critical")
async def critical_audit(
    hours: int = Query(24, ge=1, le=24 * 30),
    svc: PipelineServices = Depends(services),
):
    since = utcnow() - timedelta(hours=hours)
    return {"success": True, "since": since.isoformat(), "items": _entries(svc.audit.critical_since(since))}


@router.get("/metrics")
async def metrics():
    return {"success": True, "metrics": get_metrics().get_summary()}


@router.post("/reconcile")
async def reconcile(
    purge: bool = Query(False),
    actor: Actor = Depends(operator_actor),
    svc: PipelineServices = Depends(services),
):
    report = await svc.reconciliation.run(purge=purge, actor=actor)
    return {"success": True, "report": report.to_dict()}
