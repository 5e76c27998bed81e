"""Event routes.

- GET  /api/v1/events                - List events (filter by status, type, dates)
- GET  /api/v1/events/failed/queue   - Failed events awaiting retry or intervention
- GET  /api/v1/events/stats/summary  - Counts by status and type
- GET  /api/v1/events/{id}           - Event detail with its audit trail
- POST /api/v1/events/{id}/retry     - Manual retry of a failed event
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from api.deps import operator_actor, services
from api.schemas import (
    AuditEntryResponse,
    EventListResponse,
    EventSummary,
    ProcessingResponse,
    RetryRequest,
    as_utc,
)
from core.models import Actor, EventStatus, EventType
from core.observability import get_logger
from core.storage import EventQuery
from pipeline.errors import EventNotFound
from pipeline.services import PipelineServices

logger = get_logger(__name__)

router = APIRouter(prefix="/events")


@router.get("", response_model=EventListResponse)
async def list_events(
    status: Optional[EventStatus] = Query(None),
    event_type: Optional[EventType] = Query(None, alias="eventType"),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    requires_intervention: Optional[bool] = Query(None, alias="requiresIntervention"),
    limit: int = Query(50, ge=1, le=200),
    skip: int = Query(0, ge=0),
    svc: PipelineServices = Depends(services),
):
    """List events, newest first."""
    items, total = svc.store.list_events(EventQuery(
        status=status,
        event_type=event_type,
        start_date=as_utc(start_date),
        end_date=as_utc(end_date),
        requires_intervention=requires_intervention,
        limit=limit,
        skip=skip,
    ))
    return EventListResponse(
        items=[EventSummary.from_event(e) for e in items],
        total=total,
        limit=limit,
        skip=skip,
        has_more=skip + len(items) < total,
    )


@router.get("/failed/queue", response_model=EventListResponse)
async def failed_queue(
    limit: int = Query(50, ge=1, le=200),
    skip: int = Query(0, ge=0),
    svc: PipelineServices = Depends(services),
):
    """Failed events. Those needing intervention come first."""
    items, total = svc.store.list_events(EventQuery(
        status=EventStatus.FAILED,
        intervention_first=True,
        limit=limit,
        skip=skip,
    ))
    return EventListResponse(
        items=[EventSummary.from_event(e) for e in items],
        total=total,
        limit=limit,
        skip=skip,
        has_more=skip + len(items) < total,
    )


@router.get("/stats/summary")
async def event_stats(svc: PipelineServices = Depends(services)):
    stats = svc.store.stats()
    _, needs_intervention = svc.store.list_events(EventQuery(
        status=EventStatus.FAILED,
        requires_intervention=True,
        limit=1,
    ))
    return {
        "success": True,
        "total": sum(stats.events_by_status.values()),
        "byStatus": stats.events_by_status,
        "byType": stats.events_by_type,
        "pendingRetries": stats.pending_retries,
        "requiresIntervention": needs_intervention,
    }


@router.get("/{event_id}")
async def get_event(event_id: str, svc: PipelineServices = Depends(services)):
    """Full event record and its audit trail in write order."""
    event = svc.store.get_event(event_id)
    if event is None:
        raise EventNotFound(event_id)

    trail = svc.audit.trail(event_id)
    transaction = svc.store.get_transaction_by_event(event_id)
    return {
        "success": True,
        "event": event.model_dump(mode="json"),
        "transactionId": transaction.transaction_id if transaction else None,
        "auditTrail": [
            AuditEntryResponse.model_validate(entry.model_dump(mode="json")).model_dump(mode="json", by_alias=True)
            for entry in trail
        ],
    }


@router.post("/{event_id}/retry", response_model=ProcessingResponse)
async def retry_event(
    event_id: str,
    request: Optional[RetryRequest] = None,
    actor: Actor = Depends(operator_actor),
    svc: PipelineServices = Depends(services),
):
    """Retry a failed event now.

    Runs synchronously and returns where the event ended up.
    """
    reason = request.reason if request else "Manual retry"
    logger.info(f"Manual retry of {event_id} by {actor.label}: {reason}")
    outcome = await svc.orchestrator.retry(event_id, reason, actor)
    return ProcessingResponse(
        success=outcome.status != EventStatus.FAILED,
        event_id=outcome.event_id,
        status=outcome.status.value,
        retry_count=outcome.retry_count,
        next_retry_at=outcome.next_retry_at,
        requires_intervention=outcome.requires_intervention,
        error=outcome.last_error.message if outcome.status == EventStatus.FAILED and outcome.last_error else None,
        transaction_id=outcome.transaction_id,
    )
