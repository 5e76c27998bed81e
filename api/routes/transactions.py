"""Transaction routes.

- GET  /api/v1/transactions                - List transactions
- GET  /api/v1/transactions/stats/summary  - Counts by category, reversed, unverified
- GET  /api/v1/transactions/reversed/list  - Reversed transactions
- GET  /api/v1/transactions/{id}           - Transaction detail
- POST /api/v1/transactions/{id}/reverse   - Post a credit note and mark reversed
- POST /api/v1/transactions/{id}/verify    - Mark checked against the ERP
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from api.deps import operator_actor, services
from api.schemas import (
    AuditEntryResponse,
    ReverseRequest,
    TransactionListResponse,
    TransactionSummary,
    as_utc,
)
from core.models import Actor, EventType
from core.storage import TransactionQuery
from pipeline.errors import TransactionNotFound
from pipeline.reversal import verify_transaction
from pipeline.services import PipelineServices

router = APIRouter(prefix="/transactions")


def _page(svc: PipelineServices, query: TransactionQuery) -> TransactionListResponse:
    items, total = svc.store.list_transactions(query)
    return TransactionListResponse(
        items=[TransactionSummary.from_transaction(t) for t in items],
        total=total,
        limit=query.limit,
        skip=query.skip,
        has_more=query.skip + len(items) < total,
    )


@router.get("", response_model=TransactionListResponse)
async def list_transactions(
    event_type: Optional[EventType] = Query(None, alias="eventType"),
    reversed: Optional[bool] = Query(None),
    verified: Optional[bool] = Query(None),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    limit: int = Query(50, ge=1, le=200),
    skip: int = Query(0, ge=0),
    svc: PipelineServices = Depends(services),
):
    return _page(svc, TransactionQuery(
        event_type=event_type,
        reversed=reversed,
        verified=verified,
        start_date=as_utc(start_date),
        end_date=as_utc(end_date),
        limit=limit,
        skip=skip,
    ))


@router.get("/stats/summary")
async def transaction_stats(svc: PipelineServices = Depends(services)):
    return {"success": True, **svc.store.transaction_stats()}


@router.get("/reversed/list", response_model=TransactionListResponse)
async def reversed_transactions(
    limit: int = Query(50, ge=1, le=200),
    skip: int = Query(0, ge=0),
    svc: PipelineServices = Depends(services),
):
    return _page(svc, TransactionQuery(reversed=True, limit=limit, skip=skip))


@router.get("/{transaction_id}")
async def get_transaction(transaction_id: str, svc: PipelineServices = Depends(services)):
    """Transaction with its source event and the event's audit trail."""
    transaction = svc.store.get_transaction(transaction_id)
    if transaction is None:
        raise TransactionNotFound(transaction_id)

    event = svc.store.get_event(transaction.event_id)
    return {
        "success": True,
        "transaction": transaction.model_dump(mode="json"),
        "event": event.model_dump(mode="json") if event else None,
        "auditTrail": [
            AuditEntryResponse.model_validate(entry.model_dump(mode="json")).model_dump(mode="json", by_alias=True)
            for entry in svc.audit.trail(transaction.event_id)
        ],
    }


@router.post("/{transaction_id}/reverse")
async def reverse_transaction(
    transaction_id: str,
    request: ReverseRequest,
    actor: Actor = Depends(operator_actor),
    svc: PipelineServices = Depends(services),
):
    """Reverse a synced transaction.

    ERP rejections return 502 and leave the transaction untouched.
    """
    transaction = await svc.reversal.reverse(transaction_id, request.reason, actor)
    return {"success": True, "transaction": transaction.model_dump(mode="json")}


@router.post("/{transaction_id}/verify")
async def verify(
    transaction_id: str,
    actor: Actor = Depends(operator_actor),
    svc: PipelineServices = Depends(services),
):
    transaction = verify_transaction(svc.store, svc.audit, transaction_id, actor)
    return {"success": True, "transaction": transaction.model_dump(mode="json")}
