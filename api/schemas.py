"""Request/response models for the pipeline API.

JSON field names are camelCase; Python attributes stay snake_case.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from core.models import Event, Transaction


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Query datetimes without an offset are taken as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


# =============================================================================
# Requests
# =============================================================================

class RetryRequest(ApiModel):
    reason: str = Field(default="Manual retry", description="Why the event is being retried")


class ReverseRequest(ApiModel):
    reason: str = Field(..., min_length=1, description="Why the transaction is being reversed")


class ConfigUpdateRequest(ApiModel):
    value: Any
    reason: Optional[str] = None


# =============================================================================
# Responses
# =============================================================================

class EventSummary(ApiModel):
    event_id: str
    event_type: str
    status: str
    source_id: Optional[str] = None
    retry_count: int = 0
    next_retry_at: Optional[datetime] = None
    requires_intervention: bool = False
    last_error: Optional[str] = None
    last_error_type: Optional[str] = None
    received_at: datetime
    updated_at: datetime

    @classmethod
    def from_event(cls, event: Event) -> "EventSummary":
        error = event.last_error
        return cls(
            event_id=event.event_id,
            event_type=event.event_type.value,
            status=event.status.value,
            source_id=event.source_id,
            retry_count=event.retry_count,
            next_retry_at=event.next_retry_at,
            requires_intervention=event.requires_intervention,
            last_error=error.message if error else None,
            last_error_type=error.type.value if error else None,
            received_at=event.received_at,
            updated_at=event.updated_at,
        )


class EventListResponse(ApiModel):
    items: List[EventSummary]
    total: int
    limit: int
    skip: int
    has_more: bool


class TransactionSummary(ApiModel):
    transaction_id: str
    event_id: str
    event_type: str
    document_reference: str
    document_category: str
    document_type: Optional[str] = None
    amount: Optional[float] = None
    currency: Optional[str] = None
    reversed: bool = False
    verified: bool = False
    synced_at: datetime

    @classmethod
    def from_transaction(cls, txn: Transaction) -> "TransactionSummary":
        return cls(
            transaction_id=txn.transaction_id,
            event_id=txn.event_id,
            event_type=txn.event_type.value,
            document_reference=txn.document_reference,
            document_category=txn.document_category.value,
            document_type=txn.document_type,
            amount=float(txn.financial.amount) if txn.financial else None,
            currency=txn.financial.currency if txn.financial else None,
            reversed=txn.reversed,
            verified=txn.verified,
            synced_at=txn.synced_at,
        )


class TransactionListResponse(ApiModel):
    items: List[TransactionSummary]
    total: int
    limit: int
    skip: int
    has_more: bool


class ProcessingResponse(ApiModel):
    success: bool = True
    event_id: str
    status: str
    retry_count: int
    next_retry_at: Optional[datetime] = None
    requires_intervention: bool = False
    error: Optional[str] = None
    transaction_id: Optional[str] = None


class AuditEntryResponse(ApiModel):
    entry_id: str
    action: str
    category: str
    severity: str
    actor: Dict[str, Any]
    event_id: Optional[str] = None
    transaction_id: Optional[str] = None
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    result: Dict[str, Any]
    details: Dict[str, Any] = Field(default_factory=dict)
    duration_ms: Optional[float] = None
    timestamp: datetime
