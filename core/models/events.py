"""Event models for the webhook processing pipeline.

An Event is the durable record of one source webhook, from receipt through
its terminal outcome. Status moves forward through
RECEIVED -> VALIDATED -> TRANSFORMED -> SYNCED, may divert to FAILED
(recoverable) and, once SYNCED, may be REVERSED.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


# =============================================================================
# Enums
# =============================================================================

class EventType(str, Enum):
    """Business event types emitted by the source system."""
    INVOICE_CREATED = "invoice.created"
    INVOICE_UPDATED = "invoice.updated"
    INVOICE_CANCELLED = "invoice.cancelled"
    PAYMENT_CREATED = "payment.created"
    PAYMENT_CANCELLED = "payment.cancelled"
    ITEM_CREATED = "item.created"
    ITEM_UPDATED = "item.updated"
    ITEM_ARCHIVED = "item.archived"
    STOCK_CREATED = "stock.created"
    STOCK_UPDATED = "stock.updated"
    STOCK_INCREMENTED = "stock.incremented"
    STOCK_TRANSFERRED = "stock.transferred"
    STOCK_RECALLED = "stock.recalled"
    STOCK_ARCHIVED = "stock.archived"
    STOCK_DISPENSED = "stock.dispensed"
    STOCK_SOLD = "stock.sold"
    STOCK_RETURNED = "stock.returned"

    @property
    def family(self) -> str:
        """Leading segment of the type: invoice, payment, item or stock."""
        return self.value.split(".", 1)[0]

    @property
    def feature_flag(self) -> str:
        """Configuration key that enables this family of events."""
        return _FEATURE_FLAGS[self.family]

    @classmethod
    def parse(cls, value: str) -> Optional["EventType"]:
        """Return the matching member, or None for unknown types."""
        try:
            return cls(value)
        except ValueError:
            return None


_FEATURE_FLAGS = {
    "invoice": "feature.invoiceEvents",
    "payment": "feature.paymentEvents",
    "item": "feature.inventoryEvents",
    "stock": "feature.inventoryEvents",
}


class EventStatus(str, Enum):
    """Processing status of an event."""
    RECEIVED = "received"
    VALIDATED = "validated"
    TRANSFORMED = "transformed"
    SYNCED = "synced"
    FAILED = "failed"
    REVERSED = "reversed"

    @property
    def is_terminal(self) -> bool:
        return self in (EventStatus.SYNCED, EventStatus.REVERSED)

    @property
    def is_active(self) -> bool:
        """Statuses the orchestrator still has work to do for."""
        return self in (EventStatus.RECEIVED, EventStatus.VALIDATED, EventStatus.TRANSFORMED)


class ErrorType(str, Enum):
    """Classification of a processing failure."""
    VALIDATION = "validation"
    TRANSFORMATION = "transformation"
    SAGE_API = "sage_api"
    BUSINESS_RULE = "business_rule"
    SYSTEM = "system"


# =============================================================================
# Nested records
# =============================================================================

class ValidationIssue(BaseModel):
    """A single schema violation with its dotted path."""
    path: str = Field(..., description="Dotted path to the offending field, e.g. data.patient")
    message: str
    type: str = Field(default="value_error", description="Violation kind reported by the schema")


class ValidationResult(BaseModel):
    """Outcome of schema validation for an event."""
    is_valid: bool
    errors: list[ValidationIssue] = Field(default_factory=list)
    validated_at: datetime = Field(default_factory=utcnow)


class EventError(BaseModel):
    """A failure recorded against an event. Errors accumulate across attempts."""
    type: ErrorType
    message: str
    details: dict[str, Any] = Field(default_factory=dict)
    stack: Optional[str] = None
    occurred_at: datetime = Field(default_factory=utcnow)


class SyncResult(BaseModel):
    """What the ERP returned for the submitted document."""
    document_reference: str
    document_category: str
    synced_at: datetime = Field(default_factory=utcnow)
    response: dict[str, Any] = Field(default_factory=dict)


class ReversalInfo(BaseModel):
    """Reversal details copied onto the event once its transaction is reversed."""
    reason: str
    transaction_id: str
    reversal_document_reference: Optional[str] = None
    reversed_by: str
    reversed_at: datetime = Field(default_factory=utcnow)


class WebhookMetadata(BaseModel):
    """Delivery details captured at intake."""
    message_id: str
    webhook_timestamp: Optional[str] = None
    signature: Optional[str] = None
    source_ip: Optional[str] = None
    user_agent: Optional[str] = None


# =============================================================================
# Event
# =============================================================================

class Event(BaseModel):
    """Durable record of one source webhook.

    ``version`` is bumped by the store on every save and is used for
    compare-and-set updates; callers never set it themselves.
    """
    event_id: str
    event_type: EventType
    idempotency_key: str
    status: EventStatus = EventStatus.RECEIVED

    raw_payload: dict[str, Any]
    normalized_payload: Optional[dict[str, Any]] = None
    transformed_payload: Optional[dict[str, Any]] = None

    validation_result: Optional[ValidationResult] = None
    sync_result: Optional[SyncResult] = None
    errors: list[EventError] = Field(default_factory=list)

    retry_count: int = 0
    next_retry_at: Optional[datetime] = None
    requires_intervention: bool = False

    reversal: Optional[ReversalInfo] = None

    webhook: Optional[WebhookMetadata] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    received_at: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    @property
    def last_error(self) -> Optional[EventError]:
        return self.errors[-1] if self.errors else None

    @property
    def source_id(self) -> Optional[str]:
        data = self.raw_payload.get("data") or {}
        value = data.get("id")
        return str(value) if value is not None else None

    def resume_point(self) -> EventStatus:
        """Status to restart from after a failure: the last completed step."""
        if self.transformed_payload is not None:
            return EventStatus.TRANSFORMED
        if self.validation_result is not None and self.validation_result.is_valid:
            return EventStatus.VALIDATED
        return EventStatus.RECEIVED

    def add_error(
        self,
        error_type: ErrorType,
        message: str,
        details: Optional[dict[str, Any]] = None,
        stack: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
    ) -> EventError:
        error = EventError(
            type=error_type,
            message=message,
            details=details or {},
            stack=stack,
            occurred_at=occurred_at or utcnow(),
        )
        self.errors.append(error)
        return error
