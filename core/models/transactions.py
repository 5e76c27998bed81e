"""Transaction model: the ledger record of a successfully synced event."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from core.models.documents import DocumentCategory, FinancialSnapshot, InventorySnapshot
from core.models.events import EventType, utcnow


def transaction_id_for(event_id: str) -> str:
    """Transactions are keyed off the event that produced them."""
    return f"TXN-{event_id}"


class TransactionStatus(str, Enum):
    SYNCED = "synced"
    REVERSED = "reversed"


class ReversalDetails(BaseModel):
    reason: str
    reversal_document_reference: Optional[str] = None
    reversed_by: str
    reversed_at: datetime = Field(default_factory=utcnow)


class Transaction(BaseModel):
    """Record of a document accepted by the ERP.

    Exists only for events that reached SYNCED. ``document_reference`` is
    unique across all transactions. Reversal is one-shot: once ``reversed``
    is set it is never cleared.
    """
    transaction_id: str
    event_id: str
    event_type: EventType
    document_reference: str
    document_category: DocumentCategory
    document_type: Optional[str] = None

    folder: Optional[str] = None
    company: Optional[str] = None
    posting_date: datetime = Field(default_factory=utcnow)

    api_response: dict[str, Any] = Field(default_factory=dict)
    financial: Optional[FinancialSnapshot] = None
    inventory: Optional[InventorySnapshot] = None

    status: TransactionStatus = TransactionStatus.SYNCED
    reversed: bool = False
    reversal: Optional[ReversalDetails] = None

    synced_at: datetime = Field(default_factory=utcnow)
    synced_by: str = "system"

    verified: bool = False
    verified_at: Optional[datetime] = None
    verified_by: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
