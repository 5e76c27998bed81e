"""ERP-bound document models.

The transformer turns a validated event into an ``ExternalDocument``; the ERP
connector submits it and answers with a ``SubmissionResult``. Both are
ERP-neutral: connector packages map categories to their own endpoints.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from core.models.events import EventType


class DocumentCategory(str, Enum):
    """Kinds of documents the ERP accepts."""
    INVOICE = "invoice"
    PAYMENT = "payment"
    CREDIT_NOTE = "credit_note"
    STOCK_MOVEMENT = "stock_movement"
    ITEM_MASTER = "item_master"


class FinancialSnapshot(BaseModel):
    """Money figures carried by a document, in major currency units."""
    amount: Decimal = Decimal("0")
    currency: str = "NGN"
    customer_reference: Optional[str] = None
    customer_name: Optional[str] = None
    invoice_number: Optional[str] = None
    payment_method: Optional[str] = None


class InventoryLine(BaseModel):
    stock_code: str
    batch_id: Optional[str] = None
    quantity: Decimal = Decimal("0")


class InventorySnapshot(BaseModel):
    """Stock figures carried by a document."""
    movement_type: str
    lines: list[InventoryLine] = Field(default_factory=list)
    from_location: Optional[str] = None
    to_location: Optional[str] = None


class ExternalDocument(BaseModel):
    """A document ready for submission to the ERP.

    Attributes:
        category: Endpoint family the document is posted to
        document_type: ERP document code (SI, PAY, CN, STK_IN, ...)
        source_event_type: Event type the document was derived from
        source_id: Identifier of the source record (invoice id, stock id, ...)
        payload: JSON body sent to the ERP
        financial: Money snapshot kept on the resulting transaction
        inventory: Stock snapshot kept on the resulting transaction
    """
    category: DocumentCategory
    document_type: str
    source_event_type: Optional[EventType] = None
    source_id: Optional[str] = None
    payload: dict[str, Any] = Field(default_factory=dict)
    financial: Optional[FinancialSnapshot] = None
    inventory: Optional[InventorySnapshot] = None


class SubmissionResult(BaseModel):
    """ERP acknowledgement of a submitted document."""
    document_reference: str
    document_category: DocumentCategory
    raw_response: dict[str, Any] = Field(default_factory=dict)
