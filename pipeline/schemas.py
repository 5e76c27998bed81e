"""Webhook payload schemas, one envelope model per event type.

Field names arrive in camelCase and are exposed in snake_case. Unknown
fields are dropped. ``EVENT_SCHEMAS`` must cover every ``EventType``; this
is checked when the module is imported.
"""

from typing import Any, Dict, List, Literal, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, conlist, create_model
from pydantic.alias_generators import to_camel

from core.models import EventType


class PayloadModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


# =============================================================================
# Shared parts
# =============================================================================

class Operator(PayloadModel):
    id: str
    name: str


class NamedRef(PayloadModel):
    id: str
    name: str


class Patient(PayloadModel):
    id: str
    name: str
    mrn: str
    phone_number: Optional[str] = None
    email: Optional[str] = None
    gender: Optional[str] = None
    owing: Optional[float] = None
    sponsors: Optional[List[Any]] = None
    admission: Optional[Dict[str, Any]] = None


class Consultant(PayloadModel):
    id: str
    name: str
    email: Optional[str] = None
    phone_number: Optional[str] = None
    avatar: Optional[str] = None


class Variant(PayloadModel):
    id: str
    title: str
    sku: Optional[str] = None


class LineItem(PayloadModel):
    """A billed line. Monetary values are in currency subunits."""
    id: str
    name: str
    quantity: float = Field(..., ge=0)
    price: float = Field(..., ge=0)
    total: Optional[float] = Field(default=None, ge=0)
    type: Optional[str] = None
    categories: Optional[List[NamedRef]] = None
    consultant: Optional[Consultant] = None
    base_price: Optional[float] = Field(default=None, ge=0)
    bill_item_id: Optional[str] = None
    date: Optional[str] = None
    dispense_completed: Optional[bool] = None
    return_completed: Optional[bool] = None
    operator: Optional[Operator] = None
    variant: Optional[Variant] = None


class StockLine(PayloadModel):
    code: str
    batch_id: str
    quantity: float = Field(..., ge=0)


class PartialLocation(PayloadModel):
    id: Optional[str] = None
    name: Optional[str] = None


class Recipient(PayloadModel):
    id: str
    name: str
    type: Optional[str] = None
    mrn: Optional[str] = None


# =============================================================================
# Invoice and payment data
# =============================================================================

class InvoiceData(PayloadModel):
    id: str
    proforma: Optional[bool] = None
    items: List[LineItem] = Field(..., min_length=1)
    patient: Patient
    operator: Operator
    timestamp: Optional[str] = None


class CancellationData(PayloadModel):
    id: str
    reason: str
    operator: Operator
    timestamp: Optional[str] = None


class PaymentEntry(PayloadModel):
    id: str
    amount: float = Field(..., ge=0)
    method: Literal["wallet", "cash", "pos", "transfer", "cheque", "direct-lodgement"]
    payment_reference: Optional[str] = None
    provider: Optional[str] = None
    operator: Optional[Operator] = None


class PaymentData(PayloadModel):
    id: str
    timestamp: Optional[str] = None
    claims: Optional[List[Any]] = None
    items: List[LineItem] = Field(..., min_length=1)
    patient: Patient
    operator: Operator
    payments: List[PaymentEntry] = Field(..., min_length=1)


# =============================================================================
# Item data
# =============================================================================

class ItemCreatedData(PayloadModel):
    id: str
    name: str
    categories: Optional[List[NamedRef]] = None
    type: Optional[Literal["product", "service"]] = None
    unit_of_sale: Optional[str] = None
    unit_of_purchase: Optional[str] = None
    attributes: Optional[Dict[str, Any]] = None
    variants: Optional[List[Any]] = None
    pricing: Optional[List[Any]] = None
    operator: Optional[Operator] = None
    timestamp: Optional[str] = None


class ItemUpdatedData(ItemCreatedData):
    name: Optional[str] = None


class ArchiveData(PayloadModel):
    id: str
    reason: Optional[str] = None
    operator: Optional[Operator] = None
    timestamp: Optional[str] = None


# =============================================================================
# Stock data
# =============================================================================

class StockVariant(PayloadModel):
    id: Optional[str] = None
    title: Optional[str] = None
    sku: Optional[str] = None


class StockCreatedData(PayloadModel):
    id: str
    batch_id: str
    code: str
    quantity: float = Field(..., ge=0)
    cost_price: float = Field(..., ge=0)
    expiry_date: Optional[str] = None
    timestamp: Optional[str] = None
    item: NamedRef
    supplier: NamedRef
    variant: Optional[StockVariant] = None
    operator: Optional[Operator] = None


class StockUpdatedData(PayloadModel):
    id: str
    quantity: Optional[float] = Field(default=None, ge=0)
    cost_price: Optional[float] = Field(default=None, ge=0)
    expiry_date: Optional[str] = None
    operator: Optional[Operator] = None
    timestamp: Optional[str] = None


class StockIncrementedData(PayloadModel):
    id: str
    quantity_added: float = Field(..., ge=0)
    new_quantity: float = Field(..., ge=0)
    operator: Optional[Operator] = None
    timestamp: Optional[str] = None


class StockTransferredData(PayloadModel):
    from_: NamedRef = Field(..., alias="from")
    to: NamedRef
    comment: Optional[str] = None
    stocks: List[StockLine] = Field(..., min_length=1)
    operator: Optional[Operator] = None
    timestamp: Optional[str] = None


class StockRecalledData(PayloadModel):
    id: str
    reason: str
    operator: Optional[Operator] = None
    timestamp: Optional[str] = None


class StockDispensedData(PayloadModel):
    id: str
    bill: Optional[str] = None
    purpose: Optional[str] = None
    to: Recipient
    from_: NamedRef = Field(..., alias="from")
    stocks: List[StockLine] = Field(..., min_length=1)
    operator: Optional[Operator] = None
    timestamp: Optional[str] = None


class StockSoldData(PayloadModel):
    id: str
    bill: str
    from_: NamedRef = Field(..., alias="from")
    stocks: List[StockLine] = Field(..., min_length=1)
    operator: Optional[Operator] = None
    timestamp: Optional[str] = None


class StockReturnedData(PayloadModel):
    id: str
    reason: Optional[str] = None
    from_: Optional[PartialLocation] = Field(default=None, alias="from")
    to: Optional[PartialLocation] = None
    stocks: Optional[conlist(StockLine, min_length=1)] = None
    operator: Optional[Operator] = None
    timestamp: Optional[str] = None


# =============================================================================
# Envelopes
# =============================================================================

def _envelope(event_type: EventType, data_model: Type[PayloadModel]) -> Type[PayloadModel]:
    name = "".join(part.capitalize() for part in event_type.value.split(".")) + "Event"
    return create_model(
        name,
        __base__=PayloadModel,
        event=(Literal[event_type.value], ...),
        data=(data_model, ...),
        metadata=(Optional[Dict[str, Any]], None),
    )


EVENT_DATA_MODELS: Dict[EventType, Type[PayloadModel]] = {
    EventType.INVOICE_CREATED: InvoiceData,
    EventType.INVOICE_UPDATED: InvoiceData,
    EventType.INVOICE_CANCELLED: CancellationData,
    EventType.PAYMENT_CREATED: PaymentData,
    EventType.PAYMENT_CANCELLED: CancellationData,
    EventType.ITEM_CREATED: ItemCreatedData,
    EventType.ITEM_UPDATED: ItemUpdatedData,
    EventType.ITEM_ARCHIVED: ArchiveData,
    EventType.STOCK_CREATED: StockCreatedData,
    EventType.STOCK_UPDATED: StockUpdatedData,
    EventType.STOCK_INCREMENTED: StockIncrementedData,
    EventType.STOCK_TRANSFERRED: StockTransferredData,
    EventType.STOCK_RECALLED: StockRecalledData,
    EventType.STOCK_ARCHIVED: ArchiveData,
    EventType.STOCK_DISPENSED: StockDispensedData,
    EventType.STOCK_SOLD: StockSoldData,
    EventType.STOCK_RETURNED: StockReturnedData,
}

EVENT_SCHEMAS: Dict[EventType, Type[PayloadModel]] = {
    event_type: _envelope(event_type, data_model)
    for event_type, data_model in EVENT_DATA_MODELS.items()
}

_missing = set(EventType) - set(EVENT_SCHEMAS)
if _missing:
    raise RuntimeError(f"No payload schema for event types: {sorted(t.value for t in _missing)}")
