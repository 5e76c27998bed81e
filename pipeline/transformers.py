"""Event-to-document transformers.

Each event type maps to one function turning the validated payload into an
``ExternalDocument`` for the ERP. Transformers are deterministic: every date
comes from the event's original receipt time, so a retried transform
produces the same document as the first attempt.

Amounts in source payloads are currency subunits (kobo). They are divided by
the configured ``sage.currencyDivisor`` and rounded to two places.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from core.models import (
    DocumentCategory,
    EventType,
    ExternalDocument,
    FinancialSnapshot,
    InventoryLine,
    InventorySnapshot,
)
from pipeline.errors import TransformationError
from pipeline import schemas
from pipeline.validation import load

CURRENCY = "NGN"
TWO_PLACES = Decimal("0.01")

PAYMENT_METHOD_CODES = {
    "wallet": "WALLET",
    "cash": "CASH",
    "pos": "CARD",
    "transfer": "BANK_TRANSFER",
    "cheque": "CHEQUE",
    "direct-lodgement": "DIRECT_DEPOSIT",
}


@dataclass(frozen=True)
class TransformContext:
    """Inputs a transformer needs beyond the payload itself."""
    event_id: str
    received_at: datetime
    currency_divisor: int = 100


Transformer = Callable[[Any, TransformContext], ExternalDocument]

TRANSFORMERS: Dict[EventType, Transformer] = {}


def transformer(*event_types: EventType):
    """Register a function as the transformer for one or more event types."""
    def decorator(func: Transformer) -> Transformer:
        for event_type in event_types:
            TRANSFORMERS[event_type] = func
        return func
    return decorator


# =============================================================================
# Helpers
# =============================================================================

def to_major(amount: Any, divisor: int) -> Decimal:
    """Convert a subunit amount to major units, two decimal places."""
    if divisor <= 0:
        raise TransformationError(f"Invalid currency divisor: {divisor}", retryable=False)
    try:
        value = Decimal(str(amount)) / Decimal(divisor)
    except (InvalidOperation, ValueError) as e:
        raise TransformationError(f"Invalid amount {amount!r}: {e}", retryable=False)
    return value.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def _num(value: Any) -> Decimal:
    return Decimal(str(value))


def _money(value: Decimal) -> float:
    return float(value)


def _operator(op: Optional[schemas.Operator]) -> Optional[Dict[str, str]]:
    return {"id": op.id, "name": op.name} if op else None


def _location(loc) -> Optional[Dict[str, Any]]:
    return {"id": loc.id, "name": loc.name} if loc else None


def _stock_lines(stocks: List[schemas.StockLine]) -> List[Dict[str, Any]]:
    return [
        {"stockCode": s.code, "batchId": s.batch_id, "quantity": s.quantity}
        for s in stocks
    ]


def _inventory(movement_type: str, stocks: List[schemas.StockLine], from_loc=None, to_loc=None) -> InventorySnapshot:
    return InventorySnapshot(
        movement_type=movement_type,
        lines=[InventoryLine(stock_code=s.code, batch_id=s.batch_id, quantity=_num(s.quantity)) for s in stocks],
        from_location=getattr(from_loc, "id", None),
        to_location=getattr(to_loc, "id", None),
    )


def _line_items(items: List[schemas.LineItem], divisor: int) -> List[Dict[str, Any]]:
    lines = []
    for index, item in enumerate(items, start=1):
        variant = item.variant
        lines.append({
            "lineNumber": index,
            "itemCode": variant.sku if variant and variant.sku else item.id,
            "itemDescription": item.name,
            "quantity": item.quantity,
            "unitPrice": _money(to_major(item.price, divisor)),
            "lineTotal": _money(to_major(_num(item.price) * _num(item.quantity), divisor)),
            "variantId": variant.id if variant else None,
            "variantTitle": variant.title if variant else None,
        })
    return lines


# =============================================================================
# Invoices and payments
# =============================================================================

@transformer(EventType.INVOICE_CREATED)
def transform_invoice_created(data: schemas.InvoiceData, ctx: TransformContext) -> ExternalDocument:
    return _invoice_document(data, ctx, proforma=bool(data.proforma))


@transformer(EventType.INVOICE_UPDATED)
def transform_invoice_updated(data: schemas.InvoiceData, ctx: TransformContext) -> ExternalDocument:
    # Only proforma invoices can be updated at the source
    return _invoice_document(data, ctx, proforma=True)


def _invoice_document(data: schemas.InvoiceData, ctx: TransformContext, proforma: bool) -> ExternalDocument:
    lines = _line_items(data.items, ctx.currency_divisor)
    total = sum((_num(line["lineTotal"]) for line in lines), Decimal("0")).quantize(TWO_PLACES)

    payload = {
        "documentType": "SI",
        "invoiceId": data.id,
        "invoiceNumber": data.id,
        "isProforma": proforma,
        "invoiceDate": ctx.received_at.isoformat(),
        "customerReference": data.patient.mrn,
        "customerName": data.patient.name,
        "customerId": data.patient.id,
        "customerPhone": data.patient.phone_number or "",
        "lineItems": lines,
        "subtotal": _money(total),
        "taxAmount": 0.0,
        "totalAmount": _money(total),
        "currency": CURRENCY,
        "operator": _operator(data.operator),
    }
    return ExternalDocument(
        category=DocumentCategory.INVOICE,
        document_type="SI",
        source_id=data.id,
        payload=payload,
        financial=FinancialSnapshot(
            amount=total,
            currency=CURRENCY,
            customer_reference=data.patient.mrn,
            customer_name=data.patient.name,
            invoice_number=data.id,
        ),
    )


@transformer(EventType.INVOICE_CANCELLED)
def transform_invoice_cancelled(data: schemas.CancellationData, ctx: TransformContext) -> ExternalDocument:
    return ExternalDocument(
        category=DocumentCategory.CREDIT_NOTE,
        document_type="CN",
        source_id=data.id,
        payload={
            "documentType": "CN",
            "originalInvoiceId": data.id,
            "cancellationReason": data.reason,
            "cancellationDate": ctx.received_at.isoformat(),
            "operator": _operator(data.operator),
        },
        financial=FinancialSnapshot(currency=CURRENCY, invoice_number=data.id),
    )


@transformer(EventType.PAYMENT_CREATED)
def transform_payment(data: schemas.PaymentData, ctx: TransformContext) -> ExternalDocument:
    divisor = ctx.currency_divisor
    payments = [
        {
            "paymentId": p.id,
            "amount": _money(to_major(p.amount, divisor)),
            "paymentMethod": PAYMENT_METHOD_CODES.get(p.method, "OTHER"),
            "paymentReference": p.payment_reference or "",
            "provider": p.provider or "",
        }
        for p in data.payments
    ]
    amount = sum((to_major(p.amount, divisor) for p in data.payments), Decimal("0")).quantize(TWO_PLACES)
    method = payments[0]["paymentMethod"]

    payload = {
        "documentType": "PAY",
        "paymentId": data.id,
        "paymentDate": ctx.received_at.isoformat(),
        "amount": _money(amount),
        "currency": CURRENCY,
        "paymentMethod": method,
        "payments": payments,
        "customerReference": data.patient.mrn,
        "customerName": data.patient.name,
        "customerId": data.patient.id,
        "lineItems": _line_items(data.items, divisor),
        "operator": _operator(data.operator),
    }
    return ExternalDocument(
        category=DocumentCategory.PAYMENT,
        document_type="PAY",
        source_id=data.id,
        payload=payload,
        financial=FinancialSnapshot(
            amount=amount,
            currency=CURRENCY,
            customer_reference=data.patient.mrn,
            customer_name=data.patient.name,
            payment_method=method,
        ),
    )


@transformer(EventType.PAYMENT_CANCELLED)
def transform_payment_cancelled(data: schemas.CancellationData, ctx: TransformContext) -> ExternalDocument:
    return ExternalDocument(
        category=DocumentCategory.CREDIT_NOTE,
        document_type="PAY_REV",
        source_id=data.id,
        payload={
            "documentType": "PAY_REV",
            "originalPaymentId": data.id,
            "cancellationReason": data.reason,
            "cancellationDate": ctx.received_at.isoformat(),
            "operator": _operator(data.operator),
        },
        financial=FinancialSnapshot(currency=CURRENCY),
    )


# =============================================================================
# Item master
# =============================================================================

@transformer(EventType.ITEM_CREATED, EventType.ITEM_UPDATED)
def transform_item(data: schemas.ItemCreatedData, ctx: TransformContext) -> ExternalDocument:
    action = "UPDATE" if isinstance(data, schemas.ItemUpdatedData) else "CREATE"
    payload = {
        "documentType": "ITEM",
        "action": action,
        "itemId": data.id,
        "itemName": data.name,
        "itemType": "STOCK" if data.type == "product" else "SERVICE",
        "categories": [{"id": c.id, "name": c.name} for c in data.categories or []],
        "unitOfSale": data.unit_of_sale,
        "unitOfPurchase": data.unit_of_purchase,
        "attributes": data.attributes or {},
        "effectiveDate": ctx.received_at.isoformat(),
        "operator": _operator(data.operator),
    }
    return ExternalDocument(
        category=DocumentCategory.ITEM_MASTER,
        document_type="ITEM",
        source_id=data.id,
        payload=payload,
    )


@transformer(EventType.ITEM_ARCHIVED)
def transform_item_archived(data: schemas.ArchiveData, ctx: TransformContext) -> ExternalDocument:
    return ExternalDocument(
        category=DocumentCategory.ITEM_MASTER,
        document_type="ITEM",
        source_id=data.id,
        payload={
            "documentType": "ITEM",
            "action": "ARCHIVE",
            "itemId": data.id,
            "reason": data.reason or "",
            "effectiveDate": ctx.received_at.isoformat(),
            "operator": _operator(data.operator),
        },
    )


# =============================================================================
# Stock movements
# =============================================================================

@transformer(EventType.STOCK_CREATED)
def transform_stock_created(data: schemas.StockCreatedData, ctx: TransformContext) -> ExternalDocument:
    divisor = ctx.currency_divisor
    total_value = to_major(_num(data.cost_price) * _num(data.quantity), divisor)
    variant = data.variant
    payload = {
        "documentType": "STK_IN",
        "receiptType": "RECEIPT",
        "stockId": data.id,
        "batchId": data.batch_id,
        "stockCode": data.code,
        "itemId": data.item.id,
        "itemName": data.item.name,
        "variantId": variant.id if variant else None,
        "variantTitle": variant.title if variant else None,
        "sku": variant.sku if variant else None,
        "quantity": data.quantity,
        "costPrice": _money(to_major(data.cost_price, divisor)),
        "totalValue": _money(total_value),
        "expiryDate": data.expiry_date,
        "supplierId": data.supplier.id,
        "supplierName": data.supplier.name,
        "receiptDate": ctx.received_at.isoformat(),
        "operator": _operator(data.operator),
    }
    line = schemas.StockLine(code=data.code, batch_id=data.batch_id, quantity=data.quantity)
    return ExternalDocument(
        category=DocumentCategory.STOCK_MOVEMENT,
        document_type="STK_IN",
        source_id=data.id,
        payload=payload,
        financial=FinancialSnapshot(amount=total_value, currency=CURRENCY),
        inventory=_inventory("STK_IN", [line]),
    )


@transformer(EventType.STOCK_INCREMENTED)
def transform_stock_incremented(data: schemas.StockIncrementedData, ctx: TransformContext) -> ExternalDocument:
    return ExternalDocument(
        category=DocumentCategory.STOCK_MOVEMENT,
        document_type="STK_IN",
        source_id=data.id,
        payload={
            "documentType": "STK_IN",
            "receiptType": "INCREMENT",
            "stockId": data.id,
            "quantityAdded": data.quantity_added,
            "newQuantity": data.new_quantity,
            "receiptDate": ctx.received_at.isoformat(),
            "operator": _operator(data.operator),
        },
        inventory=InventorySnapshot(
            movement_type="STK_IN",
            lines=[InventoryLine(stock_code=data.id, quantity=_num(data.quantity_added))],
        ),
    )


@transformer(EventType.STOCK_UPDATED)
def transform_stock_updated(data: schemas.StockUpdatedData, ctx: TransformContext) -> ExternalDocument:
    cost_price = to_major(data.cost_price, ctx.currency_divisor) if data.cost_price is not None else None
    lines = []
    if data.quantity is not None:
        lines.append(InventoryLine(stock_code=data.id, quantity=_num(data.quantity)))
    return ExternalDocument(
        category=DocumentCategory.STOCK_MOVEMENT,
        document_type="STK_ADJ",
        source_id=data.id,
        payload={
            "documentType": "STK_ADJ",
            "adjustmentType": "UPDATE",
            "stockId": data.id,
            "quantity": data.quantity,
            "costPrice": _money(cost_price) if cost_price is not None else None,
            "expiryDate": data.expiry_date,
            "adjustmentDate": ctx.received_at.isoformat(),
            "operator": _operator(data.operator),
        },
        inventory=InventorySnapshot(movement_type="STK_ADJ", lines=lines),
    )


@transformer(EventType.STOCK_ARCHIVED)
def transform_stock_archived(data: schemas.ArchiveData, ctx: TransformContext) -> ExternalDocument:
    return ExternalDocument(
        category=DocumentCategory.STOCK_MOVEMENT,
        document_type="STK_ADJ",
        source_id=data.id,
        payload={
            "documentType": "STK_ADJ",
            "adjustmentType": "ARCHIVE",
            "stockId": data.id,
            "reason": data.reason or "",
            "adjustmentDate": ctx.received_at.isoformat(),
            "operator": _operator(data.operator),
        },
        inventory=InventorySnapshot(movement_type="STK_ADJ"),
    )


@transformer(EventType.STOCK_RECALLED)
def transform_stock_recalled(data: schemas.StockRecalledData, ctx: TransformContext) -> ExternalDocument:
    return ExternalDocument(
        category=DocumentCategory.STOCK_MOVEMENT,
        document_type="STK_OUT",
        source_id=data.id,
        payload={
            "documentType": "STK_OUT",
            "issueType": "RECALL",
            "issueId": data.id,
            "reason": data.reason,
            "issueDate": ctx.received_at.isoformat(),
            "operator": _operator(data.operator),
        },
        inventory=InventorySnapshot(movement_type="STK_OUT"),
    )


@transformer(EventType.STOCK_TRANSFERRED)
def transform_stock_transferred(data: schemas.StockTransferredData, ctx: TransformContext) -> ExternalDocument:
    return ExternalDocument(
        category=DocumentCategory.STOCK_MOVEMENT,
        document_type="STK_TRF",
        payload={
            "documentType": "STK_TRF",
            "fromLocation": _location(data.from_),
            "toLocation": _location(data.to),
            "comment": data.comment or "",
            "transferDate": ctx.received_at.isoformat(),
            "items": _stock_lines(data.stocks),
            "operator": _operator(data.operator),
        },
        inventory=_inventory("STK_TRF", data.stocks, data.from_, data.to),
    )


@transformer(EventType.STOCK_SOLD)
def transform_stock_sold(data: schemas.StockSoldData, ctx: TransformContext) -> ExternalDocument:
    return ExternalDocument(
        category=DocumentCategory.STOCK_MOVEMENT,
        document_type="STK_OUT",
        source_id=data.id,
        payload={
            "documentType": "STK_OUT",
            "issueType": "SALE",
            "issueId": data.id,
            "billId": data.bill,
            "fromLocation": _location(data.from_),
            "issueDate": ctx.received_at.isoformat(),
            "items": _stock_lines(data.stocks),
            "operator": _operator(data.operator),
        },
        inventory=_inventory("STK_OUT", data.stocks, data.from_),
    )


@transformer(EventType.STOCK_DISPENSED)
def transform_stock_dispensed(data: schemas.StockDispensedData, ctx: TransformContext) -> ExternalDocument:
    return ExternalDocument(
        category=DocumentCategory.STOCK_MOVEMENT,
        document_type="STK_OUT",
        source_id=data.id,
        payload={
            "documentType": "STK_OUT",
            "issueType": (data.purpose or "dispense").upper(),
            "issueId": data.id,
            "billId": data.bill or "",
            "toRecipient": {
                "id": data.to.id,
                "name": data.to.name,
                "type": data.to.type,
                "mrn": data.to.mrn or "",
            },
            "fromLocation": _location(data.from_),
            "issueDate": ctx.received_at.isoformat(),
            "items": _stock_lines(data.stocks),
            "operator": _operator(data.operator),
        },
        inventory=_inventory("STK_OUT", data.stocks, data.from_),
    )


@transformer(EventType.STOCK_RETURNED)
def transform_stock_returned(data: schemas.StockReturnedData, ctx: TransformContext) -> ExternalDocument:
    if not data.stocks:
        raise TransformationError("stock.returned carries no stock lines to post", retryable=False)
    return ExternalDocument(
        category=DocumentCategory.STOCK_MOVEMENT,
        document_type="STK_RET",
        source_id=data.id,
        payload={
            "documentType": "STK_RET",
            "returnId": data.id,
            "reason": data.reason or "",
            "fromLocation": _location(data.from_),
            "toLocation": _location(data.to),
            "returnDate": ctx.received_at.isoformat(),
            "items": _stock_lines(data.stocks),
            "operator": _operator(data.operator),
        },
        inventory=_inventory("STK_RET", data.stocks, data.from_, data.to),
    )


_missing = set(EventType) - set(TRANSFORMERS)
if _missing:
    raise RuntimeError(f"No transformer for event types: {sorted(t.value for t in _missing)}")


# =============================================================================
# Entry point
# =============================================================================

def transform(event_type: EventType, normalized: Dict[str, Any], context: TransformContext) -> ExternalDocument:
    """Build the ERP document for a validated event.

    Raises:
        TransformationError: The payload cannot be mapped; ``retryable`` is
            False for defects in the data itself
    """
    try:
        envelope = load(event_type, normalized)
    except ValidationError as e:
        raise TransformationError(f"Normalized payload no longer matches schema: {e}", retryable=False)

    document = TRANSFORMERS[event_type](envelope.data, context)
    document.source_event_type = event_type
    document.payload.setdefault("sourceEventId", context.event_id)
    if envelope.metadata:
        document.payload.setdefault("metadata", envelope.metadata)
    return document
