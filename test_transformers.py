"""Payload validation and event-to-document transformation tests."""

from decimal import Decimal

import pytest

from conftest import START, invoice_payload, payment_payload, stock_sold_payload
from core.models import DocumentCategory, EventType
from pipeline.errors import TransformationError
from pipeline.transformers import TransformContext, to_major, transform
from pipeline.validation import validate


def _document(event_type, payload, divisor=100):
    outcome = validate(event_type, payload)
    assert outcome.is_valid, outcome.issues
    return transform(event_type, outcome.normalized, TransformContext("evt_1", START, divisor))


class TestValidation:

    def test_valid_invoice_normalized(self):
        payload = invoice_payload()
        payload["data"]["unexpectedField"] = "dropped"
        outcome = validate(EventType.INVOICE_CREATED, payload)
        assert outcome.is_valid
        assert "unexpectedField" not in outcome.normalized["data"]
        assert outcome.normalized["data"]["patient"]["phoneNumber"] == "+2348010000000"

    def test_collects_every_violation(self):
        payload = invoice_payload()
        del payload["data"]["patient"]
        payload["data"]["items"][0]["quantity"] = -1
        outcome = validate(EventType.INVOICE_CREATED, payload)
        paths = {issue.path for issue in outcome.issues}
        assert not outcome.is_valid
        assert outcome.normalized is None
        assert "data.patient" in paths
        assert "data.items.0.quantity" in paths

    def test_empty_items_rejected(self):
        payload = invoice_payload()
        payload["data"]["items"] = []
        assert not validate(EventType.INVOICE_CREATED, payload).is_valid

    def test_unknown_payment_method_rejected(self):
        payload = payment_payload(method="bitcoin")
        assert not validate(EventType.PAYMENT_CREATED, payload).is_valid

    def test_event_name_must_match_type(self):
        assert not validate(EventType.INVOICE_UPDATED, invoice_payload()).is_valid

    def test_to_result(self):
        result = validate(EventType.INVOICE_CREATED, {"event": "invoice.created"}).to_result(START)
        assert not result.is_valid
        assert result.validated_at == START
        assert result.errors


class TestTransformers:

    def test_invoice_amounts_in_major_units(self):
        doc = _document(EventType.INVOICE_CREATED, invoice_payload(price=15000, quantity=2))
        assert doc.category == DocumentCategory.INVOICE
        assert doc.document_type == "SI"
        assert doc.source_id == "inv_1001"
        assert doc.source_event_type == EventType.INVOICE_CREATED
        line = doc.payload["lineItems"][0]
        assert line["unitPrice"] == 150.0
        assert line["lineTotal"] == 300.0
        assert doc.payload["totalAmount"] == 300.0
        assert doc.payload["customerReference"] == "MRN-0042"
        assert doc.payload["sourceEventId"] == "evt_1"
        assert doc.financial.amount == Decimal("300.00")

    def test_dates_come_from_receipt_time(self):
        first = _document(EventType.INVOICE_CREATED, invoice_payload())
        second = _document(EventType.INVOICE_CREATED, invoice_payload())
        assert first.payload["invoiceDate"] == START.isoformat()
        assert first.model_dump() == second.model_dump()

    def test_updated_invoice_is_proforma(self):
        payload = invoice_payload()
        payload["event"] = "invoice.updated"
        doc = _document(EventType.INVOICE_UPDATED, payload)
        assert doc.payload["isProforma"] is True

    @pytest.mark.parametrize("method,code", [
        ("pos", "CARD"),
        ("transfer", "BANK_TRANSFER"),
        ("direct-lodgement", "DIRECT_DEPOSIT"),
        ("wallet", "WALLET"),
    ])
    def test_payment_method_codes(self, method, code):
        doc = _document(EventType.PAYMENT_CREATED, payment_payload(amount=250050, method=method))
        assert doc.category == DocumentCategory.PAYMENT
        assert doc.payload["paymentMethod"] == code
        assert doc.payload["amount"] == 2500.5

    def test_invoice_cancellation_is_credit_note(self):
        payload = {
            "event": "invoice.cancelled",
            "data": {"id": "inv_1001", "reason": "Duplicate bill", "operator": {"id": "op_1", "name": "Ada"}},
        }
        doc = _document(EventType.INVOICE_CANCELLED, payload)
        assert doc.category == DocumentCategory.CREDIT_NOTE
        assert doc.document_type == "CN"
        assert doc.payload["originalInvoiceId"] == "inv_1001"

    def test_stock_sold_issue(self):
        doc = _document(EventType.STOCK_SOLD, stock_sold_payload())
        assert doc.document_type == "STK_OUT"
        assert doc.payload["issueType"] == "SALE"
        assert doc.payload["fromLocation"] == {"id": "loc_pharm", "name": "Main Pharmacy"}
        assert doc.inventory.lines[0].stock_code == "PARA-500"
        assert doc.inventory.from_location == "loc_pharm"

    def test_transfer_reads_from_alias(self):
        payload = {
            "event": "stock.transferred",
            "data": {
                "from": {"id": "loc_a", "name": "Store A"},
                "to": {"id": "loc_b", "name": "Ward B"},
                "stocks": [{"code": "GAUZE", "batchId": "G-1", "quantity": 10}],
            },
        }
        doc = _document(EventType.STOCK_TRANSFERRED, payload)
        assert doc.payload["fromLocation"]["id"] == "loc_a"
        assert doc.payload["toLocation"]["id"] == "loc_b"
        assert doc.inventory.to_location == "loc_b"

    def test_stock_created_value_uses_divisor(self):
        payload = {
            "event": "stock.created",
            "data": {
                "id": "stk_1", "batchId": "B1", "code": "PARA-500", "quantity": 4, "costPrice": 2500,
                "item": {"id": "itm_1", "name": "Paracetamol"},
                "supplier": {"id": "sup_1", "name": "Emzor"},
            },
        }
        doc = _document(EventType.STOCK_CREATED, payload, divisor=1)
        assert doc.payload["costPrice"] == 2500.0
        assert doc.payload["totalValue"] == 10000.0

    def test_return_without_stock_lines_fails(self):
        payload = {"event": "stock.returned", "data": {"id": "ret_1", "reason": "Expired"}}
        with pytest.raises(TransformationError) as exc_info:
            _document(EventType.STOCK_RETURNED, payload)
        assert exc_info.value.retryable is False

    def test_item_created(self):
        payload = {"event": "item.created", "data": {"id": "itm_1", "name": "Paracetamol", "type": "product"}}
        doc = _document(EventType.ITEM_CREATED, payload)
        assert doc.category == DocumentCategory.ITEM_MASTER
        assert doc.payload["action"] == "CREATE"
        assert doc.payload["itemType"] == "STOCK"


class TestToMajor:

    def test_rounds_half_up(self):
        assert to_major(12345, 100) == Decimal("123.45")
        assert to_major("0.5", 100) == Decimal("0.01")

    def test_invalid_divisor(self):
        with pytest.raises(TransformationError):
            to_major(100, 0)

    def test_invalid_amount(self):
        with pytest.raises(TransformationError):
            to_major("abc", 100)
