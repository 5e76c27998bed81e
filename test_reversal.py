"""Reversal and verification tests."""

import pytest

from conftest import START, invoice_payload, payment_payload, stock_sold_payload
from connectors.erp_base import ERPPermanentError
from core.audit import AuditQuery
from core.models import Actor, AuditAction, DocumentCategory, EventStatus, transaction_id_for
from core.observability import get_metrics
from pipeline.errors import AlreadyReversed, EventBusy, NotSynced, ReasonRequired, TransactionNotFound
from pipeline.reversal import build_reversal_document, verify_transaction

OPERATOR = Actor.operator("op_9", "Chief accountant")


@pytest.fixture
def synced(services, receive):
    """Drive a payload to synced and return its transaction id."""
    async def _synced(payload):
        event = receive(payload)
        outcome = await services.orchestrator.process(event.event_id)
        assert outcome.status == EventStatus.SYNCED
        return outcome.transaction_id
    return _synced


class TestReversal:

    @pytest.mark.asyncio
    async def test_reverse_posts_credit_note(self, services, synced, connector):
        txn_id = await synced(invoice_payload())
        txn = await services.reversal.reverse(txn_id, "Billed wrong patient", OPERATOR)

        assert txn.reversed
        assert txn.reversal.reason == "Billed wrong patient"
        assert txn.reversal.reversed_by == "op_9"
        assert txn.reversal.reversal_document_reference == "SX3-CN-0002"

        credit_note = connector.submitted[-1]
        assert credit_note.category == DocumentCategory.CREDIT_NOTE
        assert credit_note.payload["originalReference"] == "SX3-SI-0001"
        assert credit_note.payload["totalAmount"] == 150.0
        assert credit_note.payload["customerCode"] == "MRN-0042"

        event = services.store.get_event(txn.event_id)
        assert event.status == EventStatus.REVERSED
        assert event.reversal.transaction_id == txn_id
        assert get_metrics().reversals == 1

    @pytest.mark.asyncio
    async def test_reverse_writes_one_warning_entry(self, services, synced):
        txn_id = await synced(invoice_payload())
        await services.reversal.reverse(txn_id, "Duplicate", OPERATOR)
        entries = services.audit.query(AuditQuery(action=AuditAction.EVENT_REVERSED))
        assert len(entries) == 1
        assert entries[0].severity.value == "warning"
        assert entries[0].before == {"status": "synced", "reversed": False}
        assert entries[0].after == {"status": "reversed", "reversed": True}
        assert entries[0].actor.id == "op_9"

    @pytest.mark.asyncio
    async def test_second_reversal_rejected(self, services, synced, connector):
        txn_id = await synced(invoice_payload())
        await services.reversal.reverse(txn_id, "Duplicate", OPERATOR)
        with pytest.raises(AlreadyReversed):
            await services.reversal.reverse(txn_id, "Again", OPERATOR)
        assert len(connector.submitted) == 2

    @pytest.mark.asyncio
    async def test_blank_reason_rejected(self, services, synced):
        txn_id = await synced(invoice_payload())
        with pytest.raises(ReasonRequired):
            await services.reversal.reverse(txn_id, "   ", OPERATOR)
        assert not services.store.get_transaction(txn_id).reversed

    @pytest.mark.asyncio
    async def test_unknown_transaction(self, services):
        with pytest.raises(TransactionNotFound):
            await services.reversal.reverse("TXN-nope", "reason", OPERATOR)

    @pytest.mark.asyncio
    async def test_erp_rejection_leaves_state_unchanged(self, services, synced, connector):
        txn_id = await synced(invoice_payload())
        connector.outcomes = [ERPPermanentError("Period closed", status_code=409)]

        with pytest.raises(ERPPermanentError):
            await services.reversal.reverse(txn_id, "Duplicate", OPERATOR)

        txn = services.store.get_transaction(txn_id)
        assert not txn.reversed
        assert services.store.get_event(txn.event_id).status == EventStatus.SYNCED
        failures = services.audit.query(AuditQuery(action=AuditAction.TRANSACTION_REVERSAL_FAILED))
        assert len(failures) == 1
        assert get_metrics().reversal_failures == 1

        await services.reversal.reverse(txn_id, "Duplicate", OPERATOR)
        assert services.store.get_transaction(txn_id).reversed

    @pytest.mark.asyncio
    async def test_event_must_be_synced(self, services, synced):
        txn_id = await synced(invoice_payload())
        event = services.store.get_event(txn_id.removeprefix("TXN-"))
        event.status = EventStatus.FAILED
        services.store.save_event(event)
        with pytest.raises(NotSynced):
            await services.reversal.reverse(txn_id, "Duplicate", OPERATOR)

    @pytest.mark.asyncio
    async def test_busy_event_blocks_reversal(self, services, synced):
        txn_id = await synced(invoice_payload())
        event_id = txn_id.removeprefix("TXN-")
        services.store.acquire_lease(event_id, "worker-2", START.replace(year=2030), START)
        with pytest.raises(EventBusy):
            await services.reversal.reverse(txn_id, "Duplicate", OPERATOR)


class TestReversalDocument:

    @pytest.mark.asyncio
    async def test_payment_reversal_type(self, services, synced):
        txn_id = await synced(payment_payload())
        doc = build_reversal_document(services.store.get_transaction(txn_id), "Refund", OPERATOR)
        assert doc.document_type == "PAY_REV"
        assert doc.payload["reversedBy"] == "op_9"

    @pytest.mark.asyncio
    async def test_stock_reversal_type(self, services, synced):
        txn_id = await synced(stock_sold_payload())
        doc = build_reversal_document(services.store.get_transaction(txn_id), "Miscount", OPERATOR)
        assert doc.document_type == "STK_OUT_REV"
        assert doc.inventory.lines[0].stock_code == "PARA-500"


class TestVerify:

    @pytest.mark.asyncio
    async def test_verify_once(self, services, synced):
        txn_id = await synced(invoice_payload())
        txn = verify_transaction(services.store, services.audit, txn_id, OPERATOR, now=START)
        verify_transaction(services.store, services.audit, txn_id, OPERATOR, now=START)

        assert txn.verified
        assert txn.verified_by == "op_9"
        assert len(services.audit.query(AuditQuery(action=AuditAction.TRANSACTION_VERIFIED))) == 1

    def test_verify_unknown(self, services):
        with pytest.raises(TransactionNotFound):
            verify_transaction(services.store, services.audit, transaction_id_for("evt_x"), OPERATOR)
