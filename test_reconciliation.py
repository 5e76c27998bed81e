"""Reconciliation pass tests."""

from datetime import timedelta
from unittest.mock import patch

import pytest

from conftest import START, invoice_payload
from connectors.erp_base import ERPTransientError
from core.audit import AuditQuery
from core.models import Actor, AuditAction, EventStatus, transaction_id_for
from core.storage import StaleRecordError
from reconciliation import ReconciliationEngine


OPERATOR = Actor.operator("op_9", "Chief accountant")


def _check(report, check_id):
    return next(c for c in report.checks if c.check_id == check_id)


class TestReconciliation:

    @pytest.mark.asyncio
    async def test_clean_store_passes(self, services):
        report = await services.reconciliation.run()
        assert report.status.value == "PASS"
        assert [c.check_id for c in report.checks] == [
            "MISSING_TXN", "REVERSAL_DRIFT", "STALLED", "LOST_RETRY", "UNVERIFIED", "RETENTION",
        ]
        maintenance = services.audit.query(AuditQuery(action=AuditAction.MAINTENANCE))
        assert len(maintenance) == 1

    @pytest.mark.asyncio
    async def test_rebuilds_missing_transaction(self, services, receive):
        event = receive(invoice_payload())
        with patch.object(services.store, "insert_transaction", side_effect=RuntimeError("disk full")):
            outcome = await services.orchestrator.process(event.event_id)
        assert outcome.status == EventStatus.SYNCED
        assert services.store.get_transaction_by_event(event.event_id) is None
        assert outcome.transaction_id is None

        report = await services.reconciliation.run()

        assert report.repaired_transactions == [transaction_id_for(event.event_id)]
        assert _check(report, "MISSING_TXN").passed
        txn = services.store.get_transaction_by_event(event.event_id)
        assert txn.document_reference == "SX3-SI-0001"
        assert txn.posting_date == START
        repaired = services.audit.query(AuditQuery(action=AuditAction.TRANSACTION_CREATED))
        assert repaired[0].details["repaired"] is True
        after = await services.orchestrator.process(event.event_id)
        assert after.transaction_id == transaction_id_for(event.event_id)

    @pytest.mark.asyncio
    async def test_finishes_reversal_when_event_save_failed(self, services, receive):
        event = receive(invoice_payload())
        await services.orchestrator.process(event.event_id)
        txn_id = transaction_id_for(event.event_id)
        save_event = services.store.save_event

        def failing_save(updated):
            if updated.status == EventStatus.REVERSED:
                raise StaleRecordError(f"Event {updated.event_id} changed")
            return save_event(updated)

        with patch.object(services.store, "save_event", side_effect=failing_save):
            with pytest.raises(StaleRecordError):
                await services.reversal.reverse(txn_id, "Billed wrong patient", OPERATOR)
        assert services.store.get_event(event.event_id).status == EventStatus.SYNCED
        assert services.store.get_transaction(txn_id).reversed

        report = await services.reconciliation.run()

        assert report.repaired_reversals == [event.event_id]
        assert _check(report, "REVERSAL_DRIFT").passed
        repaired = services.store.get_event(event.event_id)
        assert repaired.status == EventStatus.REVERSED
        assert repaired.reversal.transaction_id == txn_id
        assert repaired.reversal.reversed_by == "op_9"
        credit_note = services.store.get_transaction(txn_id).reversal.reversal_document_reference
        assert repaired.reversal.reversal_document_reference == credit_note
        reversed_entries = services.audit.query(AuditQuery(action=AuditAction.EVENT_REVERSED))
        assert len(reversed_entries) == 1
        assert reversed_entries[0].details["repaired"] is True

        again = await services.reconciliation.run()
        assert again.repaired_reversals == []
        assert _check(again, "REVERSAL_DRIFT").message == "Every reversed transaction has a reversed event"

    @pytest.mark.asyncio
    async def test_resumes_stalled_events(self, services, receive, clock):
        event = receive(invoice_payload())
        assert (await services.reconciliation.run()).resumed_events == []

        clock.advance(15 * 60)
        report = await services.reconciliation.run()

        assert report.resumed_events == [event.event_id]
        assert _check(report, "STALLED").evidence["outcomes"][event.event_id] == "synced"
        assert services.store.get_event(event.event_id).status == EventStatus.SYNCED

    @pytest.mark.asyncio
    async def test_leased_events_are_not_stalled(self, services, receive, clock):
        event = receive(invoice_payload())
        services.store.acquire_lease(event.event_id, "worker-9", START + timedelta(hours=1), START)
        clock.advance(15 * 60)
        report = await services.reconciliation.run()
        assert report.resumed_events == []

    @pytest.mark.asyncio
    async def test_reschedules_lost_retry(self, services, receive, connector):
        connector.outcomes = [ERPTransientError("busy", status_code=503)]
        event = receive(invoice_payload())
        await services.orchestrator.process(event.event_id)
        services.store.cancel_retry(event.event_id)

        report = await services.reconciliation.run()

        assert report.rescheduled_retries == [event.event_id]
        assert report.status.value == "WARN"
        assert services.store.get_scheduled_retry(event.event_id).not_before == START + timedelta(seconds=5)

    @pytest.mark.asyncio
    async def test_unverified_transactions_reported(self, services, receive):
        event = receive(invoice_payload())
        await services.orchestrator.process(event.event_id)
        report = await services.reconciliation.run()
        unverified = _check(report, "UNVERIFIED")
        assert not unverified.passed
        assert unverified.evidence == {"count": 1}
        assert report.status.value == "WARN"

    @pytest.mark.asyncio
    async def test_retention_purge(self, services, receive, clock):
        event = receive(invoice_payload())
        await services.orchestrator.process(event.event_id)
        clock.advance(91 * 24 * 3600)

        assert (await services.reconciliation.run()).purged_events == 0
        assert services.store.get_event(event.event_id) is not None

        report = await services.reconciliation.run(purge=True)
        assert report.purged_events == 1
        assert services.store.get_event(event.event_id) is None
        assert services.store.get_transaction_by_event(event.event_id) is not None

    @pytest.mark.asyncio
    async def test_without_orchestrator_stalled_events_only_reported(self, services, receive, clock):
        event = receive(invoice_payload())
        clock.advance(15 * 60)
        engine = ReconciliationEngine(services.store, services.audit, clock=clock)
        report = await engine.run()
        stalled = _check(report, "STALLED")
        assert not stalled.passed
        assert stalled.evidence["event_ids"] == [event.event_id]
        assert report.to_dict()["status"] == "WARN"
