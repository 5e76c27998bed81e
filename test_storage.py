"""Event store tests, run against both the in-memory and the SQLite backend."""

from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import START, FixedClock, invoice_payload
from core.audit import AuditQuery, SQLiteAuditBackend, create_audit_entry
from core.models import (
    AuditAction,
    AuditSeverity,
    DocumentCategory,
    Event,
    EventStatus,
    EventType,
    FinancialSnapshot,
    ReversalDetails,
    Transaction,
    transaction_id_for,
)
from core.storage import (
    DuplicateKeyError,
    EventQuery,
    InMemoryEventStore,
    SQLiteConfigStore,
    SQLiteEventStore,
    StaleRecordError,
    TransactionQuery,
    UnknownConfigKey,
)


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    clock = FixedClock()
    if request.param == "memory":
        return InMemoryEventStore(clock)
    return SQLiteEventStore(tmp_path / "pipeline.db", clock)


def _event(event_id="evt_1", key="msg_1", received_at=START, status=EventStatus.RECEIVED):
    return Event(
        event_id=event_id,
        event_type=EventType.INVOICE_CREATED,
        idempotency_key=key,
        status=status,
        raw_payload=invoice_payload(),
        received_at=received_at,
        created_at=received_at,
        updated_at=received_at,
    )


def _transaction(event_id="evt_1", reference="SIH-1"):
    return Transaction(
        transaction_id=transaction_id_for(event_id),
        event_id=event_id,
        event_type=EventType.INVOICE_CREATED,
        document_reference=reference,
        document_category=DocumentCategory.INVOICE,
        document_type="SI",
        posting_date=START,
        financial=FinancialSnapshot(amount=Decimal("150.00")),
    )


class TestEvents:

    def test_insert_and_get(self, store):
        saved = store.insert_event(_event())
        assert saved.version == 1
        loaded = store.get_event("evt_1")
        assert loaded.raw_payload["data"]["id"] == "inv_1001"
        assert loaded.received_at == START
        assert store.get_event_by_key("msg_1").event_id == "evt_1"
        assert store.get_event("evt_missing") is None

    def test_duplicate_key_reports_existing_event(self, store):
        store.insert_event(_event())
        with pytest.raises(DuplicateKeyError) as exc_info:
            store.insert_event(_event(event_id="evt_2"))
        assert exc_info.value.existing_id == "evt_1"

    def test_compare_and_set(self, store):
        first = store.insert_event(_event())
        second = store.get_event("evt_1")

        first.status = EventStatus.VALIDATED
        saved = store.save_event(first)
        assert saved.version == 2

        second.status = EventStatus.FAILED
        with pytest.raises(StaleRecordError):
            store.save_event(second)
        assert store.get_event("evt_1").status == EventStatus.VALIDATED

    def test_list_filters_and_pages(self, store):
        for n in range(5):
            store.insert_event(_event(f"evt_{n}", f"msg_{n}", received_at=START + timedelta(minutes=n)))
        failed = store.get_event("evt_3")
        failed.status = EventStatus.FAILED
        failed.requires_intervention = True
        store.save_event(failed)

        page, total = store.list_events(EventQuery(limit=2, skip=1))
        assert total == 5
        assert [e.event_id for e in page] == ["evt_3", "evt_2"]

        items, total = store.list_events(EventQuery(status=EventStatus.FAILED))
        assert total == 1 and items[0].event_id == "evt_3"

        items, total = store.list_events(EventQuery(requires_intervention=True))
        assert total == 1

        items, total = store.list_events(EventQuery(start_date=START + timedelta(minutes=3)))
        assert {e.event_id for e in items} == {"evt_3", "evt_4"}

    def test_intervention_first_orders_before_paging(self, store):
        for n in range(4):
            store.insert_event(_event(f"evt_{n}", f"msg_{n}"))
        for n in range(4):
            store.clock.advance(60)
            failed = store.get_event(f"evt_{n}")
            failed.status = EventStatus.FAILED
            failed.requires_intervention = n == 3
            store.save_event(failed)

        query = EventQuery(status=EventStatus.FAILED, intervention_first=True, limit=2)
        first, total = store.list_events(query)
        query.skip = 2
        second, _ = store.list_events(query)

        assert total == 4
        assert [e.event_id for e in first] == ["evt_3", "evt_0"]
        assert [e.event_id for e in second] == ["evt_1", "evt_2"]

    def test_stats(self, store):
        store.insert_event(_event())
        store.schedule_retry("evt_1", START)
        stats = store.stats()
        assert stats.events_by_status == {"received": 1}
        assert stats.events_by_type == {"invoice.created": 1}
        assert stats.pending_retries == 1

    def test_stalled_events_skip_leased(self, store):
        store.insert_event(_event("evt_a", "msg_a"))
        store.insert_event(_event("evt_b", "msg_b"))
        store.acquire_lease("evt_b", "worker", START + timedelta(hours=1), START)

        later = START + timedelta(minutes=30)
        stalled = store.find_stalled_events(updated_before=later - timedelta(minutes=10), now=later)
        assert [e.event_id for e in stalled] == ["evt_a"]

    def test_delete_terminal_events(self, store):
        store.insert_event(_event("evt_old", "msg_old"))
        synced = store.get_event("evt_old")
        synced.status = EventStatus.SYNCED
        store.save_event(synced)
        store.insert_event(_event("evt_live", "msg_live"))

        assert store.delete_terminal_events(START + timedelta(days=1)) == 1
        assert store.get_event("evt_old") is None
        assert store.get_event("evt_live") is not None


class TestLeases:

    def test_exclusive_until_released(self, store):
        store.insert_event(_event())
        expires = START + timedelta(minutes=2)
        assert store.acquire_lease("evt_1", "a", expires, START)
        assert not store.acquire_lease("evt_1", "b", expires, START)
        store.release_lease("evt_1", "a")
        assert store.acquire_lease("evt_1", "b", expires, START)

    def test_expired_lease_can_be_taken(self, store):
        store.insert_event(_event())
        store.acquire_lease("evt_1", "a", START + timedelta(minutes=2), START)
        assert store.acquire_lease("evt_1", "b", START + timedelta(minutes=5), START + timedelta(minutes=3))

    def test_release_by_non_owner_is_ignored(self, store):
        store.insert_event(_event())
        store.acquire_lease("evt_1", "a", START + timedelta(minutes=2), START)
        store.release_lease("evt_1", "b")
        assert not store.acquire_lease("evt_1", "b", START + timedelta(minutes=2), START)

    def test_unknown_event(self, store):
        assert not store.acquire_lease("evt_nope", "a", START + timedelta(minutes=2), START)


class TestTransactions:

    def test_unique_per_event_and_reference(self, store):
        store.insert_transaction(_transaction())
        with pytest.raises(DuplicateKeyError):
            store.insert_transaction(_transaction())
        with pytest.raises(DuplicateKeyError):
            store.insert_transaction(_transaction("evt_2", reference="SIH-1"))
        assert store.get_transaction_by_event("evt_1").document_reference == "SIH-1"

    def test_reversal_flips_once(self, store):
        store.insert_transaction(_transaction())
        details = ReversalDetails(reason="Duplicate", reversal_document_reference="CN-1", reversed_by="op", reversed_at=START)
        assert store.mark_transaction_reversed(transaction_id_for("evt_1"), details)
        assert not store.mark_transaction_reversed(transaction_id_for("evt_1"), details)
        txn = store.get_transaction(transaction_id_for("evt_1"))
        assert txn.reversed
        assert txn.status.value == "reversed"
        assert txn.reversal.reversal_document_reference == "CN-1"

    def test_reversed_transaction_with_synced_event(self, store):
        for n in (1, 2):
            store.insert_event(_event(f"evt_{n}", f"msg_{n}", status=EventStatus.SYNCED))
            store.insert_transaction(_transaction(f"evt_{n}", f"SIH-{n}"))
        details = ReversalDetails(reason="Duplicate", reversal_document_reference="CN-1", reversed_by="op", reversed_at=START)
        store.mark_transaction_reversed(transaction_id_for("evt_1"), details)

        drifted = store.find_reversed_with_synced_event()
        assert [t.transaction_id for t in drifted] == [transaction_id_for("evt_1")]

        event = store.get_event("evt_1")
        event.status = EventStatus.REVERSED
        store.save_event(event)
        assert store.find_reversed_with_synced_event() == []

    def test_filters_and_stats(self, store):
        store.insert_transaction(_transaction("evt_1", "SIH-1"))
        store.insert_transaction(_transaction("evt_2", "SIH-2"))
        store.mark_transaction_verified(transaction_id_for("evt_2"), "op", START)

        items, total = store.list_transactions(TransactionQuery(verified=False))
        assert total == 1 and items[0].event_id == "evt_1"
        assert store.transaction_stats() == {"total": 2, "reversed": 0, "unverified": 1, "invoice": 2}
        assert store.get_transaction(transaction_id_for("evt_1")).financial.amount == Decimal("150.00")


class TestScheduledRetries:

    def test_claim_due_retries_once(self, store):
        store.schedule_retry("evt_1", START + timedelta(seconds=5))
        store.schedule_retry("evt_2", START + timedelta(seconds=30))

        assert store.claim_due_retries(START) == []
        due = store.claim_due_retries(START + timedelta(seconds=10))
        assert [r.event_id for r in due] == ["evt_1"]
        assert store.claim_due_retries(START + timedelta(seconds=10)) == []
        assert store.get_scheduled_retry("evt_2") is not None

    def test_reschedule_replaces(self, store):
        store.schedule_retry("evt_1", START + timedelta(seconds=5))
        store.schedule_retry("evt_1", START + timedelta(seconds=50))
        assert store.get_scheduled_retry("evt_1").not_before == START + timedelta(seconds=50)

    def test_claim_single(self, store):
        store.schedule_retry("evt_1", START)
        assert store.claim_retry("evt_1")
        assert not store.claim_retry("evt_1")
        assert not store.cancel_retry("evt_1")


class TestSQLitePersistence:

    def test_config_history_survives_reopen(self, tmp_path):
        path = tmp_path / "pipeline.db"
        SQLiteConfigStore(path).set("retry.maxAttempts", 5, changed_by="op_1", reason="ERP maintenance")

        entry = SQLiteConfigStore(path).get_entry("retry.maxAttempts")
        assert entry.value == 5
        assert entry.version == 2
        assert entry.history[0].value == 3
        assert entry.history[0].reason == "ERP maintenance"

    def test_unknown_config_key(self, tmp_path):
        with pytest.raises(UnknownConfigKey):
            SQLiteConfigStore(tmp_path / "pipeline.db").set("nope.key", 1, changed_by="op")

    def test_audit_backend_query(self, tmp_path):
        backend = SQLiteAuditBackend(tmp_path / "pipeline.db")
        backend.append(create_audit_entry(AuditAction.EVENT_RECEIVED, "received", event_id="evt_1", timestamp=START))
        backend.append(create_audit_entry(
            AuditAction.EVENT_FAILED, "failed", AuditSeverity.ERROR, event_id="evt_1",
            timestamp=START + timedelta(seconds=1),
        ))

        assert [e.action for e in backend.trail("evt_1")] == [AuditAction.EVENT_RECEIVED, AuditAction.EVENT_FAILED]
        errors = backend.query(AuditQuery(severity=AuditSeverity.ERROR))
        assert len(errors) == 1
        assert errors[0].timestamp == START + timedelta(seconds=1)
