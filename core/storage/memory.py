"""In-memory event store for development and testing.

WARNING: State is lost on restart. Records are deep-copied on the way in
and out so callers never share mutable state with the store.
"""

import threading
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from core.models import (
    Event,
    EventStatus,
    ReversalDetails,
    Transaction,
    TransactionStatus,
    utcnow,
)
from core.storage.base import (
    DuplicateKeyError,
    EventQuery,
    EventStore,
    ScheduledRetry,
    StaleRecordError,
    StoreStats,
    TransactionQuery,
)


class InMemoryEventStore(EventStore):
    """Thread-safe dictionary-backed store."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock
        self._events: Dict[str, Event] = {}
        self._keys: Dict[str, str] = {}
        self._leases: Dict[str, Tuple[str, datetime]] = {}
        self._transactions: Dict[str, Transaction] = {}
        self._doc_refs: Dict[str, str] = {}
        self._retries: Dict[str, ScheduledRetry] = {}
        self._lock = threading.RLock()

    # =========================================================================
    # Events
    # =========================================================================

    def insert_event(self, event: Event) -> Event:
        with self._lock:
            existing = self._keys.get(event.idempotency_key)
            if existing is not None:
                raise DuplicateKeyError(
                    f"Idempotency key already registered: {event.idempotency_key}",
                    existing_id=existing,
                )
            if event.event_id in self._events:
                raise DuplicateKeyError(f"Event id already exists: {event.event_id}", event.event_id)
            stored = event.model_copy(deep=True)
            stored.version = 1
            self._events[event.event_id] = stored
            self._keys[event.idempotency_key] = event.event_id
            return stored.model_copy(deep=True)

    def get_event(self, event_id: str) -> Optional[Event]:
        with self._lock:
            event = self._events.get(event_id)
            return event.model_copy(deep=True) if event else None

    def get_event_by_key(self, idempotency_key: str) -> Optional[Event]:
        with self._lock:
            event_id = self._keys.get(idempotency_key)
            return self.get_event(event_id) if event_id else None

    def save_event(self, event: Event) -> Event:
        with self._lock:
            current = self._events.get(event.event_id)
            if current is None:
                raise StaleRecordError(f"Event {event.event_id} no longer exists")
            if current.version != event.version:
                raise StaleRecordError(
                    f"Event {event.event_id} changed (expected v{event.version}, found v{current.version})"
                )
            stored = event.model_copy(deep=True)
            stored.version = current.version + 1
            stored.updated_at = self.clock()
            self._events[event.event_id] = stored
            return stored.model_copy(deep=True)

    def list_events(self, query: EventQuery) -> Tuple[List[Event], int]:
        with self._lock:
            items = list(self._events.values())

        if query.status:
            items = [e for e in items if e.status == query.status]
        if query.event_type:
            items = [e for e in items if e.event_type == query.event_type]
        if query.start_date:
            items = [e for e in items if e.received_at >= query.start_date]
        if query.end_date:
            items = [e for e in items if e.received_at <= query.end_date]
        if query.requires_intervention is not None:
            items = [e for e in items if e.requires_intervention == query.requires_intervention]

        if query.intervention_first:
            items.sort(key=lambda e: (not e.requires_intervention, e.updated_at))
        else:
            items.sort(key=lambda e: e.received_at, reverse=True)
        total = len(items)
        page = items[query.skip:query.skip + query.limit]
        return [e.model_copy(deep=True) for e in page], total

    def find_stalled_events(self, updated_before: datetime, now: datetime, limit: int = 100) -> List[Event]:
        with self._lock:
            results = []
            for event in self._events.values():
                if not event.status.is_active or event.updated_at >= updated_before:
                    continue
                lease = self._leases.get(event.event_id)
                if lease and lease[1] > now:
                    continue
                results.append(event.model_copy(deep=True))
                if len(results) >= limit:
                    break
            return results

    def find_synced_without_transaction(self, limit: int = 100) -> List[Event]:
        with self._lock:
            linked = {t.event_id for t in self._transactions.values()}
            results = [
                e.model_copy(deep=True)
                for e in self._events.values()
                if e.status == EventStatus.SYNCED and e.event_id not in linked
            ]
            return results[:limit]

    def find_reversed_with_synced_event(self, limit: int = 100) -> List[Transaction]:
        with self._lock:
            results = []
            for txn in self._transactions.values():
                event = self._events.get(txn.event_id)
                if txn.reversed and event is not None and event.status == EventStatus.SYNCED:
                    results.append(txn.model_copy(deep=True))
            return results[:limit]

    def delete_terminal_events(self, older_than: datetime) -> int:
        with self._lock:
            doomed = [
                e for e in self._events.values()
                if e.status.is_terminal and e.updated_at < older_than
            ]
            for event in doomed:
                del self._events[event.event_id]
                self._keys.pop(event.idempotency_key, None)
                self._leases.pop(event.event_id, None)
                self._retries.pop(event.event_id, None)
            return len(doomed)

    def stats(self) -> StoreStats:
        with self._lock:
            stats = StoreStats(pending_retries=len(self._retries))
            for event in self._events.values():
                status = event.status.value
                event_type = event.event_type.value
                stats.events_by_status[status] = stats.events_by_status.get(status, 0) + 1
                stats.events_by_type[event_type] = stats.events_by_type.get(event_type, 0) + 1
            return stats

    # =========================================================================
    # Leases
    # =========================================================================

    def acquire_lease(self, event_id: str, owner: str, expires_at: datetime, now: datetime) -> bool:
        with self._lock:
            if event_id not in self._events:
                return False
            held = self._leases.get(event_id)
            if held and held[0] != owner and held[1] > now:
                return False
            self._leases[event_id] = (owner, expires_at)
            return True

    def release_lease(self, event_id: str, owner: str) -> None:
        with self._lock:
            held = self._leases.get(event_id)
            if held and held[0] == owner:
                del self._leases[event_id]

    # =========================================================================
    # Transactions
    # =========================================================================

    def insert_transaction(self, transaction: Transaction) -> Transaction:
        with self._lock:
            if transaction.transaction_id in self._transactions:
                raise DuplicateKeyError(
                    f"Transaction already exists: {transaction.transaction_id}",
                    transaction.transaction_id,
                )
            if transaction.document_reference in self._doc_refs:
                raise DuplicateKeyError(
                    f"Document reference already recorded: {transaction.document_reference}",
                    self._doc_refs[transaction.document_reference],
                )
            for existing in self._transactions.values():
                if existing.event_id == transaction.event_id:
                    raise DuplicateKeyError(
                        f"Event {transaction.event_id} already has a transaction",
                        existing.transaction_id,
                    )
            self._transactions[transaction.transaction_id] = transaction.model_copy(deep=True)
            self._doc_refs[transaction.document_reference] = transaction.transaction_id
            return transaction.model_copy(deep=True)

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        with self._lock:
            txn = self._transactions.get(transaction_id)
            return txn.model_copy(deep=True) if txn else None

    def get_transaction_by_event(self, event_id: str) -> Optional[Transaction]:
        with self._lock:
            for txn in self._transactions.values():
                if txn.event_id == event_id:
                    return txn.model_copy(deep=True)
            return None

    def list_transactions(self, query: TransactionQuery) -> Tuple[List[Transaction], int]:
        with self._lock:
            items = list(self._transactions.values())

        if query.event_type:
            items = [t for t in items if t.event_type == query.event_type]
        if query.reversed is not None:
            items = [t for t in items if t.reversed == query.reversed]
        if query.verified is not None:
            items = [t for t in items if t.verified == query.verified]
        if query.start_date:
            items = [t for t in items if t.posting_date >= query.start_date]
        if query.end_date:
            items = [t for t in items if t.posting_date <= query.end_date]

        items.sort(key=lambda t: t.posting_date, reverse=True)
        total = len(items)
        page = items[query.skip:query.skip + query.limit]
        return [t.model_copy(deep=True) for t in page], total

    def mark_transaction_reversed(self, transaction_id: str, details: ReversalDetails) -> bool:
        with self._lock:
            txn = self._transactions.get(transaction_id)
            if txn is None or txn.reversed:
                return False
            txn.reversed = True
            txn.status = TransactionStatus.REVERSED
            txn.reversal = details.model_copy(deep=True)
            txn.updated_at = self.clock()
            return True

    def mark_transaction_verified(self, transaction_id: str, verified_by: str, verified_at: datetime) -> bool:
        with self._lock:
            txn = self._transactions.get(transaction_id)
            if txn is None:
                return False
            txn.verified = True
            txn.verified_by = verified_by
            txn.verified_at = verified_at
            txn.updated_at = self.clock()
            return True

    def transaction_stats(self) -> Dict[str, int]:
        with self._lock:
            counts: Dict[str, int] = {"total": 0, "reversed": 0, "unverified": 0}
            for txn in self._transactions.values():
                counts["total"] += 1
                if txn.reversed:
                    counts["reversed"] += 1
                if not txn.verified:
                    counts["unverified"] += 1
                category = txn.document_category.value
                counts[category] = counts.get(category, 0) + 1
            return counts

    # =========================================================================
    # Scheduled retries
    # =========================================================================

    def schedule_retry(self, event_id: str, not_before: datetime) -> None:
        with self._lock:
            self._retries[event_id] = ScheduledRetry(event_id=event_id, not_before=not_before, created_at=self.clock())

    def cancel_retry(self, event_id: str) -> bool:
        with self._lock:
            return self._retries.pop(event_id, None) is not None

    def claim_retry(self, event_id: str) -> bool:
        return self.cancel_retry(event_id)

    def claim_due_retries(self, now: datetime, limit: int = 50) -> List[ScheduledRetry]:
        with self._lock:
            due = sorted(
                (r for r in self._retries.values() if r.not_before <= now),
                key=lambda r: r.not_before,
            )[:limit]
            for retry in due:
                del self._retries[retry.event_id]
            return due

    def get_scheduled_retry(self, event_id: str) -> Optional[ScheduledRetry]:
        with self._lock:
            return self._retries.get(event_id)
