"""Idempotency ledger.

Webhooks are delivered at least once. The ledger turns that into at-most-one
Event per message id, relying on the store's unique constraint on
``idempotency_key`` so that concurrent duplicate deliveries race safely.
"""

from dataclasses import dataclass
from typing import Optional

from core.models import Event, EventStatus
from core.storage import DuplicateKeyError, EventStore


@dataclass
class LedgerResult:
    is_new: bool
    event: Optional[Event] = None
    existing_event_id: Optional[str] = None
    existing_status: Optional[EventStatus] = None


class IdempotencyLedger:
    def __init__(self, store: EventStore):
        self.store = store

    def register_if_new(self, event: Event) -> LedgerResult:
        """Persist ``event`` unless its idempotency key is already known."""
        try:
            saved = self.store.insert_event(event)
        except DuplicateKeyError as e:
            existing = None
            if e.existing_id:
                existing = self.store.get_event(e.existing_id)
            if existing is None:
                existing = self.store.get_event_by_key(event.idempotency_key)
            if existing is None:
                # Unique clash on event_id rather than on the key
                raise
            return LedgerResult(
                is_new=False,
                existing_event_id=existing.event_id,
                existing_status=existing.status,
                event=existing,
            )
        return LedgerResult(is_new=True, event=saved)
