"""Event store interface.

The store owns durable state for events, transactions and scheduled
retries. All writes that guard an invariant are atomic at the store level:

- ``insert_event`` rejects a second event for the same idempotency key.
- ``save_event`` is a compare-and-set on ``Event.version``.
- ``acquire_lease`` grants at most one live lease per event.
- ``insert_transaction`` rejects a duplicate document reference.
- ``mark_transaction_reversed`` succeeds at most once per transaction.
- ``schedule_retry`` keeps at most one pending retry per event.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from core.models import (
    Event,
    EventStatus,
    EventType,
    ReversalDetails,
    Transaction,
)


# =============================================================================
# Errors
# =============================================================================

class StorageError(Exception):
    """Base exception for store failures."""
    pass


class DuplicateKeyError(StorageError):
    """A unique constraint rejected the write.

    ``existing_id`` carries the id of the record that already holds the key
    when the store can resolve it.
    """
    def __init__(self, message: str, existing_id: Optional[str] = None):
        super().__init__(message)
        self.existing_id = existing_id


class StaleRecordError(StorageError):
    """Compare-and-set failed: the record changed since it was read."""
    pass


# =============================================================================
# Queries
# =============================================================================

@dataclass
class EventQuery:
    """Filters and paging for event listings."""
    status: Optional[EventStatus] = None
    event_type: Optional[EventType] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    requires_intervention: Optional[bool] = None
    intervention_first: bool = False
    limit: int = 50
    skip: int = 0


@dataclass
class TransactionQuery:
    """Filters and paging for transaction listings."""
    event_type: Optional[EventType] = None
    reversed: Optional[bool] = None
    verified: Optional[bool] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    limit: int = 50
    skip: int = 0


@dataclass
class ScheduledRetry:
    """Durable record of a pending retry."""
    event_id: str
    not_before: datetime
    created_at: Optional[datetime] = None


@dataclass
class StoreStats:
    events_by_status: Dict[str, int] = field(default_factory=dict)
    events_by_type: Dict[str, int] = field(default_factory=dict)
    pending_retries: int = 0


# =============================================================================
# Interface
# =============================================================================

class EventStore(ABC):
    """Abstract persistence for events, transactions and scheduled retries."""

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    @abstractmethod
    def insert_event(self, event: Event) -> Event:
        """Insert a new event.

        Raises:
            DuplicateKeyError: The idempotency key or event id is taken;
                ``existing_id`` is the event id already holding the key.
        """
        pass

    @abstractmethod
    def get_event(self, event_id: str) -> Optional[Event]:
        pass

    @abstractmethod
    def get_event_by_key(self, idempotency_key: str) -> Optional[Event]:
        pass

    @abstractmethod
    def save_event(self, event: Event) -> Event:
        """Persist changes if the stored version still matches ``event.version``.

        Returns the saved event with its version incremented.

        Raises:
            StaleRecordError: Another writer saved the event first.
        """
        pass

    @abstractmethod
    def list_events(self, query: EventQuery) -> Tuple[List[Event], int]:
        """Return one page of events (newest first) and the total match count.

        With ``intervention_first`` events flagged for intervention sort ahead
        of the rest, then oldest first, before the page is cut.
        """
        pass

    @abstractmethod
    def find_stalled_events(self, updated_before: datetime, now: datetime, limit: int = 100) -> List[Event]:
        """Non-terminal, non-failed events untouched since ``updated_before`` and not leased."""
        pass

    @abstractmethod
    def find_synced_without_transaction(self, limit: int = 100) -> List[Event]:
        pass

    @abstractmethod
    def find_reversed_with_synced_event(self, limit: int = 100) -> List[Transaction]:
        """Reversed transactions whose event was never moved to REVERSED."""
        pass

    @abstractmethod
    def delete_terminal_events(self, older_than: datetime) -> int:
        """Purge synced/reversed events last updated before ``older_than``."""
        pass

    @abstractmethod
    def stats(self) -> StoreStats:
        pass

    # -------------------------------------------------------------------------
    # Leases
    # -------------------------------------------------------------------------

    @abstractmethod
    def acquire_lease(self, event_id: str, owner: str, expires_at: datetime, now: datetime) -> bool:
        """Take the per-event processing lease if free or expired."""
        pass

    @abstractmethod
    def release_lease(self, event_id: str, owner: str) -> None:
        pass

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    @abstractmethod
    def insert_transaction(self, transaction: Transaction) -> Transaction:
        """Insert a transaction.

        Raises:
            DuplicateKeyError: Transaction id, event id or document reference is taken.
        """
        pass

    @abstractmethod
    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        pass

    @abstractmethod
    def get_transaction_by_event(self, event_id: str) -> Optional[Transaction]:
        pass

    @abstractmethod
    def list_transactions(self, query: TransactionQuery) -> Tuple[List[Transaction], int]:
        pass

    @abstractmethod
    def mark_transaction_reversed(self, transaction_id: str, details: ReversalDetails) -> bool:
        """Flip ``reversed`` from False to True. Returns False if already reversed."""
        pass

    @abstractmethod
    def mark_transaction_verified(self, transaction_id: str, verified_by: str, verified_at: datetime) -> bool:
        pass

    @abstractmethod
    def transaction_stats(self) -> Dict[str, int]:
        """Counts keyed by total, reversed, unverified and per document category."""
        pass

    # -------------------------------------------------------------------------
    # Scheduled retries
    # -------------------------------------------------------------------------

    @abstractmethod
    def schedule_retry(self, event_id: str, not_before: datetime) -> None:
        """Create or replace the single pending retry for an event."""
        pass

    @abstractmethod
    def cancel_retry(self, event_id: str) -> bool:
        pass

    @abstractmethod
    def claim_retry(self, event_id: str) -> bool:
        """Remove the pending retry for an event. True if this caller claimed it."""
        pass

    @abstractmethod
    def claim_due_retries(self, now: datetime, limit: int = 50) -> List[ScheduledRetry]:
        """Atomically remove and return retries whose ``not_before`` has passed."""
        pass

    @abstractmethod
    def get_scheduled_retry(self, event_id: str) -> Optional[ScheduledRetry]:
        pass
