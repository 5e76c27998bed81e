"""SQLite event store.

Each entity is stored as a JSON body alongside the indexed columns used for
filtering and for the guarded updates (idempotency key, version, lease,
reversed flag). A short-lived connection is opened per call.
"""

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Tuple, Union

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


def _ts(value: datetime) -> str:
    """Fixed-width UTC timestamp so string comparison matches time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _parse_ts(value: str) -> datetime:
    return datetime.strptime(value, "%Y-%m-%dT%H:%M:%S.%fZ").replace(tzinfo=timezone.utc)


def init_db(db_path: Union[str, Path]) -> None:
    """Create pipeline tables if they don't exist."""
    conn = sqlite3.connect(str(db_path))
    try:
        cursor = conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS events (
                event_id TEXT PRIMARY KEY,
                idempotency_key TEXT NOT NULL UNIQUE,
                event_type TEXT NOT NULL,
                status TEXT NOT NULL,
                version INTEGER NOT NULL DEFAULT 1,
                requires_intervention INTEGER NOT NULL DEFAULT 0,
                received_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                lease_owner TEXT,
                lease_expires_at TEXT,
                body TEXT NOT NULL
            )
        """)
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_events_status ON events(status, updated_at)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_events_received ON events(received_at)")
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS transactions (
                transaction_id TEXT PRIMARY KEY,
                event_id TEXT NOT NULL UNIQUE,
                document_reference TEXT NOT NULL UNIQUE,
                event_type TEXT NOT NULL,
                document_category TEXT NOT NULL,
                reversed INTEGER NOT NULL DEFAULT 0,
                verified INTEGER NOT NULL DEFAULT 0,
                posting_date TEXT NOT NULL,
                body TEXT NOT NULL
            )
        """)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS scheduled_retries (
                event_id TEXT PRIMARY KEY,
                not_before TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
        """)
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_retries_due ON scheduled_retries(not_before)")
        conn.commit()
    finally:
        conn.close()


class SQLiteEventStore(EventStore):
    """Event store backed by a SQLite file."""

    def __init__(self, db_path: Union[str, Path], clock: Callable[[], datetime] = utcnow):
        self.clock = clock
        self.db_path = str(db_path)
        init_db(self.db_path)

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # =========================================================================
    # Events
    # =========================================================================

    def insert_event(self, event: Event) -> Event:
        stored = event.model_copy(deep=True)
        stored.version = 1
        try:
            with self._connection() as conn:
                conn.execute(
                    """
                    INSERT INTO events (event_id, idempotency_key, event_type, status, version,
                                        requires_intervention, received_at, updated_at, body)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        stored.event_id,
                        stored.idempotency_key,
                        stored.event_type.value,
                        stored.status.value,
                        stored.version,
                        int(stored.requires_intervention),
                        _ts(stored.received_at),
                        _ts(stored.updated_at),
                        stored.model_dump_json(),
                    ),
                )
        except sqlite3.IntegrityError as e:
            existing = self.get_event_by_key(event.idempotency_key)
            raise DuplicateKeyError(
                f"Event rejected by unique constraint: {e}",
                existing_id=existing.event_id if existing else event.event_id,
            ) from e
        return stored

    def get_event(self, event_id: str) -> Optional[Event]:
        with self._connection() as conn:
            row = conn.execute("SELECT body FROM events WHERE event_id = ?", (event_id,)).fetchone()
        return Event.model_validate_json(row["body"]) if row else None

    def get_event_by_key(self, idempotency_key: str) -> Optional[Event]:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT body FROM events WHERE idempotency_key = ?", (idempotency_key,)
            ).fetchone()
        return Event.model_validate_json(row["body"]) if row else None

    def save_event(self, event: Event) -> Event:
        stored = event.model_copy(deep=True)
        stored.version = event.version + 1
        stored.updated_at = self.clock()
        with self._connection() as conn:
            cursor = conn.execute(
                """
                UPDATE events
                SET status = ?, version = ?, requires_intervention = ?, updated_at = ?, body = ?
                WHERE event_id = ? AND version = ?
                """,
                (
                    stored.status.value,
                    stored.version,
                    int(stored.requires_intervention),
                    _ts(stored.updated_at),
                    stored.model_dump_json(),
                    event.event_id,
                    event.version,
                ),
            )
            if cursor.rowcount != 1:
                raise StaleRecordError(
                    f"Event {event.event_id} changed or vanished (expected v{event.version})"
                )
        return stored

    def list_events(self, query: EventQuery) -> Tuple[List[Event], int]:
        clauses = []
        params: list = []
        if query.status:
            clauses.append("status = ?")
            params.append(query.status.value)
        if query.event_type:
            clauses.append("event_type = ?")
            params.append(query.event_type.value)
        if query.start_date:
            clauses.append("received_at >= ?")
            params.append(_ts(query.start_date))
        if query.end_date:
            clauses.append("received_at <= ?")
            params.append(_ts(query.end_date))
        if query.requires_intervention is not None:
            clauses.append("requires_intervention = ?")
            params.append(int(query.requires_intervention))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        if query.intervention_first:
            order = "requires_intervention DESC, updated_at ASC"
        else:
            order = "received_at DESC"

        with self._connection() as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM events {where}", params).fetchone()[0]
            rows = conn.execute(
                f"SELECT body FROM events {where} ORDER BY {order} LIMIT ? OFFSET ?",
                params + [query.limit, query.skip],
            ).fetchall()
        return [Event.model_validate_json(r["body"]) for r in rows], total

    def find_stalled_events(self, updated_before: datetime, now: datetime, limit: int = 100) -> List[Event]:
        active = [s.value for s in EventStatus if s.is_active]
        placeholders = ",".join("?" for _ in active)
        with self._connection() as conn:
            rows = conn.execute(
                f"""
                SELECT body FROM events
                WHERE status IN ({placeholders})
                  AND updated_at < ?
                  AND (lease_expires_at IS NULL OR lease_expires_at <= ?)
                ORDER BY updated_at
                LIMIT ?
                """,
                active + [_ts(updated_before), _ts(now), limit],
            ).fetchall()
        return [Event.model_validate_json(r["body"]) for r in rows]

    def find_synced_without_transaction(self, limit: int = 100) -> List[Event]:
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT e.body FROM events e
                LEFT JOIN transactions t ON t.event_id = e.event_id
                WHERE e.status = ? AND t.transaction_id IS NULL
                LIMIT ?
                """,
                (EventStatus.SYNCED.value, limit),
            ).fetchall()
        return [Event.model_validate_json(r["body"]) for r in rows]

    def find_reversed_with_synced_event(self, limit: int = 100) -> List[Transaction]:
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT t.body FROM transactions t
                JOIN events e ON e.event_id = t.event_id
                WHERE t.reversed = 1 AND e.status = ?
                LIMIT ?
                """,
                (EventStatus.SYNCED.value, limit),
            ).fetchall()
        return [Transaction.model_validate_json(r["body"]) for r in rows]

    def delete_terminal_events(self, older_than: datetime) -> int:
        terminal = [EventStatus.SYNCED.value, EventStatus.REVERSED.value]
        with self._connection() as conn:
            conn.execute(
                """
                DELETE FROM scheduled_retries WHERE event_id IN (
                    SELECT event_id FROM events WHERE status IN (?, ?) AND updated_at < ?
                )
                """,
                terminal + [_ts(older_than)],
            )
            cursor = conn.execute(
                "DELETE FROM events WHERE status IN (?, ?) AND updated_at < ?",
                terminal + [_ts(older_than)],
            )
            return cursor.rowcount

    def stats(self) -> StoreStats:
        stats = StoreStats()
        with self._connection() as conn:
            for row in conn.execute("SELECT status, COUNT(*) AS n FROM events GROUP BY status"):
                stats.events_by_status[row["status"]] = row["n"]
            for row in conn.execute("SELECT event_type, COUNT(*) AS n FROM events GROUP BY event_type"):
                stats.events_by_type[row["event_type"]] = row["n"]
            stats.pending_retries = conn.execute("SELECT COUNT(*) FROM scheduled_retries").fetchone()[0]
        return stats

    # =========================================================================
    # Leases
    # =========================================================================

    def acquire_lease(self, event_id: str, owner: str, expires_at: datetime, now: datetime) -> bool:
        with self._connection() as conn:
            cursor = conn.execute(
                """
                UPDATE events SET lease_owner = ?, lease_expires_at = ?
                WHERE event_id = ?
                  AND (lease_owner IS NULL OR lease_owner = ? OR lease_expires_at <= ?)
                """,
                (owner, _ts(expires_at), event_id, owner, _ts(now)),
            )
            return cursor.rowcount == 1

    def release_lease(self, event_id: str, owner: str) -> None:
        with self._connection() as conn:
            conn.execute(
                """
                UPDATE events SET lease_owner = NULL, lease_expires_at = NULL
                WHERE event_id = ? AND lease_owner = ?
                """,
                (event_id, owner),
            )

    # =========================================================================
    # Transactions
    # =========================================================================

    def insert_transaction(self, transaction: Transaction) -> Transaction:
        try:
            with self._connection() as conn:
                conn.execute(
                    """
                    INSERT INTO transactions (transaction_id, event_id, document_reference, event_type,
                                              document_category, reversed, verified, posting_date, body)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        transaction.transaction_id,
                        transaction.event_id,
                        transaction.document_reference,
                        transaction.event_type.value,
                        transaction.document_category.value,
                        int(transaction.reversed),
                        int(transaction.verified),
                        _ts(transaction.posting_date),
                        transaction.model_dump_json(),
                    ),
                )
        except sqlite3.IntegrityError as e:
            raise DuplicateKeyError(f"Transaction rejected by unique constraint: {e}") from e
        return transaction

    def _load_transaction(self, conn: sqlite3.Connection, where: str, value: str) -> Optional[Transaction]:
        row = conn.execute(f"SELECT body FROM transactions WHERE {where} = ?", (value,)).fetchone()
        return Transaction.model_validate_json(row["body"]) if row else None

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        with self._connection() as conn:
            return self._load_transaction(conn, "transaction_id", transaction_id)

    def get_transaction_by_event(self, event_id: str) -> Optional[Transaction]:
        with self._connection() as conn:
            return self._load_transaction(conn, "event_id", event_id)

    def list_transactions(self, query: TransactionQuery) -> Tuple[List[Transaction], int]:
        clauses = []
        params: list = []
        if query.event_type:
            clauses.append("event_type = ?")
            params.append(query.event_type.value)
        if query.reversed is not None:
            clauses.append("reversed = ?")
            params.append(int(query.reversed))
        if query.verified is not None:
            clauses.append("verified = ?")
            params.append(int(query.verified))
        if query.start_date:
            clauses.append("posting_date >= ?")
            params.append(_ts(query.start_date))
        if query.end_date:
            clauses.append("posting_date <= ?")
            params.append(_ts(query.end_date))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._connection() as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM transactions {where}", params).fetchone()[0]
            rows = conn.execute(
                f"SELECT body FROM transactions {where} ORDER BY posting_date DESC LIMIT ? OFFSET ?",
                params + [query.limit, query.skip],
            ).fetchall()
        return [Transaction.model_validate_json(r["body"]) for r in rows], total

    def mark_transaction_reversed(self, transaction_id: str, details: ReversalDetails) -> bool:
        with self._connection() as conn:
            txn = self._load_transaction(conn, "transaction_id", transaction_id)
            if txn is None or txn.reversed:
                return False
            txn.reversed = True
            txn.status = TransactionStatus.REVERSED
            txn.reversal = details
            txn.updated_at = self.clock()
            cursor = conn.execute(
                "UPDATE transactions SET reversed = 1, body = ? WHERE transaction_id = ? AND reversed = 0",
                (txn.model_dump_json(), transaction_id),
            )
            return cursor.rowcount == 1

    def mark_transaction_verified(self, transaction_id: str, verified_by: str, verified_at: datetime) -> bool:
        with self._connection() as conn:
            txn = self._load_transaction(conn, "transaction_id", transaction_id)
            if txn is None:
                return False
            txn.verified = True
            txn.verified_by = verified_by
            txn.verified_at = verified_at
            txn.updated_at = self.clock()
            conn.execute(
                "UPDATE transactions SET verified = 1, body = ? WHERE transaction_id = ?",
                (txn.model_dump_json(), transaction_id),
            )
            return True

    def transaction_stats(self) -> Dict[str, int]:
        with self._connection() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS total,
                       COALESCE(SUM(reversed), 0) AS reversed,
                       COALESCE(SUM(CASE WHEN verified = 0 THEN 1 ELSE 0 END), 0) AS unverified
                FROM transactions
                """
            ).fetchone()
            counts = {"total": row["total"], "reversed": row["reversed"], "unverified": row["unverified"]}
            for cat in conn.execute(
                "SELECT document_category, COUNT(*) AS n FROM transactions GROUP BY document_category"
            ):
                counts[cat["document_category"]] = cat["n"]
        return counts

    # =========================================================================
    # Scheduled retries
    # =========================================================================

    def schedule_retry(self, event_id: str, not_before: datetime) -> None:
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO scheduled_retries (event_id, not_before, created_at) VALUES (?, ?, ?)
                ON CONFLICT(event_id) DO UPDATE SET not_before = excluded.not_before,
                                                   created_at = excluded.created_at
                """,
                (event_id, _ts(not_before), _ts(self.clock())),
            )

    def cancel_retry(self, event_id: str) -> bool:
        with self._connection() as conn:
            cursor = conn.execute("DELETE FROM scheduled_retries WHERE event_id = ?", (event_id,))
            return cursor.rowcount == 1

    def claim_retry(self, event_id: str) -> bool:
        return self.cancel_retry(event_id)

    def claim_due_retries(self, now: datetime, limit: int = 50) -> List[ScheduledRetry]:
        claimed = []
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT event_id, not_before, created_at FROM scheduled_retries "
                "WHERE not_before <= ? ORDER BY not_before LIMIT ?",
                (_ts(now), limit),
            ).fetchall()
            for row in rows:
                # Another poller may have claimed the row between SELECT and DELETE.
                cursor = conn.execute(
                    "DELETE FROM scheduled_retries WHERE event_id = ? AND not_before = ?",
                    (row["event_id"], row["not_before"]),
                )
                if cursor.rowcount == 1:
                    claimed.append(ScheduledRetry(
                        event_id=row["event_id"],
                        not_before=_parse_ts(row["not_before"]),
                        created_at=_parse_ts(row["created_at"]),
                    ))
        return claimed

    def get_scheduled_retry(self, event_id: str) -> Optional[ScheduledRetry]:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT event_id, not_before, created_at FROM scheduled_retries WHERE event_id = ?",
                (event_id,),
            ).fetchone()
        if not row:
            return None
        return ScheduledRetry(
            event_id=row["event_id"],
            not_before=_parse_ts(row["not_before"]),
            created_at=_parse_ts(row["created_at"]),
        )
