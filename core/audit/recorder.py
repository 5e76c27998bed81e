"""Audit entry recording and persistence.

Provides the append-only audit trail for every event transition, operator
action and configuration change. Supports multiple persistence backends;
queries are served by the first backend.
"""

import sqlite3
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from core.models.audit import (
    Actor,
    AuditAction,
    AuditCategory,
    AuditEntry,
    AuditResult,
    AuditResultStatus,
    AuditSeverity,
)
from core.models.events import utcnow
from core.observability.logging import get_logger

logger = get_logger(__name__)


def create_audit_entry(
    action: AuditAction,
    message: Optional[str] = None,
    severity: AuditSeverity = AuditSeverity.INFO,
    category: AuditCategory = AuditCategory.PROCESSING,
    actor: Optional[Actor] = None,
    event_id: Optional[str] = None,
    transaction_id: Optional[str] = None,
    before: Optional[Dict[str, Any]] = None,
    after: Optional[Dict[str, Any]] = None,
    result_status: AuditResultStatus = AuditResultStatus.SUCCESS,
    error_details: Optional[Dict[str, Any]] = None,
    details: Optional[Dict[str, Any]] = None,
    duration_ms: Optional[float] = None,
    timestamp: Optional[datetime] = None,
) -> AuditEntry:
    """Create a new audit entry with auto-generated ID and timestamp.

    Args:
        action: What happened
        message: Human-readable summary stored on the result
        severity: Entry severity
        category: Functional area
        actor: Who or what acted (defaults to the system actor)
        event_id: Event the entry belongs to
        transaction_id: Transaction the entry belongs to
        before: State before the change
        after: State after the change
        result_status: success, failure or warning
        error_details: Structured error information for failures
        details: Additional structured details
        duration_ms: Time the action took
        timestamp: Override for the entry time

    Returns:
        AuditEntry ready for recording
    """
    return AuditEntry(
        entry_id=str(uuid.uuid4()),
        action=action,
        category=category,
        severity=severity,
        actor=actor or Actor.system(),
        event_id=event_id,
        transaction_id=transaction_id,
        before=before,
        after=after,
        result=AuditResult(status=result_status, message=message, error_details=error_details),
        details=details or {},
        duration_ms=duration_ms,
        timestamp=timestamp or utcnow(),
    )


@dataclass
class AuditQuery:
    """Filters for audit queries. All filters combine with AND."""
    action: Optional[AuditAction] = None
    category: Optional[AuditCategory] = None
    severity: Optional[AuditSeverity] = None
    event_id: Optional[str] = None
    transaction_id: Optional[str] = None
    actor_id: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    limit: int = 100
    skip: int = 0


def _matches(entry: AuditEntry, query: AuditQuery) -> bool:
    if query.action and entry.action != query.action:
        return False
    if query.category and entry.category != query.category:
        return False
    if query.severity and entry.severity != query.severity:
        return False
    if query.event_id and entry.event_id != query.event_id:
        return False
    if query.transaction_id and entry.transaction_id != query.transaction_id:
        return False
    if query.actor_id and entry.actor.id != query.actor_id:
        return False
    if query.start_time and entry.timestamp < query.start_time:
        return False
    if query.end_time and entry.timestamp > query.end_time:
        return False
    return True


class AuditBackend(ABC):
    """Abstract base class for audit persistence backends."""

    @abstractmethod
    def append(self, entry: AuditEntry) -> None:
        """Persist an audit entry."""
        pass

    @abstractmethod
    def query(self, query: AuditQuery) -> List[AuditEntry]:
        """Entries matching the filters, newest first."""
        pass

    @abstractmethod
    def trail(self, event_id: str) -> List[AuditEntry]:
        """All entries for an event in the order they were written."""
        pass


class InMemoryAuditBackend(AuditBackend):
    """In-memory audit backend for testing."""

    def __init__(self):
        self._entries: List[AuditEntry] = []

    def append(self, entry: AuditEntry) -> None:
        self._entries.append(entry)

    def query(self, query: AuditQuery) -> List[AuditEntry]:
        results = [e for e in reversed(self._entries) if _matches(e, query)]
        return results[query.skip:query.skip + query.limit]

    def trail(self, event_id: str) -> List[AuditEntry]:
        return [e for e in self._entries if e.event_id == event_id]

    @property
    def entries(self) -> List[AuditEntry]:
        return list(self._entries)

    def clear(self) -> None:
        """Clear all entries (for testing)."""
        self._entries.clear()


def _ts(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class SQLiteAuditBackend(AuditBackend):
    """Audit backend storing entries in the pipeline database."""

    def __init__(self, db_path: Union[str, Path]):
        self.db_path = str(db_path)
        conn = sqlite3.connect(self.db_path)
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS audit_entries (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    entry_id TEXT NOT NULL UNIQUE,
                    action TEXT NOT NULL,
                    category TEXT NOT NULL,
                    severity TEXT NOT NULL,
                    actor_id TEXT,
                    event_id TEXT,
                    transaction_id TEXT,
                    timestamp TEXT NOT NULL,
                    body TEXT NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_event ON audit_entries(event_id, seq)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_time ON audit_entries(timestamp)")
            conn.commit()
        finally:
            conn.close()

    def append(self, entry: AuditEntry) -> None:
        conn = sqlite3.connect(self.db_path)
        try:
            conn.execute(
                """
                INSERT INTO audit_entries (entry_id, action, category, severity, actor_id,
                                           event_id, transaction_id, timestamp, body)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.entry_id,
                    entry.action.value,
                    entry.category.value,
                    entry.severity.value,
                    entry.actor.id,
                    entry.event_id,
                    entry.transaction_id,
                    _ts(entry.timestamp),
                    entry.model_dump_json(),
                ),
            )
            conn.commit()
        finally:
            conn.close()

    def query(self, query: AuditQuery) -> List[AuditEntry]:
        clauses = []
        params: list = []
        for column, value in (
            ("action", query.action.value if query.action else None),
            ("category", query.category.value if query.category else None),
            ("severity", query.severity.value if query.severity else None),
            ("event_id", query.event_id),
            ("transaction_id", query.transaction_id),
            ("actor_id", query.actor_id),
        ):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)
        if query.start_time:
            clauses.append("timestamp >= ?")
            params.append(_ts(query.start_time))
        if query.end_time:
            clauses.append("timestamp <= ?")
            params.append(_ts(query.end_time))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        conn = sqlite3.connect(self.db_path)
        try:
            rows = conn.execute(
                f"SELECT body FROM audit_entries {where} ORDER BY seq DESC LIMIT ? OFFSET ?",
                params + [query.limit, query.skip],
            ).fetchall()
        finally:
            conn.close()
        return [AuditEntry.model_validate_json(r[0]) for r in rows]

    def trail(self, event_id: str) -> List[AuditEntry]:
        conn = sqlite3.connect(self.db_path)
        try:
            rows = conn.execute(
                "SELECT body FROM audit_entries WHERE event_id = ? ORDER BY seq", (event_id,)
            ).fetchall()
        finally:
            conn.close()
        return [AuditEntry.model_validate_json(r[0]) for r in rows]


class AuditRecorder:
    """Main audit recorder that supports multiple backends.

    Usage:
        recorder = AuditRecorder()
        recorder.add_backend(SQLiteAuditBackend("event_pipeline.db"))

        recorder.log_info(
            AuditAction.EVENT_RECEIVED,
            "Webhook accepted",
            event_id="evt_123",
        )
    """

    def __init__(self, backends: Optional[List[AuditBackend]] = None):
        self._backends: List[AuditBackend] = list(backends or [])

    def add_backend(self, backend: AuditBackend) -> None:
        """Add an audit backend."""
        self._backends.append(backend)

    def record(self, entry: AuditEntry) -> AuditEntry:
        """Write the entry to all backends."""
        for backend in self._backends:
            try:
                backend.append(entry)
            except Exception:
                # Audit failures are logged, never allowed to break processing
                logger.exception(
                    f"Audit write failed for backend {type(backend).__name__}",
                    extra_fields={"entry_id": entry.entry_id, "action": entry.action.value},
                )
        return entry

    def log_info(self, action: AuditAction, message: str, **kwargs) -> AuditEntry:
        """Record an INFO level entry."""
        return self.record(create_audit_entry(action, message, AuditSeverity.INFO, **kwargs))

    def log_warning(self, action: AuditAction, message: str, **kwargs) -> AuditEntry:
        """Record a WARNING level entry."""
        return self.record(create_audit_entry(action, message, AuditSeverity.WARNING, **kwargs))

    def log_error(self, action: AuditAction, message: str, **kwargs) -> AuditEntry:
        """Record an ERROR level entry."""
        return self.record(create_audit_entry(action, message, AuditSeverity.ERROR, **kwargs))

    def log_critical(self, action: AuditAction, message: str, **kwargs) -> AuditEntry:
        return self.record(create_audit_entry(action, message, AuditSeverity.CRITICAL, **kwargs))

    def query(self, query: Optional[AuditQuery] = None) -> List[AuditEntry]:
        """Query entries (served by the first backend)."""
        if not self._backends:
            return []
        return self._backends[0].query(query or AuditQuery())

    def trail(self, event_id: str) -> List[AuditEntry]:
        if not self._backends:
            return []
        return self._backends[0].trail(event_id)

    def critical_since(self, since: datetime, limit: int = 100) -> List[AuditEntry]:
        """Entries at ERROR or CRITICAL severity since a point in time."""
        entries = []
        for severity in (AuditSeverity.CRITICAL, AuditSeverity.ERROR):
            entries.extend(self.query(AuditQuery(severity=severity, start_time=since, limit=limit)))
        entries.sort(key=lambda e: e.timestamp, reverse=True)
        return entries[:limit]
