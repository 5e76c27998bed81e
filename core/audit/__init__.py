"""Core audit module - append-only audit trail and persistence."""

from core.audit.recorder import (
    AuditBackend,
    AuditQuery,
    AuditRecorder,
    InMemoryAuditBackend,
    SQLiteAuditBackend,
    create_audit_entry,
)

__all__ = [
    "AuditBackend",
    "AuditQuery",
    "AuditRecorder",
    "InMemoryAuditBackend",
    "SQLiteAuditBackend",
    "create_audit_entry",
]
