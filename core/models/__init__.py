"""Domain models - events, documents, transactions and audit entries."""

from core.models.events import (
    Event,
    EventError,
    EventStatus,
    EventType,
    ErrorType,
    ReversalInfo,
    SyncResult,
    ValidationIssue,
    ValidationResult,
    WebhookMetadata,
    utcnow,
)
from core.models.documents import (
    DocumentCategory,
    ExternalDocument,
    FinancialSnapshot,
    InventoryLine,
    InventorySnapshot,
    SubmissionResult,
)
from core.models.transactions import (
    ReversalDetails,
    Transaction,
    TransactionStatus,
    transaction_id_for,
)
from core.models.audit import (
    Actor,
    ActorType,
    AuditAction,
    AuditCategory,
    AuditEntry,
    AuditResult,
    AuditResultStatus,
    AuditSeverity,
)

__all__ = [
    # Events
    "Event",
    "EventError",
    "EventStatus",
    "EventType",
    "ErrorType",
    "ReversalInfo",
    "SyncResult",
    "ValidationIssue",
    "ValidationResult",
    "WebhookMetadata",
    "utcnow",
    # Documents
    "DocumentCategory",
    "ExternalDocument",
    "FinancialSnapshot",
    "InventoryLine",
    "InventorySnapshot",
    "SubmissionResult",
    # Transactions
    "ReversalDetails",
    "Transaction",
    "TransactionStatus",
    "transaction_id_for",
    # Audit
    "Actor",
    "ActorType",
    "AuditAction",
    "AuditCategory",
    "AuditEntry",
    "AuditResult",
    "AuditResultStatus",
    "AuditSeverity",
]
