"""Audit trail models.

Audit entries are append-only. Every event status transition produces
exactly one entry; operator actions and administrative changes add their
own entries alongside.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from core.models.events import utcnow


class AuditAction(str, Enum):
    """Standard audit actions."""
    # Event lifecycle
    EVENT_RECEIVED = "event.received"
    EVENT_DUPLICATE = "event.duplicate"
    EVENT_VALIDATED = "event.validated"
    EVENT_TRANSFORMED = "event.transformed"
    EVENT_SYNCED = "event.synced"
    EVENT_FAILED = "event.failed"
    EVENT_RETRIED = "event.retried"
    EVENT_REVERSED = "event.reversed"

    # Transactions
    TRANSACTION_CREATED = "transaction.created"
    TRANSACTION_REVERSAL_FAILED = "transaction.reversal_failed"
    TRANSACTION_VERIFIED = "transaction.verified"

    # Administration
    CONFIG_UPDATED = "config.updated"
    WEBHOOK_REJECTED = "webhook.rejected"
    SYSTEM_ERROR = "system.error"
    MAINTENANCE = "system.maintenance"


class AuditCategory(str, Enum):
    WEBHOOK = "webhook"
    PROCESSING = "processing"
    SYNC = "sync"
    REVERSAL = "reversal"
    ADMIN = "admin"
    SECURITY = "security"
    SYSTEM = "system"


class AuditSeverity(str, Enum):
    """Severity levels for audit entries."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ActorType(str, Enum):
    SYSTEM = "system"
    SCHEDULER = "scheduler"
    OPERATOR = "operator"
    WEBHOOK = "webhook"


class Actor(BaseModel):
    """Who or what performed an action."""
    type: ActorType = ActorType.SYSTEM
    id: str = "system"
    name: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def system(cls) -> "Actor":
        return cls(type=ActorType.SYSTEM, id="system", name="Pipeline")

    @classmethod
    def scheduler(cls) -> "Actor":
        return cls(type=ActorType.SCHEDULER, id="retry-scheduler", name="Retry scheduler")

    @classmethod
    def webhook(cls, ip_address: Optional[str] = None, user_agent: Optional[str] = None) -> "Actor":
        return cls(
            type=ActorType.WEBHOOK,
            id="webhook",
            name="Source webhook",
            ip_address=ip_address,
            user_agent=user_agent,
        )

    @classmethod
    def operator(cls, operator_id: str, name: Optional[str] = None) -> "Actor":
        return cls(type=ActorType.OPERATOR, id=operator_id, name=name or operator_id)

    @property
    def label(self) -> str:
        return f"{self.type.value}:{self.id}"


class AuditResultStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    WARNING = "warning"


class AuditResult(BaseModel):
    status: AuditResultStatus = AuditResultStatus.SUCCESS
    message: Optional[str] = None
    error_details: Optional[dict[str, Any]] = None


class AuditEntry(BaseModel):
    """One append-only audit record.

    ``before`` and ``after`` hold the state change, typically
    ``{"status": ...}`` for event transitions.
    """
    entry_id: str
    action: AuditAction
    category: AuditCategory = AuditCategory.PROCESSING
    severity: AuditSeverity = AuditSeverity.INFO
    actor: Actor = Field(default_factory=Actor.system)

    event_id: Optional[str] = None
    transaction_id: Optional[str] = None

    before: Optional[dict[str, Any]] = None
    after: Optional[dict[str, Any]] = None
    result: AuditResult = Field(default_factory=AuditResult)
    details: dict[str, Any] = Field(default_factory=dict)

    duration_ms: Optional[float] = None
    timestamp: datetime = Field(default_factory=utcnow)
