"""Reconciliation engine for the event pipeline.

Periodic consistency pass over the store. Each check reports what it found
and, where the repair is safe, fixes it:

- MISSING_TXN: synced events with no transaction record (crash between the
  sync and the transaction insert). The transaction is rebuilt from the
  event's document and sync result.
- REVERSAL_DRIFT: reversed transactions whose event is still synced (the
  event save failed after the credit note was posted). The event is moved to
  reversed from the transaction's reversal record.
- STALLED: events left in received/validated/transformed with no live lease.
  They are resumed.
- LOST_RETRY: failed events with a retry time but no pending retry record.
  The retry is rescheduled immediately.
- UNVERIFIED: transactions nobody has verified against the ERP yet.
- RETENTION: synced and reversed events past the retention window, purged
  when requested.

Exposes:
- ReconciliationEngine(...).run() -> ReconciliationReport
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from core.audit import AuditRecorder, create_audit_entry
from core.config import PipelineConfig
from core.models import (
    Actor,
    AuditAction,
    AuditCategory,
    AuditSeverity,
    Event,
    EventStatus,
    ExternalDocument,
    ReversalInfo,
    SubmissionResult,
    DocumentCategory,
    Transaction,
    utcnow,
)
from core.observability import get_logger
from core.storage import (
    ConfigStore,
    DuplicateKeyError,
    EventQuery,
    EventStore,
    StaleRecordError,
    TransactionQuery,
)
from pipeline.errors import EventBusy
from pipeline.orchestrator import PipelineOrchestrator, build_transaction, event_lease

logger = get_logger(__name__)

STALL_THRESHOLD = timedelta(minutes=10)
BATCH_SIZE = 100
LEASE_TTL_SECONDS = 60


# =============================================================================
# Data Structures
# =============================================================================

class Severity(str, Enum):
    BLOCK = "BLOCK"
    WARN = "WARN"
    INFO = "INFO"


class CheckStatus(str, Enum):
    PASS = "PASS"
    WARN = "WARN"
    FAIL = "FAIL"


class CheckResult:
    """Result of a single reconciliation check."""

    def __init__(
        self,
        check_id: str,
        severity: Severity,
        passed: bool,
        message: str,
        evidence: Optional[Dict] = None,
    ):
        self.check_id = check_id
        self.severity = severity
        self.passed = passed
        self.message = message
        self.evidence = evidence or {}

    def to_dict(self) -> Dict:
        return {
            "check_id": self.check_id,
            "severity": self.severity.value,
            "passed": self.passed,
            "message": self.message,
            "evidence": self.evidence,
        }


@dataclass
class ReconciliationReport:
    started_at: datetime
    finished_at: Optional[datetime] = None
    checks: List[CheckResult] = field(default_factory=list)
    repaired_transactions: List[str] = field(default_factory=list)
    repaired_reversals: List[str] = field(default_factory=list)
    resumed_events: List[str] = field(default_factory=list)
    rescheduled_retries: List[str] = field(default_factory=list)
    purged_events: int = 0

    @property
    def status(self) -> CheckStatus:
        failed = [c for c in self.checks if not c.passed]
        if any(c.severity == Severity.BLOCK for c in failed):
            return CheckStatus.FAIL
        if failed:
            return CheckStatus.WARN
        return CheckStatus.PASS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "checks": [c.to_dict() for c in self.checks],
            "repaired_transactions": self.repaired_transactions,
            "repaired_reversals": self.repaired_reversals,
            "resumed_events": self.resumed_events,
            "rescheduled_retries": self.rescheduled_retries,
            "purged_events": self.purged_events,
        }


# =============================================================================
# Engine
# =============================================================================

class ReconciliationEngine:
    def __init__(
        self,
        store: EventStore,
        audit: AuditRecorder,
        orchestrator: Optional[PipelineOrchestrator] = None,
        config_store: Optional[ConfigStore] = None,
        folder: Optional[str] = None,
        company: Optional[str] = None,
        stall_threshold: timedelta = STALL_THRESHOLD,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.audit = audit
        self.orchestrator = orchestrator
        self.config_store = config_store
        self.folder = folder
        self.company = company
        self.stall_threshold = stall_threshold
        self.clock = clock

    async def run(self, purge: bool = False, actor: Optional[Actor] = None) -> ReconciliationReport:
        actor = actor or Actor.system()
        report = ReconciliationReport(started_at=self.clock())

        report.checks.append(self.repair_missing_transactions(report, actor))
        report.checks.append(self.repair_reversal_drift(report, actor))
        report.checks.append(await self.resume_stalled(report))
        report.checks.append(self.reschedule_lost_retries(report))
        report.checks.append(self.check_unverified())
        report.checks.append(self.apply_retention(report, purge))

        report.finished_at = self.clock()
        self.audit.record(create_audit_entry(
            AuditAction.MAINTENANCE,
            f"Reconciliation finished with status {report.status.value}",
            AuditSeverity.INFO if report.status == CheckStatus.PASS else AuditSeverity.WARNING,
            category=AuditCategory.SYSTEM,
            actor=actor,
            details={
                "checks": {c.check_id: c.passed for c in report.checks},
                "repaired_transactions": len(report.repaired_transactions),
                "repaired_reversals": len(report.repaired_reversals),
                "resumed_events": len(report.resumed_events),
                "rescheduled_retries": len(report.rescheduled_retries),
                "purged_events": report.purged_events,
            },
            timestamp=report.finished_at,
        ))
        logger.info(f"Reconciliation {report.status.value}: {len(report.checks)} checks")
        return report

    # =========================================================================
    # Checks
    # =========================================================================

    def repair_missing_transactions(self, report: ReconciliationReport, actor: Actor) -> CheckResult:
        events = self.store.find_synced_without_transaction(limit=BATCH_SIZE)
        failed: Dict[str, str] = {}
        for event in events:
            try:
                transaction_id = self._rebuild_transaction(event, actor)
            except (DuplicateKeyError, ValueError) as e:
                failed[event.event_id] = str(e)
                logger.error(f"Could not rebuild transaction for {event.event_id}: {e}")
                continue
            report.repaired_transactions.append(transaction_id)

        if not events:
            return CheckResult("MISSING_TXN", Severity.BLOCK, True, "Every synced event has a transaction")
        return CheckResult(
            "MISSING_TXN",
            Severity.BLOCK,
            not failed,
            f"{len(events)} synced event(s) had no transaction; {len(report.repaired_transactions)} repaired",
            {"repaired": list(report.repaired_transactions), "failed": failed},
        )

    def _rebuild_transaction(self, event: Event, actor: Actor) -> str:
        if event.sync_result is None or event.transformed_payload is None:
            raise ValueError("event has no sync result or document to rebuild from")

        document = ExternalDocument.model_validate(event.transformed_payload)
        result = SubmissionResult(
            document_reference=event.sync_result.document_reference,
            document_category=DocumentCategory(event.sync_result.document_category),
            raw_response=event.sync_result.response,
        )
        transaction = build_transaction(event, document, result, self.folder, self.company)
        self.store.insert_transaction(transaction)
        self.audit.record(create_audit_entry(
            AuditAction.TRANSACTION_CREATED,
            f"Transaction {transaction.transaction_id} rebuilt by reconciliation",
            AuditSeverity.WARNING,
            category=AuditCategory.SYNC,
            actor=actor,
            event_id=event.event_id,
            transaction_id=transaction.transaction_id,
            details={"repaired": True, "document_reference": transaction.document_reference},
            timestamp=self.clock(),
        ))
        logger.warning(f"Rebuilt missing transaction {transaction.transaction_id}")
        return transaction.transaction_id

    def repair_reversal_drift(self, report: ReconciliationReport, actor: Actor) -> CheckResult:
        transactions = self.store.find_reversed_with_synced_event(limit=BATCH_SIZE)
        failed: Dict[str, str] = {}
        for transaction in transactions:
            try:
                moved = self._finish_reversal(transaction, actor)
            except (EventBusy, StaleRecordError) as e:
                failed[transaction.event_id] = str(e)
                logger.error(f"Could not finish reversal of {transaction.transaction_id}: {e}")
                continue
            if moved:
                report.repaired_reversals.append(transaction.event_id)

        if not transactions:
            return CheckResult(
                "REVERSAL_DRIFT", Severity.BLOCK, True, "Every reversed transaction has a reversed event"
            )
        return CheckResult(
            "REVERSAL_DRIFT",
            Severity.BLOCK,
            not failed,
            f"{len(transactions)} reversed transaction(s) had a synced event; "
            f"{len(report.repaired_reversals)} repaired",
            {"repaired": list(report.repaired_reversals), "failed": failed},
        )

    def _finish_reversal(self, transaction: Transaction, actor: Actor) -> bool:
        reversal = transaction.reversal
        with event_lease(self.store, transaction.event_id, LEASE_TTL_SECONDS, self.clock()):
            event = self.store.get_event(transaction.event_id)
            if event is None or event.status != EventStatus.SYNCED:
                return False
            event.reversal = ReversalInfo(
                reason=reversal.reason,
                transaction_id=transaction.transaction_id,
                reversal_document_reference=reversal.reversal_document_reference,
                reversed_by=reversal.reversed_by,
                reversed_at=reversal.reversed_at,
            )
            event.status = EventStatus.REVERSED
            self.store.save_event(event)

        self.audit.record(create_audit_entry(
            AuditAction.EVENT_REVERSED,
            reversal.reason,
            AuditSeverity.WARNING,
            category=AuditCategory.REVERSAL,
            actor=actor,
            event_id=transaction.event_id,
            transaction_id=transaction.transaction_id,
            before={"status": EventStatus.SYNCED.value, "reversed": True},
            after={"status": EventStatus.REVERSED.value, "reversed": True},
            details={
                "repaired": True,
                "original_reference": transaction.document_reference,
                "reversal_reference": reversal.reversal_document_reference,
                "reversed_by": reversal.reversed_by,
            },
            timestamp=self.clock(),
        ))
        logger.warning(f"Moved event {transaction.event_id} to reversed after a partial reversal")
        return True

    async def resume_stalled(self, report: ReconciliationReport) -> CheckResult:
        now = self.clock()
        stalled = self.store.find_stalled_events(now - self.stall_threshold, now, limit=BATCH_SIZE)
        if not stalled:
            return CheckResult("STALLED", Severity.WARN, True, "No stalled events")
        if self.orchestrator is None:
            return CheckResult(
                "STALLED",
                Severity.WARN,
                False,
                f"{len(stalled)} stalled event(s) found; no orchestrator to resume them",
                {"event_ids": [e.event_id for e in stalled]},
            )

        outcomes: Dict[str, str] = {}
        for event in stalled:
            try:
                outcome = await self.orchestrator.resume(event.event_id)
            except EventBusy:
                outcomes[event.event_id] = "busy"
                continue
            outcomes[event.event_id] = outcome.status.value
            report.resumed_events.append(event.event_id)

        return CheckResult(
            "STALLED",
            Severity.WARN,
            True,
            f"Resumed {len(report.resumed_events)} of {len(stalled)} stalled event(s)",
            {"outcomes": outcomes},
        )

    def reschedule_lost_retries(self, report: ReconciliationReport) -> CheckResult:
        now = self.clock()
        events, _ = self.store.list_events(EventQuery(
            status=EventStatus.FAILED,
            requires_intervention=False,
            limit=BATCH_SIZE,
        ))
        for event in events:
            if event.next_retry_at is None:
                continue
            if self.store.get_scheduled_retry(event.event_id) is not None:
                continue
            self.store.schedule_retry(event.event_id, max(event.next_retry_at, now))
            report.rescheduled_retries.append(event.event_id)

        if not report.rescheduled_retries:
            return CheckResult("LOST_RETRY", Severity.WARN, True, "All pending retries are scheduled")
        logger.warning(f"Rescheduled {len(report.rescheduled_retries)} lost retries")
        return CheckResult(
            "LOST_RETRY",
            Severity.WARN,
            False,
            f"Rescheduled {len(report.rescheduled_retries)} retry record(s)",
            {"event_ids": list(report.rescheduled_retries)},
        )

    def check_unverified(self) -> CheckResult:
        _, total = self.store.list_transactions(TransactionQuery(verified=False, reversed=False, limit=1))
        if total == 0:
            return CheckResult("UNVERIFIED", Severity.INFO, True, "All transactions verified")
        return CheckResult(
            "UNVERIFIED",
            Severity.INFO,
            False,
            f"{total} transaction(s) awaiting verification",
            {"count": total},
        )

    def apply_retention(self, report: ReconciliationReport, purge: bool) -> CheckResult:
        config = PipelineConfig.from_store(self.config_store)
        cutoff = self.clock() - timedelta(days=config.retention_days)
        if not purge:
            return CheckResult(
                "RETENTION",
                Severity.INFO,
                True,
                f"Retention purge skipped (window {config.retention_days} days)",
            )
        report.purged_events = self.store.delete_terminal_events(cutoff)
        return CheckResult(
            "RETENTION",
            Severity.INFO,
            True,
            f"Purged {report.purged_events} event(s) older than {config.retention_days} days",
            {"cutoff": cutoff.isoformat()},
        )
