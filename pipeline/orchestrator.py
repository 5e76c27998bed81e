"""Pipeline orchestrator: the event state machine.

    received -> validated -> transformed -> synced
         \\           \\             \\
          +-----------+-------------+--> failed --(retry)--> last completed step

A run holds a per-event lease for its whole duration and saves the event
with a version compare-and-set after every step. Every status change is
written through ``_transition`` and produces exactly one audit entry.

Failures are recorded on the event and in the audit trail. Nothing raised by
a step escapes ``process``; only operator actions raise to their caller.
"""

import asyncio
import time
import traceback
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from connectors.erp_base import ERPConnector, ERPError
from core.audit import AuditRecorder, create_audit_entry
from core.config import PipelineConfig
from core.models import (
    Actor,
    AuditAction,
    AuditCategory,
    AuditResultStatus,
    AuditSeverity,
    ErrorType,
    Event,
    EventError,
    EventStatus,
    ExternalDocument,
    SubmissionResult,
    SyncResult,
    Transaction,
    transaction_id_for,
    utcnow,
)
from core.observability import get_logger, get_metrics, with_correlation
from core.storage import ConfigStore, DuplicateKeyError, EventStore, StaleRecordError
from pipeline.backoff import RetryPolicy
from pipeline.errors import (
    EventBusy,
    EventNotFound,
    InvalidEventState,
    NotRetryable,
    TransformationError,
)
from pipeline.transformers import TransformContext, transform
from pipeline.validation import validate

logger = get_logger(__name__)

_TRANSITION_ACTIONS = {
    EventStatus.VALIDATED: AuditAction.EVENT_VALIDATED,
    EventStatus.TRANSFORMED: AuditAction.EVENT_TRANSFORMED,
    EventStatus.SYNCED: AuditAction.EVENT_SYNCED,
    EventStatus.FAILED: AuditAction.EVENT_FAILED,
}

_CATEGORIES = {
    EventStatus.SYNCED: AuditCategory.SYNC,
    EventStatus.REVERSED: AuditCategory.REVERSAL,
}


@dataclass
class ProcessingOutcome:
    """What a processing call did to an event."""
    event_id: str
    status: EventStatus
    processed: bool
    retry_count: int = 0
    next_retry_at: Optional[datetime] = None
    requires_intervention: bool = False
    last_error: Optional[EventError] = None
    transaction_id: Optional[str] = None

    @classmethod
    def from_event(cls, event: Event, processed: bool, transaction_id: Optional[str] = None) -> "ProcessingOutcome":
        return cls(
            event_id=event.event_id,
            status=event.status,
            processed=processed,
            retry_count=event.retry_count,
            next_retry_at=event.next_retry_at,
            requires_intervention=event.requires_intervention,
            last_error=event.last_error,
            transaction_id=transaction_id,
        )


class PipelineOrchestrator:
    """Drives events through validation, transformation and ERP sync.

    Args:
        store: Event, transaction and retry persistence
        audit: Audit trail writer
        connector: ERP connector used for submission
        config_store: Runtime configuration, read at the start of every run
        sync_timeout_seconds: Bound on one ERP submission; exceeding it is transient
        lease_ttl_seconds: Lifetime of the per-event processing lease
        folder / company: ERP coordinates copied onto created transactions
        clock: Source of "now"
    """

    def __init__(
        self,
        store: EventStore,
        audit: AuditRecorder,
        connector: ERPConnector,
        config_store: Optional[ConfigStore] = None,
        sync_timeout_seconds: float = 30.0,
        lease_ttl_seconds: int = 120,
        folder: Optional[str] = None,
        company: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.audit = audit
        self.connector = connector
        self.config_store = config_store
        self.sync_timeout_seconds = sync_timeout_seconds
        self.lease_ttl_seconds = lease_ttl_seconds
        self.folder = folder
        self.company = company
        self.clock = clock
        self.metrics = get_metrics()

    def current_config(self) -> PipelineConfig:
        return PipelineConfig.from_store(self.config_store)

    # =========================================================================
    # Entry points
    # =========================================================================

    async def process(self, event_id: str, actor: Optional[Actor] = None) -> ProcessingOutcome:
        """Run an event forward from its current status.

        No-op for synced, reversed and failed events; failed events move only
        through ``resume`` (scheduled) or ``retry`` (operator).

        Raises:
            EventNotFound: Unknown event id
            EventBusy: Another run holds the lease
        """
        actor = actor or Actor.system()
        event = self._load(event_id)
        if not event.status.is_active:
            return self.outcome(event, processed=False)

        with self._lease(event_id):
            event = self._load(event_id)
            if not event.status.is_active:
                return self.outcome(event, processed=False)
            event = await self._drive(event, actor)
        return self.outcome(event, processed=True)

    async def resume(self, event_id: str, actor: Optional[Actor] = None) -> ProcessingOutcome:
        """Execute a due automatic retry, or pick up a stalled event.

        A failed event restarts from its last completed step. Events flagged
        for intervention are left alone.
        """
        actor = actor or Actor.scheduler()
        event = self._load(event_id)
        if event.status.is_terminal:
            return self.outcome(event, processed=False)
        if event.status == EventStatus.FAILED and event.requires_intervention:
            return self.outcome(event, processed=False)

        with self._lease(event_id):
            event = self._load(event_id)
            if event.status == EventStatus.FAILED:
                if event.requires_intervention:
                    return self.outcome(event, processed=False)
                event = self._reset_for_retry(event, actor, reason="Scheduled retry", manual=False)
                self.metrics.record_retry_executed(manual=False)
            if not event.status.is_active:
                return self.outcome(event, processed=False)
            event = await self._drive(event, actor)
        return self.outcome(event, processed=True)

    async def retry(self, event_id: str, reason: str, actor: Actor) -> ProcessingOutcome:
        """Operator-triggered retry of a failed event, run immediately.

        Cancels any pending scheduled retry and counts against the event's
        retry budget.

        Raises:
            EventNotFound: Unknown event id
            InvalidEventState: The event is not failed
            NotRetryable: The failure was a schema validation failure
            EventBusy: Another run holds the lease
        """
        event = self._load(event_id)
        self._check_retryable(event)

        with self._lease(event_id):
            event = self._load(event_id)
            self._check_retryable(event)
            self.store.cancel_retry(event_id)
            event = self._reset_for_retry(event, actor, reason=reason, manual=True)
            self.metrics.record_retry_executed(manual=True)
            event = await self._drive(event, actor)
        return self.outcome(event, processed=True)

    def outcome(self, event: Event, processed: bool) -> ProcessingOutcome:
        """Summarize a run. ``transaction_id`` is set only once the transaction exists."""
        transaction_id = None
        if event.status.is_terminal:
            transaction = self.store.get_transaction_by_event(event.event_id)
            transaction_id = transaction.transaction_id if transaction else None
        return ProcessingOutcome.from_event(event, processed, transaction_id)

    # =========================================================================
    # State machine
    # =========================================================================

    async def _drive(self, event: Event, actor: Actor) -> Event:
        config = self.current_config()
        policy = RetryPolicy.from_config(config)

        with with_correlation(event_id=event.event_id, event_type=event.event_type.value, actor=actor.label):
            while event.status.is_active:
                step = event.status
                started = time.perf_counter()
                try:
                    with with_correlation(stage=step.value):
                        if step == EventStatus.RECEIVED:
                            event = self._validate_step(event, actor, policy, started)
                        elif step == EventStatus.VALIDATED:
                            event = self._transform_step(event, actor, policy, config, started)
                        else:
                            event = await self._sync_step(event, actor, policy, started)
                except StaleRecordError:
                    raise
                except Exception as e:
                    logger.exception(f"Unexpected error in {step.value} step: {e}")
                    event = self._load(event.event_id)
                    if not event.status.is_active:
                        break
                    event = self._fail(
                        event,
                        ErrorType.SYSTEM,
                        f"{type(e).__name__}: {e}",
                        retryable=True,
                        actor=actor,
                        policy=policy,
                        started=started,
                        stack=traceback.format_exc(),
                    )
        return event

    def _validate_step(self, event: Event, actor: Actor, policy: RetryPolicy, started: float) -> Event:
        outcome = validate(event.event_type, event.raw_payload)
        event.validation_result = outcome.to_result(self.clock())

        if not outcome.is_valid:
            return self._fail(
                event,
                ErrorType.VALIDATION,
                f"Payload failed schema validation ({len(outcome.issues)} error(s))",
                retryable=False,
                actor=actor,
                policy=policy,
                started=started,
                details={"errors": [issue.model_dump() for issue in outcome.issues]},
            )

        event.normalized_payload = outcome.normalized
        return self._transition(event, EventStatus.VALIDATED, actor, started)

    def _transform_step(
        self,
        event: Event,
        actor: Actor,
        policy: RetryPolicy,
        config: PipelineConfig,
        started: float,
    ) -> Event:
        context = TransformContext(
            event_id=event.event_id,
            received_at=event.received_at,
            currency_divisor=config.currency_divisor,
        )
        try:
            document = transform(event.event_type, event.normalized_payload or {}, context)
        except TransformationError as e:
            return self._fail(
                event,
                ErrorType.BUSINESS_RULE,
                e.message,
                retryable=e.retryable,
                actor=actor,
                policy=policy,
                started=started,
            )
        except Exception as e:
            return self._fail(
                event,
                ErrorType.BUSINESS_RULE,
                f"Unexpected transformation error: {type(e).__name__}: {e}",
                retryable=True,
                actor=actor,
                policy=policy,
                started=started,
                stack=traceback.format_exc(),
            )

        event.transformed_payload = document.model_dump(mode="json")
        return self._transition(
            event,
            EventStatus.TRANSFORMED,
            actor,
            started,
            details={"document_type": document.document_type, "category": document.category.value},
        )

    async def _sync_step(self, event: Event, actor: Actor, policy: RetryPolicy, started: float) -> Event:
        document = ExternalDocument.model_validate(event.transformed_payload)
        try:
            result = await asyncio.wait_for(self.connector.submit(document), timeout=self.sync_timeout_seconds)
        except asyncio.TimeoutError:
            return self._fail(
                event,
                ErrorType.SAGE_API,
                f"ERP submission timed out after {self.sync_timeout_seconds:g}s",
                retryable=True,
                actor=actor,
                policy=policy,
                started=started,
            )
        except ERPError as e:
            return self._fail(
                event,
                ErrorType.SAGE_API,
                e.message,
                retryable=e.retryable,
                actor=actor,
                policy=policy,
                started=started,
                details=e.to_details(),
            )

        now = self.clock()
        event.sync_result = SyncResult(
            document_reference=result.document_reference,
            document_category=result.document_category.value,
            synced_at=now,
            response=result.raw_response,
        )
        event.next_retry_at = None
        event.requires_intervention = False
        event = self._transition(
            event,
            EventStatus.SYNCED,
            actor,
            started,
            details={"document_reference": result.document_reference},
        )
        self._record_transaction(event, document, result, actor)
        return event

    # =========================================================================
    # Transitions
    # =========================================================================

    def _transition(
        self,
        event: Event,
        to_status: EventStatus,
        actor: Actor,
        started: float,
        action: Optional[AuditAction] = None,
        severity: AuditSeverity = AuditSeverity.INFO,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        error_details: Optional[Dict[str, Any]] = None,
    ) -> Event:
        """Save the event in its new status and write its one audit entry."""
        before = event.status
        event.status = to_status
        saved = self.store.save_event(event)
        duration_ms = (time.perf_counter() - started) * 1000

        failed = to_status == EventStatus.FAILED
        self.audit.record(create_audit_entry(
            action or _TRANSITION_ACTIONS[to_status],
            message or f"{before.value} -> {to_status.value}",
            severity,
            category=_CATEGORIES.get(to_status, AuditCategory.PROCESSING),
            actor=actor,
            event_id=saved.event_id,
            transaction_id=transaction_id_for(saved.event_id) if to_status == EventStatus.SYNCED else None,
            before={"status": before.value},
            after={"status": to_status.value},
            result_status=AuditResultStatus.FAILURE if failed else AuditResultStatus.SUCCESS,
            error_details=error_details,
            details=details,
            duration_ms=round(duration_ms, 3),
            timestamp=self.clock(),
        ))
        self.metrics.record_transition(
            to_status.value,
            duration_ms,
            error_type=saved.last_error.type.value if failed and saved.last_error else None,
        )
        logger.info(
            f"Event {saved.event_id} {before.value} -> {to_status.value}",
            extra_fields={"duration_ms": round(duration_ms, 1)},
        )
        return saved

    def _fail(
        self,
        event: Event,
        error_type: ErrorType,
        message: str,
        retryable: bool,
        actor: Actor,
        policy: RetryPolicy,
        started: float,
        details: Optional[Dict[str, Any]] = None,
        stack: Optional[str] = None,
    ) -> Event:
        """Record a failure and either schedule a retry or flag for intervention."""
        now = self.clock()
        event.add_error(error_type, message, details=details, stack=stack, occurred_at=now)

        retry_at = None
        if policy.should_retry(event.retry_count, retryable):
            retry_at = policy.next_retry_at(event.retry_count, now)
            event.retry_count += 1
            event.next_retry_at = retry_at
            event.requires_intervention = False
        else:
            event.next_retry_at = None
            event.requires_intervention = True
            if retryable and policy.enabled:
                self.metrics.record_retry_exhausted()

        saved = self._transition(
            event,
            EventStatus.FAILED,
            actor,
            started,
            severity=AuditSeverity.ERROR,
            message=message,
            details={
                "error_type": error_type.value,
                "retryable": retryable,
                "retry_count": event.retry_count,
                "retry_scheduled_for": retry_at.isoformat() if retry_at else None,
                "requires_intervention": event.requires_intervention,
            },
            error_details={"type": error_type.value, "message": message, **(details or {})},
        )
        if retry_at is not None:
            self.store.schedule_retry(saved.event_id, retry_at)
            self.metrics.record_retry_scheduled()
            logger.warning(
                f"Event {saved.event_id} failed ({error_type.value}), retry {saved.retry_count} "
                f"scheduled for {retry_at.isoformat()}"
            )
        else:
            logger.error(f"Event {saved.event_id} failed ({error_type.value}) and needs intervention: {message}")
        return saved

    def _reset_for_retry(self, event: Event, actor: Actor, reason: str, manual: bool) -> Event:
        resume_from = event.resume_point()
        event.next_retry_at = None
        if manual:
            event.retry_count += 1
            event.requires_intervention = False
        return self._transition(
            event,
            resume_from,
            actor,
            time.perf_counter(),
            action=AuditAction.EVENT_RETRIED,
            message=reason,
            details={
                "reason": reason,
                "manual": manual,
                "resume_from": resume_from.value,
                "retry_count": event.retry_count,
            },
        )

    def _record_transaction(
        self,
        event: Event,
        document: ExternalDocument,
        result: SubmissionResult,
        actor: Actor,
    ) -> None:
        """Create the Transaction for a synced event.

        A failure here leaves a synced event without a transaction; the
        reconciliation pass finds and repairs those.
        """
        transaction = build_transaction(event, document, result, self.folder, self.company)
        try:
            self.store.insert_transaction(transaction)
        except DuplicateKeyError as e:
            logger.warning(f"Transaction for {event.event_id} not created: {e}")
            return
        except Exception:
            logger.exception(f"Failed to create transaction for synced event {event.event_id}")
            return

        self.audit.record(create_audit_entry(
            AuditAction.TRANSACTION_CREATED,
            f"Transaction {transaction.transaction_id} created for {result.document_reference}",
            category=AuditCategory.SYNC,
            actor=actor,
            event_id=event.event_id,
            transaction_id=transaction.transaction_id,
            details={
                "document_reference": transaction.document_reference,
                "document_category": transaction.document_category.value,
            },
            timestamp=self.clock(),
        ))

    # =========================================================================
    # Helpers
    # =========================================================================

    def _load(self, event_id: str) -> Event:
        event = self.store.get_event(event_id)
        if event is None:
            raise EventNotFound(event_id)
        return event

    def _check_retryable(self, event: Event) -> None:
        if event.status != EventStatus.FAILED:
            raise InvalidEventState(
                f"Only failed events can be retried; event {event.event_id} is {event.status.value}"
            )
        if event.last_error and event.last_error.type == ErrorType.VALIDATION:
            raise NotRetryable(
                f"Event {event.event_id} failed schema validation; the source must resend corrected data"
            )

    def _lease(self, event_id: str):
        return event_lease(self.store, event_id, self.lease_ttl_seconds, self.clock())


@contextmanager
def event_lease(store: EventStore, event_id: str, ttl_seconds: int, now: datetime):
    """Hold the per-event processing lease for the duration of the block.

    Raises:
        EventBusy: The lease is held by another run
    """
    owner = uuid.uuid4().hex
    if not store.acquire_lease(event_id, owner, now + timedelta(seconds=ttl_seconds), now):
        raise EventBusy(event_id)
    try:
        yield owner
    finally:
        store.release_lease(event_id, owner)


def build_transaction(
    event: Event,
    document: ExternalDocument,
    result: SubmissionResult,
    folder: Optional[str] = None,
    company: Optional[str] = None,
) -> Transaction:
    synced_at = event.sync_result.synced_at if event.sync_result else utcnow()
    return Transaction(
        transaction_id=transaction_id_for(event.event_id),
        event_id=event.event_id,
        event_type=event.event_type,
        document_reference=result.document_reference,
        document_category=result.document_category,
        document_type=document.document_type,
        folder=folder,
        company=company,
        posting_date=event.received_at,
        api_response=result.raw_response,
        financial=document.financial,
        inventory=document.inventory,
        synced_at=synced_at,
        created_at=synced_at,
        updated_at=synced_at,
    )
