"""Transaction reversal.

Posting a compensating credit note to the ERP is the only way a synced
transaction is undone. Reversal is one-shot: the store flips
``Transaction.reversed`` at most once, and the event moves from synced to
reversed in the same run. If the event save fails after the credit note is
posted, reconciliation finishes the move from the transaction's reversal
record.
"""

import asyncio
import time
from datetime import datetime
from typing import Callable, Optional

from connectors.erp_base import ERPConnector, ERPError, ERPTransientError
from core.audit import AuditRecorder, create_audit_entry
from core.models import (
    Actor,
    AuditAction,
    AuditCategory,
    AuditResultStatus,
    AuditSeverity,
    DocumentCategory,
    EventStatus,
    ExternalDocument,
    ReversalDetails,
    ReversalInfo,
    Transaction,
    utcnow,
)
from core.observability import get_logger, get_metrics, with_correlation
from core.storage import EventStore
from pipeline.errors import AlreadyReversed, NotSynced, ReasonRequired, TransactionNotFound
from pipeline.orchestrator import event_lease
from pipeline.transformers import CURRENCY

logger = get_logger(__name__)

REVERSAL_DOCUMENT_TYPES = {
    DocumentCategory.INVOICE: "CN",
    DocumentCategory.PAYMENT: "PAY_REV",
}


def build_reversal_document(transaction: Transaction, reason: str, actor: Actor) -> ExternalDocument:
    """Credit note compensating a synced transaction."""
    document_type = REVERSAL_DOCUMENT_TYPES.get(
        transaction.document_category,
        f"{transaction.document_type or 'DOC'}_REV",
    )
    payload = {
        "documentType": document_type,
        "originalReference": transaction.document_reference,
        "originalTransactionId": transaction.transaction_id,
        "originalDocumentType": transaction.document_type,
        "sourceEventId": transaction.event_id,
        "reason": reason,
        "reversedBy": actor.id,
    }
    if transaction.financial is not None:
        payload["totalAmount"] = float(transaction.financial.amount)
        payload["currency"] = transaction.financial.currency
        if transaction.financial.customer_reference:
            payload["customerCode"] = transaction.financial.customer_reference
    else:
        payload["currency"] = CURRENCY

    return ExternalDocument(
        category=DocumentCategory.CREDIT_NOTE,
        document_type=document_type,
        source_event_type=transaction.event_type,
        source_id=transaction.document_reference,
        payload=payload,
        financial=transaction.financial,
        inventory=transaction.inventory,
    )


class ReversalCoordinator:
    """Reverses synced transactions on operator request."""

    def __init__(
        self,
        store: EventStore,
        audit: AuditRecorder,
        connector: ERPConnector,
        sync_timeout_seconds: float = 30.0,
        lease_ttl_seconds: int = 120,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.audit = audit
        self.connector = connector
        self.sync_timeout_seconds = sync_timeout_seconds
        self.lease_ttl_seconds = lease_ttl_seconds
        self.clock = clock
        self.metrics = get_metrics()

    def _check(self, transaction_id: str) -> Transaction:
        transaction = self.store.get_transaction(transaction_id)
        if transaction is None:
            raise TransactionNotFound(transaction_id)
        if transaction.reversed:
            raise AlreadyReversed(transaction_id)
        return transaction

    async def reverse(self, transaction_id: str, reason: str, actor: Actor) -> Transaction:
        """Post a credit note for the transaction and mark it reversed.

        Raises:
            ReasonRequired: Blank reason
            TransactionNotFound: Unknown transaction id
            AlreadyReversed: The transaction was reversed before
            NotSynced: The source event is not in synced status
            EventBusy: The source event is being processed
            ERPError: The ERP rejected the credit note; nothing was changed
        """
        if not reason or not reason.strip():
            raise ReasonRequired("A reason is required to reverse a transaction")
        reason = reason.strip()

        transaction = self._check(transaction_id)
        with with_correlation(event_id=transaction.event_id, transaction_id=transaction_id, actor=actor.label):
            with event_lease(self.store, transaction.event_id, self.lease_ttl_seconds, self.clock()):
                transaction = self._check(transaction_id)
                event = self.store.get_event(transaction.event_id)
                if event is None or event.status != EventStatus.SYNCED:
                    if event is not None and event.status == EventStatus.REVERSED:
                        raise AlreadyReversed(transaction_id)
                    status = event.status.value if event else "missing"
                    raise NotSynced(f"Event for transaction {transaction_id} is {status}, expected synced")

                started = time.perf_counter()
                document = build_reversal_document(transaction, reason, actor)
                try:
                    result = await asyncio.wait_for(
                        self.connector.submit(document),
                        timeout=self.sync_timeout_seconds,
                    )
                except asyncio.TimeoutError:
                    error = ERPTransientError(
                        f"Reversal submission timed out after {self.sync_timeout_seconds:g}s"
                    )
                    self._record_failure(transaction, actor, reason, error)
                    raise error
                except ERPError as e:
                    self._record_failure(transaction, actor, reason, e)
                    raise

                now = self.clock()
                details = ReversalDetails(
                    reason=reason,
                    reversal_document_reference=result.document_reference,
                    reversed_by=actor.id,
                    reversed_at=now,
                )
                if not self.store.mark_transaction_reversed(transaction_id, details):
                    logger.error(
                        f"Credit note {result.document_reference} posted but transaction "
                        f"{transaction_id} was already reversed"
                    )
                    raise AlreadyReversed(transaction_id)

                event.reversal = ReversalInfo(
                    reason=reason,
                    transaction_id=transaction_id,
                    reversal_document_reference=result.document_reference,
                    reversed_by=actor.id,
                    reversed_at=now,
                )
                event.status = EventStatus.REVERSED
                try:
                    self.store.save_event(event)
                except Exception as e:
                    logger.error(
                        f"Credit note {result.document_reference} posted and transaction {transaction_id} "
                        f"reversed, but event {event.event_id} could not be saved: {e}. "
                        f"Reconciliation will move the event to reversed."
                    )
                    raise
                duration_ms = (time.perf_counter() - started) * 1000

                self.audit.record(create_audit_entry(
                    AuditAction.EVENT_REVERSED,
                    reason,
                    AuditSeverity.WARNING,
                    category=AuditCategory.REVERSAL,
                    actor=actor,
                    event_id=event.event_id,
                    transaction_id=transaction_id,
                    before={"status": EventStatus.SYNCED.value, "reversed": False},
                    after={"status": EventStatus.REVERSED.value, "reversed": True},
                    details={
                        "original_reference": transaction.document_reference,
                        "reversal_reference": result.document_reference,
                    },
                    duration_ms=round(duration_ms, 3),
                    timestamp=now,
                ))
                self.metrics.record_reversal(success=True)
                self.metrics.record_transition(EventStatus.REVERSED.value, duration_ms)
                logger.warning(
                    f"Transaction {transaction_id} reversed by {actor.label} "
                    f"with {result.document_reference}: {reason}"
                )

        return self.store.get_transaction(transaction_id)

    def _record_failure(self, transaction: Transaction, actor: Actor, reason: str, error: ERPError) -> None:
        self.metrics.record_reversal(success=False)
        self.audit.record(create_audit_entry(
            AuditAction.TRANSACTION_REVERSAL_FAILED,
            f"Reversal of {transaction.transaction_id} failed: {error.message}",
            AuditSeverity.ERROR,
            category=AuditCategory.REVERSAL,
            actor=actor,
            event_id=transaction.event_id,
            transaction_id=transaction.transaction_id,
            result_status=AuditResultStatus.FAILURE,
            error_details=error.to_details(),
            details={"reason": reason},
            timestamp=self.clock(),
        ))
        logger.error(f"Reversal of {transaction.transaction_id} failed: {error.message}")


def verify_transaction(
    store: EventStore,
    audit: AuditRecorder,
    transaction_id: str,
    actor: Actor,
    now: Optional[datetime] = None,
) -> Transaction:
    """Mark a transaction as checked against the ERP by an operator."""
    transaction = store.get_transaction(transaction_id)
    if transaction is None:
        raise TransactionNotFound(transaction_id)
    now = now or utcnow()
    if not transaction.verified:
        store.mark_transaction_verified(transaction_id, actor.id, now)
        audit.record(create_audit_entry(
            AuditAction.TRANSACTION_VERIFIED,
            f"Transaction {transaction_id} verified",
            category=AuditCategory.ADMIN,
            actor=actor,
            event_id=transaction.event_id,
            transaction_id=transaction_id,
            before={"verified": False},
            after={"verified": True},
            timestamp=now,
        ))
    return store.get_transaction(transaction_id)
