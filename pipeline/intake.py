"""Webhook intake.

Authenticates a delivery, de-duplicates it by message id, and persists a new
Event in ``received`` status. Processing happens afterwards through a
dispatcher so the source gets its acknowledgement quickly.

Response codes:
    200  accepted, duplicate, or event family disabled
    400  malformed body or unsupported event type
    401  missing headers, stale timestamp or bad signature
    500  unexpected failure; the source will redeliver
"""

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Mapping, Optional

from core.audit import AuditRecorder, create_audit_entry
from core.config import PipelineConfig
from core.models import (
    Actor,
    AuditAction,
    AuditCategory,
    AuditResultStatus,
    AuditSeverity,
    Event,
    EventStatus,
    EventType,
    WebhookMetadata,
    utcnow,
)
from core.observability import get_logger, get_metrics, sanitize_payload, with_correlation
from core.storage import ConfigStore, EventStore
from pipeline.errors import InvalidPayload, SignatureError, UnsupportedEventType
from pipeline.idempotency import IdempotencyLedger
from pipeline.signature import SignatureVerifier

logger = get_logger(__name__)


@dataclass
class IntakeResult:
    status_code: int
    outcome: str
    message: str
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    existing_status: Optional[str] = None
    should_dispatch: bool = False

    def to_body(self) -> dict:
        body = {
            "success": self.status_code < 400,
            "outcome": self.outcome,
            "message": self.message,
        }
        if self.event_id:
            body["eventId"] = self.event_id
        if self.event_type:
            body["eventType"] = self.event_type
        if self.existing_status:
            body["status"] = self.existing_status
        return body


def new_event_id() -> str:
    return f"evt_{uuid.uuid4().hex}"


class WebhookIntake:
    """Front door for source webhooks."""

    def __init__(
        self,
        store: EventStore,
        audit: AuditRecorder,
        webhook_secret: str,
        config_store: Optional[ConfigStore] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.audit = audit
        self.config_store = config_store
        self.ledger = IdempotencyLedger(store)
        self.verifier = SignatureVerifier(webhook_secret) if webhook_secret else None
        self.clock = clock
        self.metrics = get_metrics()

    def receive(
        self,
        body: bytes,
        headers: Mapping[str, str],
        source_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> IntakeResult:
        if self.verifier is None:
            logger.error("Webhook received but no webhook secret is configured")
            return IntakeResult(500, "error", "Webhook secret not configured")

        actor = Actor.webhook(ip_address=source_ip, user_agent=user_agent)
        config = PipelineConfig.from_store(self.config_store)
        now = self.clock()

        try:
            envelope = self.verifier.verify(body, headers, now, config.timestamp_tolerance_seconds)
        except SignatureError as e:
            self.metrics.record_webhook("rejected", reason=e.code)
            self.audit.record(create_audit_entry(
                AuditAction.WEBHOOK_REJECTED,
                e.message,
                AuditSeverity.WARNING,
                category=AuditCategory.SECURITY,
                actor=actor,
                result_status=AuditResultStatus.FAILURE,
                details={"code": e.code},
                timestamp=now,
            ))
            logger.warning(f"Rejected webhook from {source_ip or 'unknown'}: {e.message}")
            return IntakeResult(e.status_code, "rejected", e.message)
        except InvalidPayload as e:
            self.metrics.record_webhook("rejected", reason=e.code)
            logger.warning(f"Rejected webhook body: {e.message}")
            return IntakeResult(e.status_code, "rejected", e.message)

        event_type = EventType.parse(envelope.type)
        if event_type is None:
            error = UnsupportedEventType(envelope.type)
            self.metrics.record_webhook("rejected", reason=error.code)
            logger.warning(error.message)
            return IntakeResult(error.status_code, "rejected", error.message, event_type=envelope.type)

        if not config.is_enabled(event_type.feature_flag):
            self.metrics.record_webhook("disabled", reason=event_type.value)
            logger.info(f"Ignoring {event_type.value}: {event_type.feature_flag} is disabled")
            return IntakeResult(
                200, "disabled", f"{event_type.value} events are disabled", event_type=event_type.value
            )

        event = Event(
            event_id=new_event_id(),
            event_type=event_type,
            idempotency_key=envelope.message_id,
            status=EventStatus.RECEIVED,
            raw_payload=envelope.raw,
            webhook=WebhookMetadata(
                message_id=envelope.message_id,
                webhook_timestamp=envelope.timestamp,
                signature=envelope.signature,
                source_ip=source_ip,
                user_agent=user_agent,
            ),
            metadata=envelope.metadata,
            received_at=now,
            created_at=now,
            updated_at=now,
        )

        with with_correlation(message_id=envelope.message_id, event_type=event_type.value):
            try:
                result = self.ledger.register_if_new(event)
            except Exception:
                logger.exception("Failed to persist webhook event")
                return IntakeResult(500, "error", "Failed to persist event", event_type=event_type.value)

            if not result.is_new:
                self.metrics.record_webhook("duplicate")
                self.audit.record(create_audit_entry(
                    AuditAction.EVENT_DUPLICATE,
                    f"Duplicate delivery of {envelope.message_id}",
                    category=AuditCategory.WEBHOOK,
                    actor=actor,
                    event_id=result.existing_event_id,
                    details={
                        "message_id": envelope.message_id,
                        "existing_status": result.existing_status.value,
                    },
                    timestamp=now,
                ))
                logger.info(f"Duplicate webhook {envelope.message_id} for {result.existing_event_id}")
                return IntakeResult(
                    200,
                    "duplicate",
                    "Event already received",
                    event_id=result.existing_event_id,
                    event_type=event_type.value,
                    existing_status=result.existing_status.value,
                )

            saved = result.event
            self.audit.record(create_audit_entry(
                AuditAction.EVENT_RECEIVED,
                f"Received {event_type.value}",
                category=AuditCategory.WEBHOOK,
                actor=actor,
                event_id=saved.event_id,
                before=None,
                after={"status": EventStatus.RECEIVED.value},
                details={"message_id": envelope.message_id, "source_id": saved.source_id},
                timestamp=now,
            ))
            self.metrics.record_webhook("accepted")
            self.metrics.record_transition(EventStatus.RECEIVED.value)
            logger.info(f"Accepted webhook as {saved.event_id}")
            logger.debug("Webhook payload", extra_fields={"payload": sanitize_payload(envelope.raw)})

        return IntakeResult(
            200,
            "accepted",
            "Event received",
            event_id=saved.event_id,
            event_type=event_type.value,
            existing_status=EventStatus.RECEIVED.value,
            should_dispatch=True,
        )
