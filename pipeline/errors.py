"""Pipeline exception hierarchy.

Each error carries the HTTP status the API reports for it and a short
machine-readable code. Processing failures inside the orchestrator are
recorded on the event rather than raised; only intake rejections and
operator actions surface these to callers.
"""

from typing import Optional


class PipelineError(Exception):
    """Base exception for pipeline errors."""
    status_code: int = 500
    code: str = "PIPELINE_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


# =============================================================================
# Intake
# =============================================================================

class SignatureError(PipelineError):
    """Webhook authentication failed. Nothing is persisted."""
    status_code = 401
    code = "INVALID_SIGNATURE"


class MissingHeaders(SignatureError):
    code = "MISSING_HEADERS"


class StaleTimestamp(SignatureError):
    code = "STALE_TIMESTAMP"


class InvalidSignature(SignatureError):
    code = "INVALID_SIGNATURE"


class InvalidPayload(PipelineError):
    """Body is not a JSON object with an ``event`` field."""
    status_code = 400
    code = "INVALID_PAYLOAD"


class UnsupportedEventType(PipelineError):
    status_code = 400
    code = "UNSUPPORTED_EVENT_TYPE"

    def __init__(self, event_type: Optional[str]):
        super().__init__(f"Unsupported event type: {event_type}")
        self.event_type = event_type


# =============================================================================
# Processing
# =============================================================================

class TransformationError(PipelineError):
    """A transformer could not build the ERP document.

    ``retryable`` separates defects in the source data, which will fail the
    same way on every attempt, from conditions that may clear on their own.
    """
    code = "TRANSFORMATION_FAILED"

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


# =============================================================================
# Operator actions
# =============================================================================

class EventNotFound(PipelineError):
    status_code = 404
    code = "EVENT_NOT_FOUND"

    def __init__(self, event_id: str):
        super().__init__(f"Event not found: {event_id}")
        self.event_id = event_id


class TransactionNotFound(PipelineError):
    status_code = 404
    code = "TRANSACTION_NOT_FOUND"

    def __init__(self, transaction_id: str):
        super().__init__(f"Transaction not found: {transaction_id}")
        self.transaction_id = transaction_id


class InvalidEventState(PipelineError):
    status_code = 400
    code = "INVALID_STATE"


class NotRetryable(PipelineError):
    """Manual retry refused, e.g. for schema validation failures."""
    status_code = 400
    code = "NOT_RETRYABLE"


class EventBusy(PipelineError):
    """Another worker holds the processing lease for this event."""
    status_code = 409
    code = "EVENT_BUSY"

    def __init__(self, event_id: str):
        super().__init__(f"Event {event_id} is being processed by another worker")
        self.event_id = event_id


class AlreadyReversed(PipelineError):
    status_code = 400
    code = "ALREADY_REVERSED"

    def __init__(self, transaction_id: str):
        super().__init__(f"Transaction {transaction_id} has already been reversed")
        self.transaction_id = transaction_id


class NotSynced(PipelineError):
    status_code = 400
    code = "NOT_SYNCED"


class ReasonRequired(PipelineError):
    status_code = 400
    code = "REASON_REQUIRED"
