"""Schema validation of raw webhook payloads.

Validation collects every violation instead of stopping at the first, so an
operator sees the complete list of defects on the failed event.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from core.models import EventType, ValidationIssue, ValidationResult, utcnow
from pipeline.schemas import EVENT_SCHEMAS, PayloadModel


@dataclass
class ValidationOutcome:
    """Result of validating one payload.

    ``normalized`` is the payload with unknown fields removed, in the source's
    camelCase. It is only set when ``issues`` is empty.
    """
    normalized: Optional[Dict[str, Any]] = None
    issues: List[ValidationIssue] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.issues

    def to_result(self, validated_at: Optional[datetime] = None) -> ValidationResult:
        return ValidationResult(
            is_valid=self.is_valid,
            errors=list(self.issues),
            validated_at=validated_at or utcnow(),
        )


def _path(loc: tuple) -> str:
    return ".".join(str(part) for part in loc) or "payload"


def validate(event_type: EventType, raw: Any) -> ValidationOutcome:
    schema = EVENT_SCHEMAS[event_type]
    try:
        model = schema.model_validate(raw)
    except ValidationError as e:
        return ValidationOutcome(issues=[
            ValidationIssue(path=_path(err["loc"]), message=err["msg"], type=err["type"])
            for err in e.errors()
        ])
    return ValidationOutcome(normalized=model.model_dump(mode="json", by_alias=True, exclude_none=True))


def load(event_type: EventType, normalized: Dict[str, Any]) -> PayloadModel:
    """Rebuild the typed envelope from a stored normalized payload."""
    return EVENT_SCHEMAS[event_type].model_validate(normalized)
