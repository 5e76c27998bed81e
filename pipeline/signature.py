"""Webhook signature verification.

Deliveries follow the Standard Webhooks scheme:

    webhook-id:        msg_2b7...
    webhook-timestamp: 1767225600          (unix seconds)
    webhook-signature: v1,<base64> [v1,<base64> ...]

The signature is HMAC-SHA256 over ``"{id}.{timestamp}.{body}"`` keyed with
the shared secret. ``svix-*`` header names are accepted as aliases.
"""

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from pipeline.errors import InvalidPayload, InvalidSignature, MissingHeaders, StaleTimestamp

SECRET_PREFIX = "whsec_"
SIGNATURE_VERSION = "v1"
DEFAULT_TOLERANCE_SECONDS = 300

_HEADER_ALIASES = {
    "id": ("webhook-id", "svix-id"),
    "timestamp": ("webhook-timestamp", "svix-timestamp"),
    "signature": ("webhook-signature", "svix-signature"),
}


@dataclass
class WebhookEnvelope:
    """A verified delivery."""
    type: str
    data: Dict[str, Any]
    metadata: Dict[str, Any] = field(default_factory=dict)
    message_id: str = ""
    timestamp: str = ""
    signature: str = ""
    raw: Dict[str, Any] = field(default_factory=dict)


def _secret_bytes(secret: str) -> bytes:
    if secret.startswith(SECRET_PREFIX):
        return base64.b64decode(secret[len(SECRET_PREFIX):])
    return secret.encode("utf-8")


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    lowered = {k.lower(): v for k, v in headers.items()}
    for candidate in _HEADER_ALIASES[name]:
        value = lowered.get(candidate)
        if value:
            return value
    return None


def sign(secret: str, message_id: str, timestamp: str, body: bytes) -> str:
    """Compute the ``v1,<base64>`` signature for a delivery."""
    content = f"{message_id}.{timestamp}.".encode("utf-8") + body
    digest = hmac.new(_secret_bytes(secret), content, hashlib.sha256).digest()
    return f"{SIGNATURE_VERSION},{base64.b64encode(digest).decode('utf-8')}"


class SignatureVerifier:
    """Authenticates and freshness-checks inbound webhooks.

    Pure: the caller supplies the current time.
    """

    def __init__(self, secret: str, tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS):
        if not secret:
            raise ValueError("Webhook secret is not configured")
        self.secret = secret
        self.tolerance_seconds = tolerance_seconds

    def verify(
        self,
        body: bytes,
        headers: Mapping[str, str],
        now: datetime,
        tolerance_seconds: Optional[int] = None,
    ) -> WebhookEnvelope:
        """Verify a delivery and parse its envelope.

        Raises:
            MissingHeaders: id, timestamp or signature header absent
            StaleTimestamp: timestamp outside the tolerance window, either direction
            InvalidSignature: no supplied signature matches
            InvalidPayload: body is not a JSON object carrying ``event``
        """
        message_id = _header(headers, "id")
        timestamp = _header(headers, "timestamp")
        signature_header = _header(headers, "signature")
        if not (message_id and timestamp and signature_header):
            raise MissingHeaders("Missing webhook-id, webhook-timestamp or webhook-signature header")

        try:
            sent_at = int(timestamp)
        except ValueError:
            raise StaleTimestamp(f"Invalid webhook timestamp: {timestamp}")
        tolerance = self.tolerance_seconds if tolerance_seconds is None else tolerance_seconds
        if abs(int(now.timestamp()) - sent_at) > tolerance:
            raise StaleTimestamp("Webhook timestamp outside tolerance window")

        expected = sign(self.secret, message_id, timestamp, body).split(",", 1)[1]
        matched = False
        for candidate in signature_header.split(" "):
            version, _, value = candidate.partition(",")
            if version != SIGNATURE_VERSION or not value:
                continue
            if hmac.compare_digest(value.encode("utf-8"), expected.encode("utf-8")):
                matched = True
                break
        if not matched:
            raise InvalidSignature("Webhook signature verification failed")

        return parse_envelope(body, message_id, timestamp, signature_header)


def parse_envelope(body: bytes, message_id: str = "", timestamp: str = "", signature: str = "") -> WebhookEnvelope:
    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise InvalidPayload(f"Body is not valid JSON: {e}")
    if not isinstance(payload, dict) or not isinstance(payload.get("event"), str):
        raise InvalidPayload("Body must be a JSON object with an 'event' field")

    data = payload.get("data")
    metadata = payload.get("metadata")
    return WebhookEnvelope(
        type=payload["event"],
        data=data if isinstance(data, dict) else {},
        metadata=metadata if isinstance(metadata, dict) else {},
        message_id=message_id,
        timestamp=timestamp,
        signature=signature,
        raw=payload,
    )
