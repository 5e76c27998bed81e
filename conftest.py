"""Shared fixtures: fake ERP connector, fixed clock, in-memory services and signed deliveries."""

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from connectors.erp_base import ERPConfig, ERPConnectionStatus, ERPConnector
from core.config import Settings
from core.models import ExternalDocument, SubmissionResult
from core.observability import get_metrics
from pipeline.services import build_services, reset_services, set_services
from pipeline.signature import sign

WEBHOOK_SECRET = "whsec_dGVzdC1zZWNyZXQtZm9yLXRoZS1waXBlbGluZQ=="
START = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)


class FixedClock:
    """Controllable "now" for deterministic retry timing."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FakeConnector(ERPConnector):
    """ERPConnector that records submissions.

    ``outcomes`` is consumed one entry per submit: an exception instance is
    raised, anything else falls through to a successful reference.
    """

    def __init__(self, outcomes: Optional[List[Any]] = None):
        super().__init__(ERPConfig(connector_type="fake", folder="TEST"))
        self.outcomes = list(outcomes or [])
        self.submitted: List[ExternalDocument] = []
        self._counter = 0

    async def connect(self) -> bool:
        self._connection_status = ERPConnectionStatus.CONNECTED
        return True

    async def disconnect(self) -> None:
        self._connection_status = ERPConnectionStatus.DISCONNECTED

    async def test_connection(self) -> bool:
        return True

    async def submit(self, document: ExternalDocument) -> SubmissionResult:
        self.submitted.append(document)
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
        self._counter += 1
        reference = f"SX3-{document.document_type}-{self._counter:04d}"
        return SubmissionResult(
            document_reference=reference,
            document_category=document.category,
            raw_response={"documentReference": reference, "status": "accepted"},
        )


# =============================================================================
# Payload builders
# =============================================================================

OPERATOR = {"id": "op_1", "name": "Ada Okafor"}
PATIENT = {"id": "pat_1", "name": "Chinedu Eze", "mrn": "MRN-0042", "phoneNumber": "+2348010000000"}


def invoice_payload(invoice_id: str = "inv_1001", price: float = 15000, quantity: float = 1, **data) -> Dict[str, Any]:
    body = {
        "id": invoice_id,
        "items": [{"id": "item_1", "name": "Consultation", "quantity": quantity, "price": price}],
        "patient": dict(PATIENT),
        "operator": dict(OPERATOR),
    }
    body.update(data)
    return {"event": "invoice.created", "data": body}


def payment_payload(payment_id: str = "pay_1", amount: float = 15000, method: str = "pos") -> Dict[str, Any]:
    return {
        "event": "payment.created",
        "data": {
            "id": payment_id,
            "items": [{"id": "item_1", "name": "Consultation", "quantity": 1, "price": amount}],
            "patient": dict(PATIENT),
            "operator": dict(OPERATOR),
            "payments": [{"id": "p_1", "amount": amount, "method": method}],
        },
    }


def stock_sold_payload(stock_id: str = "stk_9") -> Dict[str, Any]:
    return {
        "event": "stock.sold",
        "data": {
            "id": stock_id,
            "bill": "bill_77",
            "from": {"id": "loc_pharm", "name": "Main Pharmacy"},
            "stocks": [{"code": "PARA-500", "batchId": "B-2026-01", "quantity": 2}],
        },
    }


def signed_delivery(
    payload: Dict[str, Any],
    message_id: str = "msg_1",
    timestamp: Optional[int] = None,
    secret: str = WEBHOOK_SECRET,
):
    """Return (body, headers) for a correctly signed delivery."""
    body = json.dumps(payload).encode("utf-8")
    ts = str(timestamp if timestamp is not None else int(START.timestamp()))
    headers = {
        "webhook-id": message_id,
        "webhook-timestamp": ts,
        "webhook-signature": sign(secret, message_id, ts, body),
        "content-type": "application/json",
    }
    return body, headers


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture(autouse=True)
def reset_metrics():
    get_metrics().reset()
    yield


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def settings():
    return Settings(database_path=":memory:", webhook_secret=WEBHOOK_SECRET, dispatch_mode="inline")


@pytest.fixture
def services(settings, connector, clock):
    svc = build_services(settings, connector=connector, clock=clock)
    set_services(svc)
    yield svc
    reset_services()


@pytest.fixture
def receive(services):
    """Accept a payload through intake and return the stored event."""
    def _receive(payload: Dict[str, Any], message_id: str = "msg_1"):
        body, headers = signed_delivery(payload, message_id)
        result = services.intake.receive(body, headers, source_ip="10.0.0.5")
        assert result.status_code == 200, result.message
        return services.store.get_event(result.event_id)
    return _receive
