"""Webhook signature verification tests."""

import json

import pytest

from conftest import START, WEBHOOK_SECRET, invoice_payload, signed_delivery
from pipeline.errors import InvalidPayload, InvalidSignature, MissingHeaders, StaleTimestamp
from pipeline.signature import SignatureVerifier, parse_envelope, sign


@pytest.fixture
def verifier():
    return SignatureVerifier(WEBHOOK_SECRET, tolerance_seconds=300)


class TestSignatureVerifier:

    def test_valid_delivery_parses_envelope(self, verifier):
        body, headers = signed_delivery(invoice_payload(), message_id="msg_abc")
        envelope = verifier.verify(body, headers, START)
        assert envelope.type == "invoice.created"
        assert envelope.message_id == "msg_abc"
        assert envelope.data["id"] == "inv_1001"

    def test_svix_header_aliases_accepted(self, verifier):
        body, headers = signed_delivery(invoice_payload())
        aliased = {k.replace("webhook-", "svix-"): v for k, v in headers.items()}
        assert verifier.verify(body, aliased, START).type == "invoice.created"

    def test_header_names_are_case_insensitive(self, verifier):
        body, headers = signed_delivery(invoice_payload())
        upper = {k.upper(): v for k, v in headers.items()}
        assert verifier.verify(body, upper, START).message_id == "msg_1"

    def test_one_matching_signature_among_several(self, verifier):
        body, headers = signed_delivery(invoice_payload())
        headers["webhook-signature"] = "v1,bm90LXRoaXMtb25l " + headers["webhook-signature"]
        verifier.verify(body, headers, START)

    def test_missing_header_rejected(self, verifier):
        body, headers = signed_delivery(invoice_payload())
        del headers["webhook-signature"]
        with pytest.raises(MissingHeaders):
            verifier.verify(body, headers, START)

    def test_tampered_body_rejected(self, verifier):
        body, headers = signed_delivery(invoice_payload(price=15000))
        tampered = body.replace(b"15000", b"99999")
        with pytest.raises(InvalidSignature):
            verifier.verify(tampered, headers, START)

    def test_wrong_secret_rejected(self, verifier):
        body, headers = signed_delivery(invoice_payload(), secret="some-other-secret")
        with pytest.raises(InvalidSignature):
            verifier.verify(body, headers, START)

    @pytest.mark.parametrize("skew", [301, -301, 3600])
    def test_timestamp_outside_window_rejected(self, verifier, skew):
        body, headers = signed_delivery(invoice_payload(), timestamp=int(START.timestamp()) + skew)
        with pytest.raises(StaleTimestamp):
            verifier.verify(body, headers, START)

    def test_timestamp_at_edge_of_window_accepted(self, verifier):
        body, headers = signed_delivery(invoice_payload(), timestamp=int(START.timestamp()) - 300)
        verifier.verify(body, headers, START)

    def test_non_numeric_timestamp_rejected(self, verifier):
        body, headers = signed_delivery(invoice_payload())
        headers["webhook-timestamp"] = "yesterday"
        with pytest.raises(StaleTimestamp):
            verifier.verify(body, headers, START)

    def test_tolerance_override(self, verifier):
        body, headers = signed_delivery(invoice_payload(), timestamp=int(START.timestamp()) - 60)
        with pytest.raises(StaleTimestamp):
            verifier.verify(body, headers, START, tolerance_seconds=30)

    def test_empty_secret_refused(self):
        with pytest.raises(ValueError):
            SignatureVerifier("")

    def test_raw_secret_without_prefix(self):
        body = b'{"event": "item.created", "data": {}}'
        signature = sign("plain-secret", "msg_2", "1700000000", body)
        assert signature.startswith("v1,")
        assert signature != sign("other-secret", "msg_2", "1700000000", body)


class TestParseEnvelope:

    def test_invalid_json(self):
        with pytest.raises(InvalidPayload):
            parse_envelope(b"{not json")

    def test_missing_event_field(self):
        with pytest.raises(InvalidPayload):
            parse_envelope(json.dumps({"data": {}}).encode())

    def test_array_body(self):
        with pytest.raises(InvalidPayload):
            parse_envelope(b"[1, 2, 3]")

    def test_metadata_kept(self):
        envelope = parse_envelope(json.dumps({
            "event": "stock.sold", "data": {"id": "x"}, "metadata": {"branch": "ikeja"},
        }).encode())
        assert envelope.metadata == {"branch": "ikeja"}
