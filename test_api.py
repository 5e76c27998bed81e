"""HTTP surface tests against the ASGI app with in-memory services."""

import httpx
import pytest

from api.server import create_app
from conftest import invoice_payload, signed_delivery
from connectors.erp_base import ERPPermanentError, ERPTransientError
from core.models import EventStatus, transaction_id_for

OPERATOR_HEADERS = {"X-Operator-Id": "op_5", "X-Operator-Name": "Night shift"}


@pytest.fixture
def client(services):
    transport = httpx.ASGITransport(app=create_app())
    return httpx.AsyncClient(transport=transport, base_url="http://test")


async def _deliver(client, payload, message_id="msg_1"):
    body, headers = signed_delivery(payload, message_id)
    return await client.post("/api/v1/webhooks/events", content=body, headers=headers)


class TestWebhookEndpoint:

    @pytest.mark.asyncio
    async def test_accepted_event_is_processed(self, client, services):
        async with client:
            response = await _deliver(client, invoice_payload())

        assert response.status_code == 200
        body = response.json()
        assert body["outcome"] == "accepted"
        assert body["eventType"] == "invoice.created"
        event = services.store.get_event(body["eventId"])
        assert event.status == EventStatus.SYNCED

    @pytest.mark.asyncio
    async def test_duplicate_reports_current_status(self, client):
        async with client:
            first = await _deliver(client, invoice_payload())
            second = await _deliver(client, invoice_payload())

        assert second.status_code == 200
        assert second.json()["outcome"] == "duplicate"
        assert second.json()["eventId"] == first.json()["eventId"]
        assert second.json()["status"] == "synced"

    @pytest.mark.asyncio
    async def test_bad_signature_is_401(self, client, services):
        body, headers = signed_delivery(invoice_payload(), secret="whsec_d3Jvbmc=")
        async with client:
            response = await client.post("/api/v1/webhooks/events", content=body, headers=headers)

        assert response.status_code == 401
        assert response.json()["success"] is False
        assert services.store.stats().events_by_status == {}


class TestEventRoutes:

    @pytest.mark.asyncio
    async def test_list_uses_camel_case(self, client):
        async with client:
            await _deliver(client, invoice_payload())
            response = await client.get("/api/v1/events", params={"status": "synced"})

        body = response.json()
        assert body["total"] == 1
        assert body["hasMore"] is False
        item = body["items"][0]
        assert item["eventType"] == "invoice.created"
        assert item["retryCount"] == 0

    @pytest.mark.asyncio
    async def test_detail_includes_audit_trail(self, client):
        async with client:
            event_id = (await _deliver(client, invoice_payload())).json()["eventId"]
            response = await client.get(f"/api/v1/events/{event_id}")

        body = response.json()
        assert body["transactionId"] == transaction_id_for(event_id)
        actions = [entry["action"] for entry in body["auditTrail"]]
        assert actions[0] == "event.received"
        assert "transaction.created" in actions
        assert "eventId" in body["auditTrail"][0]

    @pytest.mark.asyncio
    async def test_unknown_event_is_404(self, client):
        async with client:
            response = await client.get("/api/v1/events/evt_missing")
        assert response.status_code == 404
        assert response.json()["code"] == "EVENT_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_manual_retry_of_failed_event(self, client, connector, services):
        connector.outcomes = [ERPTransientError("Sage X3 busy", status_code=503)]
        async with client:
            event_id = (await _deliver(client, invoice_payload())).json()["eventId"]
            queue = await client.get("/api/v1/events/failed/queue")
            response = await client.post(
                f"/api/v1/events/{event_id}/retry",
                json={"reason": "ERP back up"},
                headers=OPERATOR_HEADERS,
            )

        assert queue.json()["items"][0]["eventId"] == event_id
        body = response.json()
        assert response.status_code == 200
        assert body["status"] == "synced"
        assert body["transactionId"] == transaction_id_for(event_id)
        assert services.store.get_scheduled_retry(event_id) is None

    @pytest.mark.asyncio
    async def test_retry_of_synced_event_is_rejected(self, client):
        async with client:
            event_id = (await _deliver(client, invoice_payload())).json()["eventId"]
            response = await client.post(f"/api/v1/events/{event_id}/retry")

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_STATE"

    @pytest.mark.asyncio
    async def test_stats_summary(self, client):
        async with client:
            await _deliver(client, invoice_payload())
            response = await client.get("/api/v1/events/stats/summary")

        body = response.json()
        assert body["total"] == 1
        assert body["byStatus"] == {"synced": 1}
        assert body["requiresIntervention"] == 0


class TestTransactionRoutes:

    @pytest.mark.asyncio
    async def test_reverse_and_list(self, client):
        async with client:
            event_id = (await _deliver(client, invoice_payload())).json()["eventId"]
            txn_id = transaction_id_for(event_id)
            response = await client.post(
                f"/api/v1/transactions/{txn_id}/reverse",
                json={"reason": "Wrong patient"},
                headers=OPERATOR_HEADERS,
            )
            reversed_list = await client.get("/api/v1/transactions/reversed/list")
            again = await client.post(f"/api/v1/transactions/{txn_id}/reverse", json={"reason": "Again"})

        assert response.status_code == 200
        reversal = response.json()["transaction"]["reversal"]
        assert reversal["reversed_by"] == "op_5"
        assert reversed_list.json()["items"][0]["transactionId"] == txn_id
        assert again.status_code == 400
        assert again.json()["code"] == "ALREADY_REVERSED"

    @pytest.mark.asyncio
    async def test_empty_reason_is_422(self, client):
        async with client:
            event_id = (await _deliver(client, invoice_payload())).json()["eventId"]
            response = await client.post(
                f"/api/v1/transactions/{transaction_id_for(event_id)}/reverse", json={"reason": ""}
            )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_erp_rejection_is_502(self, client, connector, services):
        async with client:
            event_id = (await _deliver(client, invoice_payload())).json()["eventId"]
            connector.outcomes = [ERPPermanentError("Period closed", status_code=409)]
            response = await client.post(
                f"/api/v1/transactions/{transaction_id_for(event_id)}/reverse", json={"reason": "Duplicate"}
            )

        assert response.status_code == 502
        assert response.json()["code"] == "ERP_ERROR"
        assert response.json()["retryable"] is False
        assert not services.store.get_transaction(transaction_id_for(event_id)).reversed

    @pytest.mark.asyncio
    async def test_verify(self, client):
        async with client:
            event_id = (await _deliver(client, invoice_payload())).json()["eventId"]
            response = await client.post(
                f"/api/v1/transactions/{transaction_id_for(event_id)}/verify", headers=OPERATOR_HEADERS
            )
            stats = await client.get("/api/v1/transactions/stats/summary")

        assert response.json()["transaction"]["verified_by"] == "op_5"
        assert stats.json()["unverified"] == 0

    @pytest.mark.asyncio
    async def test_detail_includes_event_and_trail(self, client):
        async with client:
            event_id = (await _deliver(client, invoice_payload())).json()["eventId"]
            response = await client.get(f"/api/v1/transactions/{transaction_id_for(event_id)}")

        body = response.json()
        assert body["transaction"]["document_reference"] == "SX3-SI-0001"
        assert body["event"]["status"] == "synced"
        assert body["auditTrail"][-1]["action"] == "transaction.created"

    @pytest.mark.asyncio
    async def test_unknown_transaction_is_404(self, client):
        async with client:
            response = await client.get("/api/v1/transactions/TXN-missing")
        assert response.status_code == 404
        assert response.json()["code"] == "TRANSACTION_NOT_FOUND"


class TestAdminRoutes:

    @pytest.mark.asyncio
    async def test_update_config_is_audited(self, client, services):
        async with client:
            response = await client.put(
                "/api/v1/admin/config/retry.maxAttempts",
                json={"value": 5, "reason": "ERP maintenance window"},
                headers=OPERATOR_HEADERS,
            )
            audit = await client.get("/api/v1/admin/audit", params={"action": "config.updated"})

        assert response.status_code == 200
        assert response.json()["entry"]["version"] == 2
        assert services.config_store.get("retry.maxAttempts") == 5
        entry = audit.json()["items"][0]
        assert entry["before"]["value"] == 3
        assert entry["actor"]["id"] == "op_5"

    @pytest.mark.asyncio
    async def test_unknown_config_key_is_404(self, client):
        async with client:
            response = await client.put("/api/v1/admin/config/nope.key", json={"value": 1})
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_metrics(self, client):
        async with client:
            await _deliver(client, invoice_payload())
            response = await client.get("/api/v1/admin/metrics")
        assert response.json()["metrics"]["webhooks"]["accepted"] == 1

    @pytest.mark.asyncio
    async def test_reconcile(self, client):
        async with client:
            response = await client.post("/api/v1/admin/reconcile", headers=OPERATOR_HEADERS)
        report = response.json()["report"]
        assert report["status"] == "PASS"

    @pytest.mark.asyncio
    async def test_status(self, client):
        async with client:
            response = await client.get("/api/v1/admin/status")
        body = response.json()
        assert body["connector"]["type"] == "fake"
        assert body["dispatchMode"] == "inline"
        assert "sage_x3" in body["connector"]["available"]


class TestHealth:

    @pytest.mark.asyncio
    async def test_health(self, client):
        async with client:
            response = await client.get("/health")
        body = response.json()
        assert body["status"] == "healthy"
        assert body["services"]["storage"] == "up"

    @pytest.mark.asyncio
    async def test_probes(self, client):
        async with client:
            assert (await client.get("/ready")).json() == {"status": "ready"}
            assert (await client.get("/live")).json() == {"status": "alive"}


class TestSageAuthRoutes:

    @pytest.fixture
    def sage_client(self, settings, clock):
        from connectors.erp_base import ERPConfig, create_connector
        from pipeline.services import build_services, reset_services, set_services

        connector = create_connector(ERPConfig(
            connector_type="sage_x3",
            base_url="https://x3.test",
            folder="SEED",
            auth_config={"client_id": "cid", "client_secret": "csecret", "redirect_uri": "http://cb"},
        ))
        svc = build_services(settings, connector=connector, clock=clock)
        set_services(svc)
        yield httpx.AsyncClient(transport=httpx.ASGITransport(app=create_app()), base_url="http://test"), connector
        reset_services()

    @pytest.mark.asyncio
    async def test_authorization_code_flow(self, sage_client):
        from unittest.mock import AsyncMock, patch

        client, connector = sage_client
        token_response = (200, {"access_token": "acc", "refresh_token": "ref", "expires_in": 3600})
        async with client:
            start = (await client.get("/api/v1/auth/sage/start")).json()
            with patch.object(connector.oauth, "_post_token", AsyncMock(return_value=token_response)), \
                    patch.object(connector.client, "connect", AsyncMock()):
                callback = await client.get(
                    "/api/v1/auth/sage/callback", params={"code": "abc", "state": start["state"]}
                )
            replay = await client.get("/api/v1/auth/sage/callback", params={"code": "abc", "state": start["state"]})
            status = (await client.get("/api/v1/auth/sage/status")).json()

        assert start["auth_url"].startswith("https://x3.test/")
        assert callback.status_code == 200
        assert replay.status_code == 400
        assert status["connected"] is True
        assert status["connector_status"] == "connected"

    @pytest.mark.asyncio
    async def test_disconnect(self, sage_client):
        client, connector = sage_client
        connector.oauth.set_tokens("acc", "ref")
        async with client:
            response = await client.post("/api/v1/auth/sage/disconnect")
            status = (await client.get("/api/v1/auth/sage/status")).json()
        assert response.json()["success"] is True
        assert status["connected"] is False

    @pytest.mark.asyncio
    async def test_non_sage_connector_is_501(self, client):
        async with client:
            response = await client.get("/api/v1/auth/sage/status")
        assert response.status_code == 501
