"""Dispatcher and Temporal activity tests.

Activities run in temporalio's ActivityEnvironment against the in-memory
services; no Temporal server is needed.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from temporalio.exceptions import ApplicationError, WorkflowAlreadyStartedError
from temporalio.testing import ActivityEnvironment

from activities.pipeline import EventActivityInput, process_event, resume_event
from conftest import START, invoice_payload
from connectors.erp_base import ERPTransientError
from core.models import EventStatus
from pipeline.dispatch import InlineDispatcher, TemporalDispatcher, workflow_id_for


class TestActivities:

    @pytest.mark.asyncio
    async def test_process_event_syncs(self, services, receive):
        event = receive(invoice_payload())
        result = await ActivityEnvironment().run(process_event, EventActivityInput(event.event_id))

        assert result.status == "synced"
        assert result.processed
        assert result.next_retry_at is None

    @pytest.mark.asyncio
    async def test_process_event_reports_retry_time(self, services, receive, connector):
        connector.outcomes = [ERPTransientError("busy", status_code=503)]
        event = receive(invoice_payload())
        result = await ActivityEnvironment().run(process_event, EventActivityInput(event.event_id))

        assert result.status == "failed"
        assert result.retry_count == 1
        assert result.next_retry_at == "2026-03-02T09:30:05+00:00"
        assert not result.requires_intervention

    @pytest.mark.asyncio
    async def test_unknown_event_is_non_retryable(self, services):
        with pytest.raises(ApplicationError) as exc_info:
            await ActivityEnvironment().run(process_event, EventActivityInput("evt_missing"))
        assert exc_info.value.type == "EventNotFound"
        assert exc_info.value.non_retryable

    @pytest.mark.asyncio
    async def test_held_lease_is_retryable(self, services, receive):
        event = receive(invoice_payload())
        services.store.acquire_lease(event.event_id, "other-worker", START.replace(year=2030), START)
        with pytest.raises(ApplicationError) as exc_info:
            await ActivityEnvironment().run(process_event, EventActivityInput(event.event_id))
        assert exc_info.value.type == "EventBusy"
        assert not exc_info.value.non_retryable

    @pytest.mark.asyncio
    async def test_resume_claims_scheduled_retry(self, services, receive, connector, clock):
        connector.outcomes = [ERPTransientError("busy", status_code=503)]
        event = receive(invoice_payload())
        await services.orchestrator.process(event.event_id)
        clock.advance(5)

        result = await ActivityEnvironment().run(resume_event, EventActivityInput(event.event_id))

        assert result.status == "synced"
        assert result.processed
        assert services.store.get_scheduled_retry(event.event_id) is None

    @pytest.mark.asyncio
    async def test_resume_without_pending_retry_is_noop(self, services, receive, connector):
        event = receive(invoice_payload())
        await services.orchestrator.process(event.event_id)

        result = await ActivityEnvironment().run(resume_event, EventActivityInput(event.event_id))

        assert not result.processed
        assert result.status == "synced"
        assert len(connector.submitted) == 1


class TestDispatchers:

    @pytest.mark.asyncio
    async def test_inline_dispatch(self, services, receive):
        event = receive(invoice_payload())
        await InlineDispatcher(services.orchestrator).dispatch(event.event_id)
        assert services.store.get_event(event.event_id).status == EventStatus.SYNCED

    @pytest.mark.asyncio
    async def test_inline_dispatch_skips_unknown_event(self, services):
        await InlineDispatcher(services.orchestrator).dispatch("evt_missing")

    @pytest.mark.asyncio
    async def test_temporal_dispatch_starts_workflow(self):
        client = MagicMock()
        client.start_workflow = AsyncMock(return_value=MagicMock(id="event-evt_1"))
        dispatcher = TemporalDispatcher("event-pipeline", client=client)

        assert await dispatcher.dispatch("evt_1") == "event-evt_1"
        args, kwargs = client.start_workflow.await_args
        assert args == ("EventProcessingWorkflow", {"event_id": "evt_1"})
        assert kwargs == {"id": workflow_id_for("evt_1"), "task_queue": "event-pipeline"}

    @pytest.mark.asyncio
    async def test_temporal_dispatch_is_idempotent(self):
        client = MagicMock()
        client.start_workflow = AsyncMock(
            side_effect=WorkflowAlreadyStartedError("event-evt_1", "EventProcessingWorkflow")
        )
        dispatcher = TemporalDispatcher("event-pipeline", client=client)
        assert await dispatcher.dispatch("evt_1") == "event-evt_1"
