"""Dispatch of accepted events to the orchestrator.

``inline`` runs processing in the API process after the response is sent.
``temporal`` starts one durable workflow per event; the workflow owns the
retry timers and survives worker restarts.
"""

from abc import ABC, abstractmethod
from typing import Optional

from core.observability import get_logger
from pipeline.errors import EventBusy, EventNotFound
from pipeline.orchestrator import PipelineOrchestrator

logger = get_logger(__name__)

EVENT_WORKFLOW_NAME = "EventProcessingWorkflow"


def workflow_id_for(event_id: str) -> str:
    return f"event-{event_id}"


class EventDispatcher(ABC):
    @abstractmethod
    async def dispatch(self, event_id: str) -> None:
        pass


class InlineDispatcher(EventDispatcher):
    """Processes the event in the current process."""

    def __init__(self, orchestrator: PipelineOrchestrator):
        self.orchestrator = orchestrator

    async def dispatch(self, event_id: str) -> None:
        try:
            outcome = await self.orchestrator.process(event_id)
        except (EventBusy, EventNotFound) as e:
            logger.info(f"Skipped dispatch of {event_id}: {e.message}")
            return
        logger.info(f"Inline processing of {event_id} finished as {outcome.status.value}")


class TemporalDispatcher(EventDispatcher):
    """Starts ``EventProcessingWorkflow`` for the event.

    The workflow id is derived from the event id, so a second dispatch of
    the same event is a no-op.
    """

    def __init__(self, task_queue: str, client=None):
        self.task_queue = task_queue
        self._client = client

    async def _get_client(self):
        if self._client is None:
            from temporal_client import get_temporal_client
            self._client = await get_temporal_client()
        return self._client

    async def dispatch(self, event_id: str) -> Optional[str]:
        from temporalio.exceptions import WorkflowAlreadyStartedError

        client = await self._get_client()
        workflow_id = workflow_id_for(event_id)
        try:
            handle = await client.start_workflow(
                EVENT_WORKFLOW_NAME,
                {"event_id": event_id},
                id=workflow_id,
                task_queue=self.task_queue,
            )
        except WorkflowAlreadyStartedError:
            logger.info(f"Workflow {workflow_id} already running")
            return workflow_id
        logger.info(f"Started workflow {handle.id} on {self.task_queue}")
        return handle.id
