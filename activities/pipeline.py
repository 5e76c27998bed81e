"""Pipeline activities for the event workflow.

Activities are thin wrappers over the orchestrator. All state lives in the
event store; the workflow only carries the event id and the next retry time.
"""

from dataclasses import dataclass
from typing import Optional

from temporalio import activity
from temporalio.exceptions import ApplicationError

from core.observability import with_correlation
from pipeline.errors import EventBusy, PipelineError
from pipeline.orchestrator import ProcessingOutcome
from pipeline.services import get_services


@dataclass
class EventActivityInput:
    """Input for process_event and resume_event.

    Attributes:
        event_id: Event to process
    """
    event_id: str


@dataclass
class EventActivityOutput:
    """Where the event stands after an activity run.

    Attributes:
        event_id: Processed event
        status: Event status after the run
        processed: False when the run was a no-op
        retry_count: Automatic and manual retries so far
        next_retry_at: ISO timestamp of the scheduled retry, if any
        requires_intervention: True once only an operator can move the event
        error: Message of the latest failure
    """
    event_id: str
    status: str
    processed: bool
    retry_count: int = 0
    next_retry_at: Optional[str] = None
    requires_intervention: bool = False
    error: Optional[str] = None


def _to_output(outcome: ProcessingOutcome) -> EventActivityOutput:
    return EventActivityOutput(
        event_id=outcome.event_id,
        status=outcome.status.value,
        processed=outcome.processed,
        retry_count=outcome.retry_count,
        next_retry_at=outcome.next_retry_at.isoformat() if outcome.next_retry_at else None,
        requires_intervention=outcome.requires_intervention,
        error=outcome.last_error.message if outcome.last_error else None,
    )


def _as_application_error(e: PipelineError) -> ApplicationError:
    # A held lease clears on its own; everything else will not
    return ApplicationError(e.message, type=type(e).__name__, non_retryable=not isinstance(e, EventBusy))


@activity.defn
async def process_event(input: EventActivityInput) -> EventActivityOutput:
    """Run a newly received event forward."""
    info = activity.info()
    with with_correlation(workflow_id=info.workflow_id, activity_name=info.activity_type):
        activity.logger.info(f"Processing event {input.event_id}")
        try:
            outcome = await get_services().orchestrator.process(input.event_id)
        except PipelineError as e:
            raise _as_application_error(e)
    return _to_output(outcome)


@activity.defn
async def resume_event(input: EventActivityInput) -> EventActivityOutput:
    """Execute the event's scheduled retry.

    Claims the pending retry record first. If an operator retried or the
    record is gone, the run is a no-op and reports the current status.
    """
    info = activity.info()
    services = get_services()
    with with_correlation(workflow_id=info.workflow_id, activity_name=info.activity_type):
        if not services.store.claim_retry(input.event_id):
            event = services.store.get_event(input.event_id)
            if event is None:
                raise ApplicationError(f"Event not found: {input.event_id}", type="EventNotFound", non_retryable=True)
            activity.logger.info(f"No pending retry for {input.event_id}; status {event.status.value}")
            return _to_output(services.orchestrator.outcome(event, processed=False))

        activity.logger.info(f"Resuming event {input.event_id}")
        try:
            outcome = await services.orchestrator.resume(input.event_id)
        except EventBusy as e:
            # Put the claim back so the activity retry can take it again
            services.store.schedule_retry(input.event_id, services.orchestrator.clock())
            raise _as_application_error(e)
        except PipelineError as e:
            raise _as_application_error(e)
    return _to_output(outcome)
