"""
Event Processing Workflow

One workflow per accepted webhook event:
PROCESS → (failed, retry scheduled) → TIMER → RESUME → ... → synced | needs intervention

The workflow id is ``event-{event_id}`` so duplicate dispatches collapse onto
the running execution. Retry timers are durable: a worker restart resumes the
sleep where it left off.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from temporalio import workflow
from temporalio.common import RetryPolicy

with workflow.unsafe.imports_passed_through():
    from activities.pipeline import (
        EventActivityInput,
        EventActivityOutput,
        process_event,
        resume_event,
    )
    from pipeline.backoff import remaining_delay_seconds


# =============================================================================
# Workflow Input/Output
# =============================================================================

@dataclass
class EventWorkflowInput:
    """Input for event processing workflow"""
    event_id: str


@dataclass
class EventWorkflowOutput:
    """Output from event processing workflow"""
    event_id: str
    status: str
    attempts: int
    retry_count: int = 0
    requires_intervention: bool = False
    error: Optional[str] = None


# =============================================================================
# Event Processing Workflow
# =============================================================================

@workflow.defn(name="EventProcessingWorkflow")
class EventProcessingWorkflow:
    """
    Drives one event to a terminal outcome.

    Activity retries cover infrastructure hiccups (worker crash, lease held by
    another run). Business retries are the pipeline's own: the activity
    reports ``next_retry_at`` and the workflow sleeps until then.
    """

    def __init__(self):
        self.status = "received"
        self.attempts = 0

    @workflow.query
    def current_status(self) -> str:
        return self.status

    @workflow.run
    async def run(self, input: EventWorkflowInput) -> EventWorkflowOutput:
        workflow.logger.info(f"Starting event workflow for {input.event_id}")

        activity_options = {
            "start_to_close_timeout": timedelta(minutes=2),
            "retry_policy": RetryPolicy(
                maximum_attempts=5,
                initial_interval=timedelta(seconds=2),
                maximum_interval=timedelta(minutes=1),
                backoff_coefficient=2.0,
                # Unknown events and invalid states won't self-heal
                non_retryable_error_types=["EventNotFound", "InvalidEventState", "NotRetryable"],
            ),
        }

        result: EventActivityOutput = await workflow.execute_activity(
            process_event,
            EventActivityInput(event_id=input.event_id),
            **activity_options,
        )
        self._update(result)

        while result.status == "failed" and result.next_retry_at and not result.requires_intervention:
            delay = remaining_delay_seconds(datetime.fromisoformat(result.next_retry_at), workflow.now())
            workflow.logger.info(f"Event {input.event_id} retry {result.retry_count} in {delay:.1f}s")
            if delay > 0:
                await asyncio.sleep(delay)

            result = await workflow.execute_activity(
                resume_event,
                EventActivityInput(event_id=input.event_id),
                **activity_options,
            )
            self._update(result)
            if not result.processed:
                break

        workflow.logger.info(f"Event workflow for {input.event_id} finished as {result.status}")
        return EventWorkflowOutput(
            event_id=input.event_id,
            status=result.status,
            attempts=self.attempts,
            retry_count=result.retry_count,
            requires_intervention=result.requires_intervention,
            error=result.error,
        )

    def _update(self, result: EventActivityOutput) -> None:
        self.status = result.status
        if result.processed:
            self.attempts += 1
