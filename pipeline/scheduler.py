"""Polling retry scheduler for inline dispatch mode.

Claims due retries from the store and resumes the events. Under Temporal
dispatch the per-event workflow owns its timers and this loop is not run.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from core.models import Actor, utcnow
from core.observability import get_logger
from core.storage import EventStore
from pipeline.errors import EventBusy, EventNotFound
from pipeline.orchestrator import PipelineOrchestrator, ProcessingOutcome

logger = get_logger(__name__)


class RetryScheduler:
    def __init__(
        self,
        store: EventStore,
        orchestrator: PipelineOrchestrator,
        batch_size: int = 50,
        busy_backoff_seconds: float = 5.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.batch_size = batch_size
        self.busy_backoff_seconds = busy_backoff_seconds
        self.clock = clock

    async def run_once(self) -> List[ProcessingOutcome]:
        """Resume every event whose retry is due."""
        now = self.clock()
        due = self.store.claim_due_retries(now, limit=self.batch_size)
        outcomes = []
        for retry in due:
            try:
                outcomes.append(await self.orchestrator.resume(retry.event_id, Actor.scheduler()))
            except EventBusy:
                # Put it back so the next poll picks it up
                self.store.schedule_retry(retry.event_id, now + timedelta(seconds=self.busy_backoff_seconds))
                logger.info(f"Event {retry.event_id} busy; retry deferred")
            except EventNotFound:
                logger.warning(f"Scheduled retry for missing event {retry.event_id} dropped")
        if outcomes:
            logger.info(f"Executed {len(outcomes)} scheduled retries")
        return outcomes

    async def run_forever(self, poll_seconds: float = 5.0, stop: Optional[asyncio.Event] = None) -> None:
        logger.info(f"Retry scheduler polling every {poll_seconds:g}s")
        while stop is None or not stop.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("Retry scheduler pass failed")
            await asyncio.sleep(poll_seconds)
