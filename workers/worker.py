"""Worker for the event pipeline.

Connects to Temporal, listens on the event task queue and executes
EventProcessingWorkflow and its activities. Activities use the same
SQLite-backed services as the API (see ``pipeline.services``).

Run with --queue <name> to override TEMPORAL_TASK_QUEUE.
"""

import argparse
import asyncio
import sys
from pathlib import Path

from temporalio.worker import Worker

# Add repo root to path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from core.config import Settings
from core.observability import configure_logging, get_logger
from temporal_client import get_task_queue, get_temporal_client
from workflows.event_workflow import EventProcessingWorkflow
from activities.pipeline import process_event, resume_event

logger = get_logger(__name__)

WORKFLOWS = [EventProcessingWorkflow]
ACTIVITIES = [process_event, resume_event]


async def run_worker(queue: str):
    """Start a worker listening on the task queue.

    Raises:
        Exception: If connection to Temporal fails
    """
    client = await get_temporal_client()
    logger.info(f"Connected to Temporal namespace {client.namespace}")

    worker = Worker(
        client,
        task_queue=queue,
        workflows=WORKFLOWS,
        activities=ACTIVITIES,
    )
    logger.info(f"Worker created for queue '{queue}': {len(WORKFLOWS)} workflow(s), {len(ACTIVITIES)} activities")

    try:
        logger.info("Worker running... (Ctrl+C to stop)")
        await worker.run()
    except KeyboardInterrupt:
        logger.info("Worker interrupted by user")


def main():
    """Entry point for worker with CLI args."""
    settings = Settings.from_env()
    configure_logging(level=settings.log_level, json_format=settings.log_json)

    parser = argparse.ArgumentParser(description="Event pipeline Temporal worker")
    parser.add_argument(
        "--queue", "-q",
        default=get_task_queue(),
        help="Task queue to poll (default: TEMPORAL_TASK_QUEUE or event-pipeline)",
    )
    args = parser.parse_args()
    asyncio.run(run_worker(queue=args.queue))


if __name__ == "__main__":
    main()
