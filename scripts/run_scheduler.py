"""Run the retry scheduler (inline dispatch mode).

Polls the store for due retries and resumes the events. A reconciliation
pass runs every --reconcile-every polls.

Under DISPATCH_MODE=temporal the event workflows own their retry timers;
run workers/worker.py instead.
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add repo root to path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from core.config import Settings
from core.observability import configure_logging, get_logger
from pipeline.services import get_services

logger = get_logger(__name__)


async def run(poll_seconds: float, reconcile_every: int):
    services = get_services()
    if services.settings.dispatch_mode == "temporal":
        logger.warning("DISPATCH_MODE is temporal; workflows schedule their own retries")

    polls = 0
    while True:
        try:
            await services.scheduler.run_once()
            polls += 1
            if reconcile_every and polls % reconcile_every == 0:
                report = await services.reconciliation.run()
                logger.info(f"Reconciliation: {report.status.value}")
        except Exception:
            logger.exception("Scheduler pass failed")
        await asyncio.sleep(poll_seconds)


def main():
    settings = Settings.from_env()
    configure_logging(level=settings.log_level, json_format=settings.log_json)

    parser = argparse.ArgumentParser(description="Event pipeline retry scheduler")
    parser.add_argument("--poll", type=float, default=settings.scheduler_poll_seconds,
                        help="Seconds between polls")
    parser.add_argument("--reconcile-every", type=int, default=60,
                        help="Run reconciliation every N polls (0 disables)")
    args = parser.parse_args()

    try:
        asyncio.run(run(args.poll, args.reconcile_every))
    except KeyboardInterrupt:
        logger.info("Scheduler stopped")


if __name__ == "__main__":
    main()
