"""
Run one reconciliation pass over the event store and print the report.

Checks:
- MISSING_TXN: synced events without a transaction (repaired)
- REVERSAL_DRIFT: reversed transactions whose event is still synced (repaired)
- STALLED: unleased events stuck mid-pipeline (resumed)
- LOST_RETRY: failed events whose retry record is gone (rescheduled)
- UNVERIFIED: transactions awaiting operator verification
- RETENTION: terminal events past the retention window (--purge)
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

from core.config import Settings
from core.observability import configure_logging
from pipeline.services import get_services


def main() -> int:
    settings = Settings.from_env()
    configure_logging(level=settings.log_level, json_format=settings.log_json)

    parser = argparse.ArgumentParser(description="Event store reconciliation")
    parser.add_argument("--purge", action="store_true", help="Delete terminal events past retention")
    args = parser.parse_args()

    report = asyncio.run(get_services().reconciliation.run(purge=args.purge))
    print(json.dumps(report.to_dict(), indent=2))
    return 0 if report.status.value != "FAIL" else 1


if __name__ == "__main__":
    sys.exit(main())
