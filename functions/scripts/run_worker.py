"""
Run the outbox event worker.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from socialape.config import get_settings
from socialape.worker import drain, run_loop

logger = logging.getLogger(__name__)


def main() -> int:
    parser = argparse.ArgumentParser(description="Social Ape event worker")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Process every pending event and exit",
    )
    parser.add_argument(
        "--poll-interval-seconds",
        type=float,
        default=2.0,
        help="Seconds to wait on the queue before polling the outbox",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=get_settings().log_level,
        format="%(name)s %(levelname)s %(asctime)s %(message)s",
    )

    if args.once:
        processed = drain()
        logger.info("Processed %d events", processed)
        return 0

    run_loop(poll_interval_seconds=args.poll_interval_seconds)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
