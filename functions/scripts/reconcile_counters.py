"""
Recompute likeCount/commentCount on every scream from the like and comment rows.

Counters only drift when a write was applied outside the API (console edits,
imports) or before the outbox existed. Safe to run repeatedly.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from socialape.db import PostgresDbClient
from socialape.dependencies import get_db_client

logger = logging.getLogger(__name__)


def main() -> int:
    parser = argparse.ArgumentParser(description="Reconcile scream counters")
    parser.add_argument(
        "--database-url",
        type=str,
        default=None,
        help="Override DATABASE_URL",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(name)s %(levelname)s %(asctime)s %(message)s",
    )

    db = PostgresDbClient(args.database_url) if args.database_url else get_db_client()
    corrected = db.recount_scream_counters()
    logger.info("Corrected counters on %d screams", corrected)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
