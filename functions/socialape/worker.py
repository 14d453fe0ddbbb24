"""
Worker loop that consumes outbox events and runs their triggers.

Events are claimed before they run, so concurrent workers never process the
same event at once. A failed event returns to PENDING until it has used up
``max_event_attempts``; after that it stays FAILED for inspection.
"""

from __future__ import annotations

import logging
import time
from typing import Optional

from socialape.config import get_settings
from socialape.db import DbClient, EventRecord
from socialape.dependencies import get_db_client, get_queue_client, get_storage_client
from socialape.queue import EventQueue
from socialape.storage import StorageClient
from socialape.triggers import HANDLERS

logger = logging.getLogger(__name__)


def process_event(event: EventRecord, db: DbClient, storage: StorageClient) -> None:
    """
    Run the trigger registered for the event kind.
    """
    handler = HANDLERS.get(event.kind)
    if handler is None:
        logger.warning("[%s] No trigger registered for %s", event.event_id, event.kind)
        return
    handler(event, db, storage)


def _run_claimed(event: EventRecord, db: DbClient, storage: StorageClient) -> None:
    try:
        process_event(event, db, storage)
    except Exception as exc:
        logger.exception("[%s] Trigger %s failed: %s", event.event_id, event.kind.value, exc)
        db.mark_event_failed(
            event.event_id, repr(exc), max_attempts=get_settings().max_event_attempts
        )
        return
    db.mark_event_done(event.event_id)
    logger.info("[%s] Processed %s", event.event_id, event.kind.value)


def process_next(
    *,
    db: Optional[DbClient] = None,
    queue: Optional[EventQueue] = None,
    storage: Optional[StorageClient] = None,
    wait_seconds: float = 0.0,
) -> bool:
    """
    Process one event, waiting up to ``wait_seconds`` for a queued id before
    falling back to the oldest pending outbox event. Returns True if processed.
    """
    db = db or get_db_client()
    queue = queue or get_queue_client()
    storage = storage or get_storage_client()

    event_id = queue.pop(wait_seconds=wait_seconds)
    event: Optional[EventRecord] = None

    if event_id:
        event = db.claim_event(event_id)
        if not event:
            # Already handled by another worker, or the id is unknown.
            logger.debug("Event %s is not pending, skipping", event_id)
            return False
    else:
        # Fallback to polling for events whose queue message was lost.
        event = db.claim_next_pending_event()
        if not event:
            return False

    _run_claimed(event, db, storage)
    return True


def drain(
    *,
    db: Optional[DbClient] = None,
    storage: Optional[StorageClient] = None,
    limit: int = 1000,
) -> int:
    """
    Process pending events straight from the outbox until none are left.

    Used for inline processing in single-process deployments and in tests.
    """
    db = db or get_db_client()
    storage = storage or get_storage_client()
    processed = 0
    while processed < limit:
        event = db.claim_next_pending_event()
        if not event:
            break
        _run_claimed(event, db, storage)
        processed += 1
    return processed


def run_loop(poll_interval_seconds: float = 2.0) -> None:
    """
    Polling loop that waits on the queue for up to ``poll_interval_seconds``
    per round. Intended to be run under systemd/supervisor.
    """
    settings = get_settings()
    db = get_db_client()
    queue = get_queue_client()
    storage = get_storage_client()
    while True:
        try:
            requeued = db.requeue_stale_events(
                lock_timeout_seconds=settings.event_lock_timeout_seconds
            )
            if requeued:
                logger.info("Requeued %d stale events", requeued)
        except Exception:
            logger.exception("Failed to requeue stale events")
        processed = process_next(
            db=db,
            queue=queue,
            storage=storage,
            wait_seconds=poll_interval_seconds,
        )
        if not processed:
            time.sleep(poll_interval_seconds)


if __name__ == "__main__":
    logging.basicConfig(level=get_settings().log_level)
    run_loop()
