"""
Event handlers that keep denormalized data consistent.

Each handler receives an outbox event after the originating write committed.
Handlers can run more than once for the same event, so every effect is an
upsert or a delete keyed by ids from the payload.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict

from socialape.config import get_settings
from socialape.db import (
    NOTIFICATION_COMMENT,
    NOTIFICATION_LIKE,
    DbClient,
    EventKind,
    EventRecord,
)
from socialape.storage import StorageClient, object_name_from_url

logger = logging.getLogger(__name__)

TriggerHandler = Callable[[EventRecord, DbClient, StorageClient], None]


def _notify_scream_owner(
    db: DbClient, payload: dict, source_key: str, notification_type: str
) -> None:
    created = db.notify_scream_owner(
        source_id=payload[source_key],
        scream_id=payload["scream_id"],
        sender=payload["user_handle"],
        notification_type=notification_type,
    )
    if not created:
        logger.debug(
            "No %s notification for %s on scream %s",
            notification_type,
            payload[source_key],
            payload["scream_id"],
        )


def on_like_created(event: EventRecord, db: DbClient, storage: StorageClient) -> None:
    _notify_scream_owner(db, event.payload, "like_id", NOTIFICATION_LIKE)


def on_like_deleted(event: EventRecord, db: DbClient, storage: StorageClient) -> None:
    db.delete_notification(event.payload["like_id"])


def on_comment_created(event: EventRecord, db: DbClient, storage: StorageClient) -> None:
    _notify_scream_owner(db, event.payload, "comment_id", NOTIFICATION_COMMENT)


def on_user_image_changed(event: EventRecord, db: DbClient, storage: StorageClient) -> None:
    payload = event.payload
    previous_url = payload.get("previous_image_url") or ""
    default_image = get_settings().default_image_name

    if previous_url and default_image not in previous_url:
        file_name = object_name_from_url(previous_url)
        if file_name and storage.delete(file_name):
            logger.info("Deleted previous image %s of %s", file_name, payload["handle"])

    # Only the latest image may win when events for one user are redelivered.
    user = db.get_user(payload["handle"])
    image_url = user.image_url if user else payload["image_url"]
    updated = db.propagate_user_image(payload["handle"], image_url)
    logger.info("Propagated image of %s to %d screams/comments", payload["handle"], updated)


def on_scream_deleted(event: EventRecord, db: DbClient, storage: StorageClient) -> None:
    scream_id = event.payload["scream_id"]
    removed = db.delete_scream_dependents(scream_id)
    logger.info("Removed %d records referencing scream %s", removed, scream_id)


HANDLERS: Dict[EventKind, TriggerHandler] = {
    EventKind.LIKE_CREATED: on_like_created,
    EventKind.LIKE_DELETED: on_like_deleted,
    EventKind.COMMENT_CREATED: on_comment_created,
    EventKind.USER_IMAGE_CHANGED: on_user_image_changed,
    EventKind.SCREAM_DELETED: on_scream_deleted,
}
