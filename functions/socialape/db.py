"""
Store abstraction for Postgres and an in-memory test implementation.

Writes that need follow-up work (notifications, image propagation, cascading
deletes) append an event to the outbox in the same transaction. The worker
consumes those events; see ``socialape.triggers``.
"""

from __future__ import annotations

import copy
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterable, Optional, Protocol

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Float,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    func,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from socialape.errors import ConflictError, NotFoundError

SCREAM_NOT_FOUND = {"error": "Scream not found"}
USER_NOT_FOUND = {"error": "User not found"}
NOTIFICATION_NOT_FOUND = {"error": "Notification not found"}
HANDLE_TAKEN = {"handle": "Handle is already taken"}
ALREADY_LIKED = {"error": "Scream is already liked"}
NOT_LIKED = {"error": "Scream not liked"}

NOTIFICATION_LIKE = "like"
NOTIFICATION_COMMENT = "comment"


class EventKind(str, Enum):
    LIKE_CREATED = "like_created"
    LIKE_DELETED = "like_deleted"
    COMMENT_CREATED = "comment_created"
    USER_IMAGE_CHANGED = "user_image_changed"
    SCREAM_DELETED = "scream_deleted"


class EventStatus(str, Enum):
    PENDING = "PENDING"
    CLAIMED = "CLAIMED"
    DONE = "DONE"
    FAILED = "FAILED"


def utc_now_iso() -> str:
    """ISO-8601 UTC timestamp with millisecond precision and a ``Z`` suffix."""
    return (
        datetime.now(timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


def new_id() -> str:
    return uuid.uuid4().hex


@dataclass
class UserRecord:
    handle: str
    user_id: str
    email: str
    image_url: str
    created_at: str = field(default_factory=utc_now_iso)
    bio: Optional[str] = None
    website: Optional[str] = None
    location: Optional[str] = None


@dataclass
class ScreamRecord:
    scream_id: str
    user_handle: str
    body: str
    user_image: str
    like_count: int = 0
    comment_count: int = 0
    created_at: str = field(default_factory=utc_now_iso)


@dataclass
class CommentRecord:
    comment_id: str
    scream_id: str
    user_handle: str
    body: str
    user_image: str
    created_at: str = field(default_factory=utc_now_iso)


@dataclass
class LikeRecord:
    like_id: str
    scream_id: str
    user_handle: str
    created_at: str = field(default_factory=utc_now_iso)


@dataclass
class NotificationRecord:
    notification_id: str
    recipient: str
    sender: str
    type: str
    scream_id: str
    read: bool = False
    created_at: str = field(default_factory=utc_now_iso)


@dataclass
class EventRecord:
    event_id: str
    kind: EventKind
    payload: dict
    status: EventStatus = EventStatus.PENDING
    attempts: int = 0
    last_error: Optional[str] = None
    locked_at: Optional[float] = None
    created_at: float = field(default_factory=lambda: time.time())
    updated_at: float = field(default_factory=lambda: time.time())


class DbClient(Protocol):
    """Interface for store access."""

    # Users

    def create_user(
        self, handle: str, user_id: str, email: str, image_url: str
    ) -> UserRecord:
        ...

    def get_user(self, handle: str) -> Optional[UserRecord]:
        ...

    def get_user_by_uid(self, user_id: str) -> Optional[UserRecord]:
        ...

    def update_user_details(self, handle: str, details: dict) -> None:
        ...

    def update_user_image(self, handle: str, image_url: str) -> Optional[EventRecord]:
        ...

    # Screams, comments, likes

    def create_scream(self, user_handle: str, body: str, user_image: str) -> ScreamRecord:
        ...

    def get_scream(self, scream_id: str) -> Optional[ScreamRecord]:
        ...

    def list_screams(self) -> list[ScreamRecord]:
        ...

    def list_screams_by_user(self, handle: str) -> list[ScreamRecord]:
        ...

    def delete_scream(self, scream_id: str) -> EventRecord:
        ...

    def add_comment(
        self, scream_id: str, user_handle: str, body: str, user_image: str
    ) -> tuple[CommentRecord, EventRecord]:
        ...

    def get_comment(self, comment_id: str) -> Optional[CommentRecord]:
        ...

    def list_comments(self, scream_id: str) -> list[CommentRecord]:
        ...

    def like_scream(
        self, scream_id: str, user_handle: str
    ) -> tuple[ScreamRecord, EventRecord]:
        ...

    def unlike_scream(
        self, scream_id: str, user_handle: str
    ) -> tuple[ScreamRecord, EventRecord]:
        ...

    def get_like(self, like_id: str) -> Optional[LikeRecord]:
        ...

    def list_likes_by_user(self, handle: str) -> list[LikeRecord]:
        ...

    # Notifications

    def get_notification(self, notification_id: str) -> Optional[NotificationRecord]:
        ...

    def list_notifications(self, recipient: str, limit: int = 10) -> list[NotificationRecord]:
        ...

    def mark_notifications_read(self, notification_ids: list[str], recipient: str) -> None:
        ...

    def save_notification(self, notification: NotificationRecord) -> None:
        ...

    def notify_scream_owner(
        self, *, source_id: str, scream_id: str, sender: str, notification_type: str
    ) -> bool:
        """
        Create the notification for a like or comment, keyed by its id.

        Nothing is written unless the scream and the like or comment still
        exist and the sender is not the scream owner. The checks and the write
        happen in one atomic step. Returns True when the notification exists
        afterwards.
        """
        ...

    def delete_notification(self, notification_id: str) -> bool:
        ...

    # Denormalization upkeep

    def propagate_user_image(self, handle: str, image_url: str) -> int:
        ...

    def delete_scream_dependents(self, scream_id: str) -> int:
        ...

    def recount_scream_counters(self) -> int:
        ...

    # Outbox

    def get_event(self, event_id: str) -> Optional[EventRecord]:
        ...

    def claim_event(self, event_id: str) -> Optional[EventRecord]:
        ...

    def claim_next_pending_event(self) -> Optional[EventRecord]:
        ...

    def mark_event_done(self, event_id: str) -> None:
        ...

    def mark_event_failed(self, event_id: str, error: str, max_attempts: int) -> None:
        ...

    def requeue_stale_events(self, lock_timeout_seconds: float = 600) -> int:
        ...


def _newest_first(records: Iterable) -> list:
    # Ties on created_at keep the most recently inserted record first.
    return sorted(reversed(list(records)), key=lambda r: r.created_at, reverse=True)


class InMemoryDbClient:
    """
    Simple in-memory store for development and tests.

    A re-entrant lock makes every public operation atomic within the process.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self.users: Dict[str, UserRecord] = {}
        self.screams: Dict[str, ScreamRecord] = {}
        self.comments: Dict[str, CommentRecord] = {}
        self.likes: Dict[str, LikeRecord] = {}
        self.notifications: Dict[str, NotificationRecord] = {}
        self.events: Dict[str, EventRecord] = {}

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        with self._lock:
            self.users.clear()
            self.screams.clear()
            self.comments.clear()
            self.likes.clear()
            self.notifications.clear()
            self.events.clear()

    def _append_event(self, kind: EventKind, payload: dict) -> EventRecord:
        event = EventRecord(event_id=new_id(), kind=kind, payload=payload)
        self.events[event.event_id] = event
        return copy.copy(event)

    def create_user(
        self, handle: str, user_id: str, email: str, image_url: str
    ) -> UserRecord:
        with self._lock:
            if handle in self.users:
                raise ConflictError(HANDLE_TAKEN)
            if any(u.user_id == user_id for u in self.users.values()):
                raise ConflictError({"error": "Account already has a profile"})
            user = UserRecord(
                handle=handle, user_id=user_id, email=email, image_url=image_url
            )
            self.users[handle] = user
            return copy.copy(user)

    def get_user(self, handle: str) -> Optional[UserRecord]:
        user = self.users.get(handle)
        return copy.copy(user) if user else None

    def get_user_by_uid(self, user_id: str) -> Optional[UserRecord]:
        with self._lock:
            for user in self.users.values():
                if user.user_id == user_id:
                    return copy.copy(user)
            return None

    def update_user_details(self, handle: str, details: dict) -> None:
        with self._lock:
            user = self.users.get(handle)
            if not user:
                raise NotFoundError(USER_NOT_FOUND)
            for key in ("bio", "website", "location"):
                if key in details:
                    setattr(user, key, details[key])

    def update_user_image(self, handle: str, image_url: str) -> Optional[EventRecord]:
        with self._lock:
            user = self.users.get(handle)
            if not user:
                raise NotFoundError(USER_NOT_FOUND)
            previous = user.image_url
            if previous == image_url:
                return None
            user.image_url = image_url
            return self._append_event(
                EventKind.USER_IMAGE_CHANGED,
                {
                    "handle": handle,
                    "previous_image_url": previous,
                    "image_url": image_url,
                },
            )

    def create_scream(self, user_handle: str, body: str, user_image: str) -> ScreamRecord:
        with self._lock:
            scream = ScreamRecord(
                scream_id=new_id(),
                user_handle=user_handle,
                body=body,
                user_image=user_image,
            )
            self.screams[scream.scream_id] = scream
            return copy.copy(scream)

    def get_scream(self, scream_id: str) -> Optional[ScreamRecord]:
        scream = self.screams.get(scream_id)
        return copy.copy(scream) if scream else None

    def list_screams(self) -> list[ScreamRecord]:
        with self._lock:
            return [copy.copy(s) for s in _newest_first(self.screams.values())]

    def list_screams_by_user(self, handle: str) -> list[ScreamRecord]:
        with self._lock:
            return [
                copy.copy(s)
                for s in _newest_first(self.screams.values())
                if s.user_handle == handle
            ]

    def delete_scream(self, scream_id: str) -> EventRecord:
        with self._lock:
            if self.screams.pop(scream_id, None) is None:
                raise NotFoundError(SCREAM_NOT_FOUND)
            return self._append_event(
                EventKind.SCREAM_DELETED, {"scream_id": scream_id}
            )

    def add_comment(
        self, scream_id: str, user_handle: str, body: str, user_image: str
    ) -> tuple[CommentRecord, EventRecord]:
        with self._lock:
            scream = self.screams.get(scream_id)
            if not scream:
                raise NotFoundError(SCREAM_NOT_FOUND)
            comment = CommentRecord(
                comment_id=new_id(),
                scream_id=scream_id,
                user_handle=user_handle,
                body=body,
                user_image=user_image,
            )
            scream.comment_count += 1
            self.comments[comment.comment_id] = comment
            event = self._append_event(
                EventKind.COMMENT_CREATED,
                {
                    "comment_id": comment.comment_id,
                    "scream_id": scream_id,
                    "user_handle": user_handle,
                },
            )
            return copy.copy(comment), event

    def get_comment(self, comment_id: str) -> Optional[CommentRecord]:
        comment = self.comments.get(comment_id)
        return copy.copy(comment) if comment else None

    def list_comments(self, scream_id: str) -> list[CommentRecord]:
        with self._lock:
            return [
                copy.copy(c)
                for c in _newest_first(self.comments.values())
                if c.scream_id == scream_id
            ]

    def _find_like(self, scream_id: str, user_handle: str) -> Optional[LikeRecord]:
        for like in self.likes.values():
            if like.scream_id == scream_id and like.user_handle == user_handle:
                return like
        return None

    def like_scream(
        self, scream_id: str, user_handle: str
    ) -> tuple[ScreamRecord, EventRecord]:
        with self._lock:
            scream = self.screams.get(scream_id)
            if not scream:
                raise NotFoundError(SCREAM_NOT_FOUND)
            if self._find_like(scream_id, user_handle):
                raise ConflictError(ALREADY_LIKED)
            like = LikeRecord(
                like_id=new_id(), scream_id=scream_id, user_handle=user_handle
            )
            self.likes[like.like_id] = like
            scream.like_count += 1
            event = self._append_event(
                EventKind.LIKE_CREATED,
                {
                    "like_id": like.like_id,
                    "scream_id": scream_id,
                    "user_handle": user_handle,
                },
            )
            return copy.copy(scream), event

    def unlike_scream(
        self, scream_id: str, user_handle: str
    ) -> tuple[ScreamRecord, EventRecord]:
        with self._lock:
            scream = self.screams.get(scream_id)
            if not scream:
                raise NotFoundError(SCREAM_NOT_FOUND)
            like = self._find_like(scream_id, user_handle)
            if not like:
                raise ConflictError(NOT_LIKED)
            del self.likes[like.like_id]
            scream.like_count -= 1
            event = self._append_event(
                EventKind.LIKE_DELETED,
                {
                    "like_id": like.like_id,
                    "scream_id": scream_id,
                    "user_handle": user_handle,
                },
            )
            return copy.copy(scream), event

    def get_like(self, like_id: str) -> Optional[LikeRecord]:
        like = self.likes.get(like_id)
        return copy.copy(like) if like else None

    def list_likes_by_user(self, handle: str) -> list[LikeRecord]:
        with self._lock:
            return [copy.copy(l) for l in self.likes.values() if l.user_handle == handle]

    def get_notification(self, notification_id: str) -> Optional[NotificationRecord]:
        notification = self.notifications.get(notification_id)
        return copy.copy(notification) if notification else None

    def list_notifications(self, recipient: str, limit: int = 10) -> list[NotificationRecord]:
        with self._lock:
            items = [
                copy.copy(n)
                for n in _newest_first(self.notifications.values())
                if n.recipient == recipient
            ]
            return items[:limit]

    def mark_notifications_read(self, notification_ids: list[str], recipient: str) -> None:
        with self._lock:
            targets = []
            for notification_id in notification_ids:
                notification = self.notifications.get(notification_id)
                if not notification or notification.recipient != recipient:
                    raise NotFoundError(NOTIFICATION_NOT_FOUND)
                targets.append(notification)
            for notification in targets:
                notification.read = True

    def save_notification(self, notification: NotificationRecord) -> None:
        with self._lock:
            self.notifications[notification.notification_id] = copy.copy(notification)

    def notify_scream_owner(
        self, *, source_id: str, scream_id: str, sender: str, notification_type: str
    ) -> bool:
        sources = self.likes if notification_type == NOTIFICATION_LIKE else self.comments
        with self._lock:
            scream = self.screams.get(scream_id)
            if not scream or scream.user_handle == sender or source_id not in sources:
                return False
            if source_id not in self.notifications:
                self.notifications[source_id] = NotificationRecord(
                    notification_id=source_id,
                    recipient=scream.user_handle,
                    sender=sender,
                    type=notification_type,
                    scream_id=scream_id,
                )
            return True

    def delete_notification(self, notification_id: str) -> bool:
        with self._lock:
            return self.notifications.pop(notification_id, None) is not None

    def propagate_user_image(self, handle: str, image_url: str) -> int:
        with self._lock:
            updated = 0
            for item in list(self.screams.values()) + list(self.comments.values()):
                if item.user_handle == handle:
                    item.user_image = image_url
                    updated += 1
            return updated

    def delete_scream_dependents(self, scream_id: str) -> int:
        with self._lock:
            removed = 0
            for table in (self.comments, self.likes, self.notifications):
                for key in [k for k, v in table.items() if v.scream_id == scream_id]:
                    del table[key]
                    removed += 1
            return removed

    def recount_scream_counters(self) -> int:
        with self._lock:
            corrected = 0
            for scream in self.screams.values():
                likes = sum(1 for l in self.likes.values() if l.scream_id == scream.scream_id)
                comments = sum(
                    1 for c in self.comments.values() if c.scream_id == scream.scream_id
                )
                if scream.like_count != likes or scream.comment_count != comments:
                    scream.like_count = likes
                    scream.comment_count = comments
                    corrected += 1
            return corrected

    def get_event(self, event_id: str) -> Optional[EventRecord]:
        event = self.events.get(event_id)
        return copy.copy(event) if event else None

    def _claim(self, event: EventRecord) -> EventRecord:
        event.status = EventStatus.CLAIMED
        event.locked_at = time.time()
        event.updated_at = event.locked_at
        return copy.copy(event)

    def claim_event(self, event_id: str) -> Optional[EventRecord]:
        with self._lock:
            event = self.events.get(event_id)
            if not event or event.status != EventStatus.PENDING:
                return None
            return self._claim(event)

    def claim_next_pending_event(self) -> Optional[EventRecord]:
        with self._lock:
            for event in sorted(self.events.values(), key=lambda e: e.created_at):
                if event.status == EventStatus.PENDING:
                    return self._claim(event)
            return None

    def mark_event_done(self, event_id: str) -> None:
        with self._lock:
            event = self.events.get(event_id)
            if event:
                event.status = EventStatus.DONE
                event.locked_at = None
                event.updated_at = time.time()

    def mark_event_failed(self, event_id: str, error: str, max_attempts: int) -> None:
        with self._lock:
            event = self.events.get(event_id)
            if not event:
                return
            event.attempts += 1
            event.last_error = error
            event.status = (
                EventStatus.FAILED if event.attempts >= max_attempts else EventStatus.PENDING
            )
            event.locked_at = None
            event.updated_at = time.time()

    def requeue_stale_events(self, lock_timeout_seconds: float = 600) -> int:
        now = time.time()
        requeued = 0
        with self._lock:
            for event in self.events.values():
                if (
                    event.status == EventStatus.CLAIMED
                    and event.locked_at
                    and now - event.locked_at > lock_timeout_seconds
                ):
                    event.status = EventStatus.PENDING
                    event.locked_at = None
                    event.updated_at = now
                    requeued += 1
        return requeued


class PostgresDbClient:
    """
    SQLAlchemy-backed implementation. Accepts any SQLAlchemy URL (e.g., Postgres or SQLite for tests).

    Every mutating call runs in one transaction. Screams are locked
    ``FOR UPDATE`` while their counters change, which serializes concurrent
    like/unlike/comment requests for the same scream on Postgres.
    """

    def __init__(self, database_url: str):
        if not database_url:
            raise ValueError("DATABASE_URL is required for PostgresDbClient")
        self.engine = create_engine(
            database_url,
            future=True,
            pool_pre_ping=True,
            pool_recycle=1800,
        )
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine)

    # Row conversion

    def _to_user_record(self, row: "UserRow") -> UserRecord:
        return UserRecord(
            handle=row.handle,
            user_id=row.user_id,
            email=row.email,
            image_url=row.image_url,
            created_at=row.created_at,
            bio=row.bio,
            website=row.website,
            location=row.location,
        )

    def _to_scream_record(self, row: "ScreamRow") -> ScreamRecord:
        return ScreamRecord(
            scream_id=row.id,
            user_handle=row.user_handle,
            body=row.body,
            user_image=row.user_image,
            like_count=row.like_count,
            comment_count=row.comment_count,
            created_at=row.created_at,
        )

    def _to_comment_record(self, row: "CommentRow") -> CommentRecord:
        return CommentRecord(
            comment_id=row.id,
            scream_id=row.scream_id,
            user_handle=row.user_handle,
            body=row.body,
            user_image=row.user_image,
            created_at=row.created_at,
        )

    def _to_like_record(self, row: "LikeRow") -> LikeRecord:
        return LikeRecord(
            like_id=row.id,
            scream_id=row.scream_id,
            user_handle=row.user_handle,
            created_at=row.created_at,
        )

    def _to_notification_record(self, row: "NotificationRow") -> NotificationRecord:
        return NotificationRecord(
            notification_id=row.id,
            recipient=row.recipient,
            sender=row.sender,
            type=row.type,
            scream_id=row.scream_id,
            read=row.read,
            created_at=row.created_at,
        )

    def _to_event_record(self, row: "EventRow") -> EventRecord:
        return EventRecord(
            event_id=row.id,
            kind=EventKind(row.kind),
            payload=row.payload,
            status=EventStatus(row.status),
            attempts=row.attempts,
            last_error=row.last_error,
            locked_at=row.locked_at,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def _append_event(self, session: Session, kind: EventKind, payload: dict) -> "EventRow":
        now = time.time()
        row = EventRow(
            id=new_id(),
            kind=kind.value,
            payload=payload,
            status=EventStatus.PENDING.value,
            attempts=0,
            created_at=now,
            updated_at=now,
        )
        session.add(row)
        return row

    def _get_scream_for_update(self, session: Session, scream_id: str) -> "ScreamRow":
        stmt = select(ScreamRow).where(ScreamRow.id == scream_id).with_for_update()
        scream = session.execute(stmt).scalar_one_or_none()
        if not scream:
            raise NotFoundError(SCREAM_NOT_FOUND)
        return scream

    # Users

    def create_user(
        self, handle: str, user_id: str, email: str, image_url: str
    ) -> UserRecord:
        with self.Session() as session:
            if session.get(UserRow, handle):
                raise ConflictError(HANDLE_TAKEN)
            row = UserRow(
                handle=handle,
                user_id=user_id,
                email=email,
                image_url=image_url,
                created_at=utc_now_iso(),
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError(HANDLE_TAKEN) from exc
            return self._to_user_record(row)

    def get_user(self, handle: str) -> Optional[UserRecord]:
        with self.Session() as session:
            row = session.get(UserRow, handle)
            return self._to_user_record(row) if row else None

    def get_user_by_uid(self, user_id: str) -> Optional[UserRecord]:
        with self.Session() as session:
            stmt = select(UserRow).where(UserRow.user_id == user_id)
            row = session.execute(stmt).scalar_one_or_none()
            return self._to_user_record(row) if row else None

    def update_user_details(self, handle: str, details: dict) -> None:
        with self.Session() as session:
            row = session.get(UserRow, handle)
            if not row:
                raise NotFoundError(USER_NOT_FOUND)
            for key in ("bio", "website", "location"):
                if key in details:
                    setattr(row, key, details[key])
            session.commit()

    def update_user_image(self, handle: str, image_url: str) -> Optional[EventRecord]:
        with self.Session() as session:
            stmt = select(UserRow).where(UserRow.handle == handle).with_for_update()
            row = session.execute(stmt).scalar_one_or_none()
            if not row:
                raise NotFoundError(USER_NOT_FOUND)
            previous = row.image_url
            if previous == image_url:
                return None
            row.image_url = image_url
            event = self._append_event(
                session,
                EventKind.USER_IMAGE_CHANGED,
                {
                    "handle": handle,
                    "previous_image_url": previous,
                    "image_url": image_url,
                },
            )
            session.commit()
            return self._to_event_record(event)

    # Screams

    def create_scream(self, user_handle: str, body: str, user_image: str) -> ScreamRecord:
        with self.Session() as session:
            row = ScreamRow(
                id=new_id(),
                user_handle=user_handle,
                body=body,
                user_image=user_image,
                like_count=0,
                comment_count=0,
                created_at=utc_now_iso(),
            )
            session.add(row)
            session.commit()
            return self._to_scream_record(row)

    def get_scream(self, scream_id: str) -> Optional[ScreamRecord]:
        with self.Session() as session:
            row = session.get(ScreamRow, scream_id)
            return self._to_scream_record(row) if row else None

    def list_screams(self) -> list[ScreamRecord]:
        with self.Session() as session:
            stmt = select(ScreamRow).order_by(ScreamRow.created_at.desc())
            return [self._to_scream_record(r) for r in session.execute(stmt).scalars()]

    def list_screams_by_user(self, handle: str) -> list[ScreamRecord]:
        with self.Session() as session:
            stmt = (
                select(ScreamRow)
                .where(ScreamRow.user_handle == handle)
                .order_by(ScreamRow.created_at.desc())
            )
            return [self._to_scream_record(r) for r in session.execute(stmt).scalars()]

    def delete_scream(self, scream_id: str) -> EventRecord:
        with self.Session() as session:
            row = self._get_scream_for_update(session, scream_id)
            session.delete(row)
            event = self._append_event(
                session, EventKind.SCREAM_DELETED, {"scream_id": scream_id}
            )
            session.commit()
            return self._to_event_record(event)

    # Comments

    def add_comment(
        self, scream_id: str, user_handle: str, body: str, user_image: str
    ) -> tuple[CommentRecord, EventRecord]:
        with self.Session() as session:
            scream = self._get_scream_for_update(session, scream_id)
            scream.comment_count = scream.comment_count + 1
            row = CommentRow(
                id=new_id(),
                scream_id=scream_id,
                user_handle=user_handle,
                body=body,
                user_image=user_image,
                created_at=utc_now_iso(),
            )
            session.add(row)
            event = self._append_event(
                session,
                EventKind.COMMENT_CREATED,
                {
                    "comment_id": row.id,
                    "scream_id": scream_id,
                    "user_handle": user_handle,
                },
            )
            session.commit()
            return self._to_comment_record(row), self._to_event_record(event)

    def get_comment(self, comment_id: str) -> Optional[CommentRecord]:
        with self.Session() as session:
            row = session.get(CommentRow, comment_id)
            return self._to_comment_record(row) if row else None

    def list_comments(self, scream_id: str) -> list[CommentRecord]:
        with self.Session() as session:
            stmt = (
                select(CommentRow)
                .where(CommentRow.scream_id == scream_id)
                .order_by(CommentRow.created_at.desc())
            )
            return [self._to_comment_record(r) for r in session.execute(stmt).scalars()]

    # Likes

    def _find_like(self, session: Session, scream_id: str, user_handle: str) -> Optional["LikeRow"]:
        stmt = select(LikeRow).where(
            LikeRow.scream_id == scream_id, LikeRow.user_handle == user_handle
        )
        return session.execute(stmt).scalar_one_or_none()

    def like_scream(
        self, scream_id: str, user_handle: str
    ) -> tuple[ScreamRecord, EventRecord]:
        with self.Session() as session:
            scream = self._get_scream_for_update(session, scream_id)
            if self._find_like(session, scream_id, user_handle):
                raise ConflictError(ALREADY_LIKED)
            like = LikeRow(
                id=new_id(),
                scream_id=scream_id,
                user_handle=user_handle,
                created_at=utc_now_iso(),
            )
            session.add(like)
            scream.like_count = scream.like_count + 1
            event = self._append_event(
                session,
                EventKind.LIKE_CREATED,
                {"like_id": like.id, "scream_id": scream_id, "user_handle": user_handle},
            )
            try:
                session.commit()
            except IntegrityError as exc:
                # Unique (scream_id, user_handle) caught a concurrent like.
                session.rollback()
                raise ConflictError(ALREADY_LIKED) from exc
            return self._to_scream_record(scream), self._to_event_record(event)

    def unlike_scream(
        self, scream_id: str, user_handle: str
    ) -> tuple[ScreamRecord, EventRecord]:
        with self.Session() as session:
            scream = self._get_scream_for_update(session, scream_id)
            like = self._find_like(session, scream_id, user_handle)
            if not like:
                raise ConflictError(NOT_LIKED)
            like_id = like.id
            session.delete(like)
            scream.like_count = scream.like_count - 1
            event = self._append_event(
                session,
                EventKind.LIKE_DELETED,
                {"like_id": like_id, "scream_id": scream_id, "user_handle": user_handle},
            )
            session.commit()
            return self._to_scream_record(scream), self._to_event_record(event)

    def get_like(self, like_id: str) -> Optional[LikeRecord]:
        with self.Session() as session:
            row = session.get(LikeRow, like_id)
            return self._to_like_record(row) if row else None

    def list_likes_by_user(self, handle: str) -> list[LikeRecord]:
        with self.Session() as session:
            stmt = select(LikeRow).where(LikeRow.user_handle == handle)
            return [self._to_like_record(r) for r in session.execute(stmt).scalars()]

    # Notifications

    def get_notification(self, notification_id: str) -> Optional[NotificationRecord]:
        with self.Session() as session:
            row = session.get(NotificationRow, notification_id)
            return self._to_notification_record(row) if row else None

    def list_notifications(self, recipient: str, limit: int = 10) -> list[NotificationRecord]:
        with self.Session() as session:
            stmt = (
                select(NotificationRow)
                .where(NotificationRow.recipient == recipient)
                .order_by(NotificationRow.created_at.desc())
                .limit(limit)
            )
            return [
                self._to_notification_record(r) for r in session.execute(stmt).scalars()
            ]

    def mark_notifications_read(self, notification_ids: list[str], recipient: str) -> None:
        wanted = set(notification_ids)
        if not wanted:
            return
        with self.Session() as session:
            stmt = (
                select(NotificationRow)
                .where(NotificationRow.id.in_(wanted))
                .with_for_update()
            )
            rows = list(session.execute(stmt).scalars())
            if len(rows) != len(wanted) or any(r.recipient != recipient for r in rows):
                raise NotFoundError(NOTIFICATION_NOT_FOUND)
            for row in rows:
                row.read = True
            session.commit()

    def save_notification(self, notification: NotificationRecord) -> None:
        with self.Session() as session:
            row = session.get(NotificationRow, notification.notification_id)
            if not row:
                row = NotificationRow(id=notification.notification_id)
                session.add(row)
            row.recipient = notification.recipient
            row.sender = notification.sender
            row.type = notification.type
            row.scream_id = notification.scream_id
            row.read = notification.read
            row.created_at = notification.created_at
            session.commit()

    def notify_scream_owner(
        self, *, source_id: str, scream_id: str, sender: str, notification_type: str
    ) -> bool:
        source_row = LikeRow if notification_type == NOTIFICATION_LIKE else CommentRow
        with self.Session() as session:
            # Unlike and delete lock the same scream row, so neither can slip in
            # between the checks and the insert.
            stmt = select(ScreamRow).where(ScreamRow.id == scream_id).with_for_update()
            scream = session.execute(stmt).scalar_one_or_none()
            if not scream or scream.user_handle == sender:
                return False
            if not session.get(source_row, source_id):
                return False
            if session.get(NotificationRow, source_id):
                return True
            session.add(
                NotificationRow(
                    id=source_id,
                    recipient=scream.user_handle,
                    sender=sender,
                    type=notification_type,
                    read=False,
                    scream_id=scream_id,
                    created_at=utc_now_iso(),
                )
            )
            try:
                session.commit()
            except IntegrityError:
                # Another worker inserted it first.
                session.rollback()
            return True

    def delete_notification(self, notification_id: str) -> bool:
        with self.Session() as session:
            result = session.execute(
                delete(NotificationRow).where(NotificationRow.id == notification_id)
            )
            session.commit()
            return bool(result.rowcount)

    # Denormalization upkeep

    def propagate_user_image(self, handle: str, image_url: str) -> int:
        with self.Session() as session:
            screams = session.execute(
                update(ScreamRow)
                .where(ScreamRow.user_handle == handle)
                .values(user_image=image_url)
            )
            comments = session.execute(
                update(CommentRow)
                .where(CommentRow.user_handle == handle)
                .values(user_image=image_url)
            )
            session.commit()
            return (screams.rowcount or 0) + (comments.rowcount or 0)

    def delete_scream_dependents(self, scream_id: str) -> int:
        removed = 0
        with self.Session() as session:
            for model in (CommentRow, LikeRow, NotificationRow):
                result = session.execute(delete(model).where(model.scream_id == scream_id))
                removed += result.rowcount or 0
            session.commit()
        return removed

    def recount_scream_counters(self) -> int:
        with self.Session() as session:
            like_counts = dict(
                session.execute(
                    select(LikeRow.scream_id, func.count()).group_by(LikeRow.scream_id)
                ).all()
            )
            comment_counts = dict(
                session.execute(
                    select(CommentRow.scream_id, func.count()).group_by(CommentRow.scream_id)
                ).all()
            )
            corrected = 0
            for row in session.execute(select(ScreamRow).with_for_update()).scalars():
                likes = like_counts.get(row.id, 0)
                comments = comment_counts.get(row.id, 0)
                if row.like_count != likes or row.comment_count != comments:
                    row.like_count = likes
                    row.comment_count = comments
                    corrected += 1
            session.commit()
            return corrected

    # Outbox

    def get_event(self, event_id: str) -> Optional[EventRecord]:
        with self.Session() as session:
            row = session.get(EventRow, event_id)
            return self._to_event_record(row) if row else None

    def claim_event(self, event_id: str) -> Optional[EventRecord]:
        now = time.time()
        with self.Session() as session:
            stmt = (
                select(EventRow)
                .where(
                    EventRow.id == event_id,
                    EventRow.status == EventStatus.PENDING.value,
                )
                .with_for_update(skip_locked=True)
            )
            row = session.execute(stmt).scalar_one_or_none()
            if not row:
                return None
            row.status = EventStatus.CLAIMED.value
            row.locked_at = now
            row.updated_at = now
            session.commit()
            return self._to_event_record(row)

    def claim_next_pending_event(self) -> Optional[EventRecord]:
        now = time.time()
        with self.Session() as session:
            stmt = (
                select(EventRow)
                .where(EventRow.status == EventStatus.PENDING.value)
                .order_by(EventRow.created_at.asc())
                .limit(1)
                .with_for_update(skip_locked=True)
            )
            row = session.execute(stmt).scalar_one_or_none()
            if not row:
                return None
            row.status = EventStatus.CLAIMED.value
            row.locked_at = now
            row.updated_at = now
            session.commit()
            return self._to_event_record(row)

    def mark_event_done(self, event_id: str) -> None:
        with self.Session() as session:
            row = session.get(EventRow, event_id)
            if not row:
                return
            row.status = EventStatus.DONE.value
            row.locked_at = None
            row.updated_at = time.time()
            session.commit()

    def mark_event_failed(self, event_id: str, error: str, max_attempts: int) -> None:
        with self.Session() as session:
            row = session.get(EventRow, event_id)
            if not row:
                return
            row.attempts = row.attempts + 1
            row.last_error = error[:2000]
            row.status = (
                EventStatus.FAILED.value
                if row.attempts >= max_attempts
                else EventStatus.PENDING.value
            )
            row.locked_at = None
            row.updated_at = time.time()
            session.commit()

    def requeue_stale_events(self, lock_timeout_seconds: float = 600) -> int:
        cutoff = time.time() - lock_timeout_seconds
        with self.Session() as session:
            result = session.execute(
                update(EventRow)
                .where(
                    EventRow.status == EventStatus.CLAIMED.value,
                    EventRow.locked_at != None,
                    EventRow.locked_at < cutoff,
                )
                .values(
                    status=EventStatus.PENDING.value,
                    locked_at=None,
                    updated_at=time.time(),
                )
            )
            session.commit()
            return result.rowcount or 0


Base = declarative_base()


class UserRow(Base):
    __tablename__ = "users"

    handle = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, unique=True, index=True)
    email = Column(String, nullable=False)
    image_url = Column(String, nullable=False)
    bio = Column(Text, nullable=True)
    website = Column(String, nullable=True)
    location = Column(String, nullable=True)
    created_at = Column(String, nullable=False)


class ScreamRow(Base):
    __tablename__ = "screams"

    id = Column(String, primary_key=True)
    user_handle = Column(String, nullable=False, index=True)
    body = Column(Text, nullable=False)
    user_image = Column(String, nullable=False)
    like_count = Column(Integer, nullable=False, default=0)
    comment_count = Column(Integer, nullable=False, default=0)
    created_at = Column(String, nullable=False, index=True)


class CommentRow(Base):
    __tablename__ = "comments"

    id = Column(String, primary_key=True)
    scream_id = Column(String, nullable=False, index=True)
    user_handle = Column(String, nullable=False, index=True)
    body = Column(Text, nullable=False)
    user_image = Column(String, nullable=False)
    created_at = Column(String, nullable=False)


class LikeRow(Base):
    __tablename__ = "likes"
    __table_args__ = (UniqueConstraint("scream_id", "user_handle"),)

    id = Column(String, primary_key=True)
    scream_id = Column(String, nullable=False, index=True)
    user_handle = Column(String, nullable=False, index=True)
    created_at = Column(String, nullable=False)


class NotificationRow(Base):
    __tablename__ = "notifications"

    id = Column(String, primary_key=True)
    recipient = Column(String, nullable=False, index=True)
    sender = Column(String, nullable=False)
    type = Column(String, nullable=False)
    read = Column(Boolean, nullable=False, default=False)
    scream_id = Column(String, nullable=False, index=True)
    created_at = Column(String, nullable=False)


class EventRow(Base):
    __tablename__ = "outbox_events"

    id = Column(String, primary_key=True)
    kind = Column(String, nullable=False)
    payload = Column(JSON, nullable=False)
    status = Column(String, nullable=False, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    locked_at = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)
