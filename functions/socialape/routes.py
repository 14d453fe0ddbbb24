"""
HTTP routes for the Social Ape API.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from uuid import uuid4

from fastapi import APIRouter, BackgroundTasks, Body, Depends, File, UploadFile

from socialape.auth import AuthClient
from socialape.config import get_settings
from socialape.db import (
    HANDLE_TAKEN,
    SCREAM_NOT_FOUND,
    USER_NOT_FOUND,
    CommentRecord,
    DbClient,
    EventRecord,
    ScreamRecord,
)
from socialape.dependencies import (
    CurrentUser,
    get_auth_client,
    get_current_user,
    get_db_client,
    get_queue_client,
    get_storage_client,
)
from socialape.errors import AuthError, ConflictError, NotFoundError, ValidationError
from socialape.queue import EventQueue
from socialape.schemas import (
    AuthenticatedUserResponse,
    CommentCreate,
    CommentResponse,
    CredentialsResponse,
    ImageUploadResponse,
    LikeResponse,
    LoginRequest,
    MessageResponse,
    NotificationResponse,
    ScreamCreate,
    ScreamResponse,
    ScreamWithCommentsResponse,
    SignupRequest,
    TokenResponse,
    UserDetailsRequest,
    UserProfileResponse,
)
from socialape.storage import StorageClient
from socialape.validators import (
    EMPTY_FIELD,
    is_empty,
    reduce_user_details,
    validate_login_data,
    validate_signup_data,
)
from socialape.worker import drain

logger = logging.getLogger(__name__)

router = APIRouter()

IMAGE_EXTENSIONS = {"image/jpeg": "jpg", "image/png": "png"}


@dataclass
class EventPublisher:
    """Hands the events a request appended over to the worker."""

    db: DbClient
    queue: EventQueue
    storage: StorageClient
    background_tasks: BackgroundTasks
    inline: bool

    def publish(self, *events: EventRecord | None) -> None:
        published = [e for e in events if e is not None]
        if not published:
            return
        try:
            self.queue.push(e.event_id for e in published)
        except Exception as exc:
            # Already committed to the outbox; the worker poll picks them up.
            logger.warning("Could not queue %d events: %s", len(published), exc)
        if self.inline:
            self.background_tasks.add_task(drain, db=self.db, storage=self.storage)


def get_event_publisher(
    background_tasks: BackgroundTasks,
    db: DbClient = Depends(get_db_client),
    queue: EventQueue = Depends(get_queue_client),
    storage: StorageClient = Depends(get_storage_client),
) -> EventPublisher:
    return EventPublisher(
        db=db,
        queue=queue,
        storage=storage,
        background_tasks=background_tasks,
        inline=get_settings().process_events_inline,
    )


def _with_comments(
    scream: ScreamRecord, comments: list[CommentRecord]
) -> ScreamWithCommentsResponse:
    return ScreamWithCommentsResponse(
        **ScreamResponse.model_validate(scream).model_dump(),
        comments=[CommentResponse.model_validate(c) for c in comments],
    )


# Screams


@router.get("/screams", response_model=list[ScreamResponse])
def get_all_screams(db: DbClient = Depends(get_db_client)):
    return [ScreamResponse.model_validate(s) for s in db.list_screams()]


@router.post("/scream", response_model=ScreamResponse)
def post_scream(
    payload: ScreamCreate,
    user: CurrentUser = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    if is_empty(payload.body):
        raise ValidationError({"body": EMPTY_FIELD})
    scream = db.create_scream(user.handle, payload.body, user.image_url)
    return ScreamResponse.model_validate(scream)


@router.get("/scream/{scream_id}", response_model=ScreamWithCommentsResponse)
def get_scream(scream_id: str, db: DbClient = Depends(get_db_client)):
    scream = db.get_scream(scream_id)
    if not scream:
        raise NotFoundError(SCREAM_NOT_FOUND)
    return _with_comments(scream, db.list_comments(scream_id))


@router.delete("/scream/{scream_id}", response_model=MessageResponse, status_code=201)
def delete_scream(
    scream_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
    publisher: EventPublisher = Depends(get_event_publisher),
):
    """
    Delete a scream owned by the caller. Its comments, likes and notifications
    are removed by the scream_deleted trigger.
    """
    scream = db.get_scream(scream_id)
    if not scream:
        raise NotFoundError(SCREAM_NOT_FOUND)
    if scream.user_handle != user.handle:
        raise AuthError()
    publisher.publish(db.delete_scream(scream_id))
    return MessageResponse(message="Scream deleted successfully")


@router.post("/scream/{scream_id}/like", response_model=ScreamWithCommentsResponse)
def like_scream(
    scream_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
    publisher: EventPublisher = Depends(get_event_publisher),
):
    scream, event = db.like_scream(scream_id, user.handle)
    publisher.publish(event)
    return _with_comments(scream, db.list_comments(scream_id))


@router.post("/scream/{scream_id}/unlike", response_model=ScreamWithCommentsResponse)
def unlike_scream(
    scream_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
    publisher: EventPublisher = Depends(get_event_publisher),
):
    scream, event = db.unlike_scream(scream_id, user.handle)
    publisher.publish(event)
    return _with_comments(scream, db.list_comments(scream_id))


@router.post("/scream/{scream_id}/comment", response_model=CommentResponse)
def comment_on_scream(
    scream_id: str,
    payload: CommentCreate,
    user: CurrentUser = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
    publisher: EventPublisher = Depends(get_event_publisher),
):
    if is_empty(payload.body):
        raise ValidationError({"comment": EMPTY_FIELD})
    comment, event = db.add_comment(scream_id, user.handle, payload.body, user.image_url)
    publisher.publish(event)
    return CommentResponse.model_validate(comment)


# Users


@router.post("/signup", response_model=TokenResponse, status_code=201)
def signup(
    payload: SignupRequest,
    db: DbClient = Depends(get_db_client),
    auth_client: AuthClient = Depends(get_auth_client),
    storage: StorageClient = Depends(get_storage_client),
):
    """
    Create the identity account and the profile, returning a token.

    The handle is the profile key. If writing the profile fails after the
    account exists, the account is deleted again before the error surfaces.
    """
    valid, errors = validate_signup_data(payload.model_dump(by_alias=True))
    if not valid:
        raise ValidationError(errors)

    if db.get_user(payload.handle):
        raise ConflictError(HANDLE_TAKEN)

    uid = auth_client.create_user(payload.email, payload.password)
    try:
        session = auth_client.sign_in(payload.email, payload.password)
        image_url = storage.public_url(get_settings().default_image_name)
        db.create_user(payload.handle, uid, payload.email, image_url)
    except Exception:
        logger.warning("Signup for %s failed, removing auth account %s", payload.handle, uid)
        auth_client.delete_user(uid)
        raise
    return TokenResponse(token=session.token)


@router.post("/login", response_model=TokenResponse)
def login(
    payload: LoginRequest,
    auth_client: AuthClient = Depends(get_auth_client),
):
    valid, errors = validate_login_data(payload.model_dump())
    if not valid:
        raise ValidationError(errors)
    session = auth_client.sign_in(payload.email, payload.password)
    return TokenResponse(token=session.token)


@router.post("/user/image", response_model=ImageUploadResponse)
async def upload_image(
    image: UploadFile = File(...),
    user: CurrentUser = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
    storage: StorageClient = Depends(get_storage_client),
    publisher: EventPublisher = Depends(get_event_publisher),
):
    extension = IMAGE_EXTENSIONS.get(image.content_type or "")
    if not extension:
        raise ValidationError({"error": "Wrong file type submitted"})

    image_name = f"{uuid4().hex}.{extension}"
    storage.upload_bytes(image_name, await image.read(), image.content_type)
    image_url = storage.public_url(image_name)
    publisher.publish(db.update_user_image(user.handle, image_url))
    return ImageUploadResponse(message="Image uploaded successfully", image_url=image_url)


@router.post("/user", response_model=MessageResponse, status_code=201)
def add_user_details(
    payload: UserDetailsRequest,
    user: CurrentUser = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    db.update_user_details(user.handle, reduce_user_details(payload.model_dump()))
    return MessageResponse(message="Details added successfully")


@router.get("/user", response_model=AuthenticatedUserResponse)
def get_authenticated_user(
    user: CurrentUser = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    record = db.get_user(user.handle)
    if not record:
        raise NotFoundError(USER_NOT_FOUND)
    notifications = db.list_notifications(
        user.handle, limit=get_settings().recent_notifications_limit
    )
    return AuthenticatedUserResponse(
        credentials=CredentialsResponse.model_validate(record),
        likes=[LikeResponse.model_validate(l) for l in db.list_likes_by_user(user.handle)],
        notifications=[NotificationResponse.model_validate(n) for n in notifications],
    )


@router.get("/user/{handle}", response_model=UserProfileResponse)
def get_user_details(handle: str, db: DbClient = Depends(get_db_client)):
    record = db.get_user(handle)
    if not record:
        raise NotFoundError(USER_NOT_FOUND)
    return UserProfileResponse(
        credentials=CredentialsResponse.model_validate(record),
        screams=[ScreamResponse.model_validate(s) for s in db.list_screams_by_user(handle)],
    )


@router.post("/notifications", response_model=MessageResponse)
def mark_notifications_read(
    notification_ids: list[str] = Body(...),
    user: CurrentUser = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    db.mark_notifications_read(notification_ids, user.handle)
    return MessageResponse(message="Notifications marked as read")
