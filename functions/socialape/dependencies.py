"""
Dependency wiring for the FastAPI app and the worker.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header

from socialape.auth import AuthClient, FirebaseAuthClient, InMemoryAuthClient
from socialape.config import get_settings
from socialape.db import DbClient, InMemoryDbClient, PostgresDbClient
from socialape.errors import AuthError
from socialape.queue import EventQueue, InMemoryEventQueue, RedisEventQueue
from socialape.storage import InMemoryStorageClient, S3StorageClient, StorageClient

logger = logging.getLogger(__name__)

_db_client: DbClient | None = None
_storage_client: StorageClient | None = None
_auth_client: AuthClient | None = None
_queue_client: EventQueue | None = None


def get_db_client() -> DbClient:
    """
    Return a singleton DB client so state persists across requests.
    """
    global _db_client
    if _db_client:
        return _db_client

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.database_url:
        _db_client = InMemoryDbClient()
    else:
        _db_client = PostgresDbClient(settings.database_url)
    return _db_client


def get_storage_client() -> StorageClient:
    global _storage_client
    if _storage_client:
        return _storage_client

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.storage_bucket:
        _storage_client = InMemoryStorageClient()
    else:
        _storage_client = S3StorageClient(
            bucket=settings.storage_bucket,
            region=settings.storage_region or "",
            endpoint=settings.storage_endpoint or "",
            access_key_id=settings.aws_access_key_id or "",
            secret_access_key=settings.aws_secret_access_key or "",
            public_base_url=settings.storage_public_base_url,
        )
    return _storage_client


def get_auth_client() -> AuthClient:
    global _auth_client
    if _auth_client:
        return _auth_client

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.firebase_web_api_key:
        _auth_client = InMemoryAuthClient()
    else:
        _auth_client = FirebaseAuthClient(
            web_api_key=settings.firebase_web_api_key,
            credentials_file=settings.firebase_credentials_file,
        )
    return _auth_client


def get_queue_client() -> EventQueue:
    """
    Return a singleton queue client for waking event workers.
    """
    global _queue_client
    if _queue_client:
        return _queue_client

    settings = get_settings()
    if settings.redis_url and not settings.use_in_memory_backends:
        _queue_client = RedisEventQueue(
            url=settings.redis_url,
            queue_key=settings.redis_queue_key,
        )
    else:
        _queue_client = InMemoryEventQueue()
    return _queue_client


def reset_clients() -> None:
    """Drop cached clients so the next call rebuilds them from settings."""
    global _db_client, _storage_client, _auth_client, _queue_client
    _db_client = None
    _storage_client = None
    _auth_client = None
    _queue_client = None


@dataclass
class CurrentUser:
    uid: str
    handle: str
    image_url: str


def get_current_user(
    authorization: Optional[str] = Header(default=None),
    auth_client: AuthClient = Depends(get_auth_client),
    db: DbClient = Depends(get_db_client),
) -> CurrentUser:
    """
    Resolve the bearer token to the profile of the signed-in user.
    """
    if not authorization or not authorization.startswith("Bearer "):
        logger.info("No token found")
        raise AuthError()

    token = authorization[len("Bearer ") :].strip()
    uid = auth_client.verify_token(token)
    user = db.get_user_by_uid(uid)
    if not user:
        logger.warning("Token for uid %s has no matching profile", uid)
        raise AuthError()
    return CurrentUser(uid=uid, handle=user.handle, image_url=user.image_url)
