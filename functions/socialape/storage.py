"""
Storage abstraction for S3-compatible object storage and in-memory testing.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol
from urllib.parse import quote

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError


class StorageClient(Protocol):
    """Defines the operations the API needs from object storage."""

    def upload_bytes(self, path: str, data: bytes, content_type: str) -> None:
        ...

    def delete(self, path: str) -> bool:
        ...

    def exists(self, path: str) -> bool:
        ...

    def public_url(self, path: str) -> str:
        ...


def object_name_from_url(url: str) -> str:
    """
    Return the object name embedded in a public image URL.

    The name sits between the last ``/`` and the query string, e.g.
    ``https://host/o/1234.png?alt=media`` -> ``1234.png``.
    """
    path = url.split("?", 1)[0]
    return path[path.rfind("/") + 1 :]


@dataclass
class InMemoryStorageClient:
    """Test double for storage interactions."""

    base_url: str = "https://example.test/storage"
    stored_objects: dict = None

    def __post_init__(self):
        if self.stored_objects is None:
            self.stored_objects = {}

    def upload_bytes(self, path: str, data: bytes, content_type: str) -> None:
        self.stored_objects[path] = (bytes(data), content_type)

    def delete(self, path: str) -> bool:
        return self.stored_objects.pop(path, None) is not None

    def exists(self, path: str) -> bool:
        return path in self.stored_objects

    def public_url(self, path: str) -> str:
        return f"{self.base_url}/o/{quote(path)}?alt=media"


@dataclass
class S3StorageClient:
    """
    S3-compatible storage client for profile images.
    """

    bucket: str
    region: str
    endpoint: str
    access_key_id: str
    secret_access_key: str
    public_base_url: Optional[str] = None

    def __post_init__(self):
        config = Config(
            s3={"addressing_style": "virtual"},
            signature_version="s3v4",
        )
        self._client = boto3.client(
            "s3",
            endpoint_url=self.endpoint or None,
            region_name=self.region or None,
            aws_access_key_id=self.access_key_id or None,
            aws_secret_access_key=self.secret_access_key or None,
            config=config,
        )

    def upload_bytes(self, path: str, data: bytes, content_type: str) -> None:
        self._client.put_object(
            Bucket=self.bucket,
            Key=path,
            Body=data,
            ContentType=content_type,
        )

    def delete(self, path: str) -> bool:
        # delete_object succeeds for missing keys.
        existed = self.exists(path)
        self._client.delete_object(Bucket=self.bucket, Key=path)
        return existed

    def exists(self, path: str) -> bool:
        try:
            self._client.head_object(Bucket=self.bucket, Key=path)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise
        return True

    def public_url(self, path: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url.rstrip('/')}/{quote(path)}"
        host = self.endpoint.rstrip("/") if self.endpoint else "https://s3.amazonaws.com"
        return f"{host}/{self.bucket}/{quote(path)}"
