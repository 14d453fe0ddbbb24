"""
Error taxonomy shared by the HTTP handlers, the store and the worker.

Every error carries the status code and the JSON body the client receives,
shaped either ``{field: message}`` or ``{error: message}``.
"""

from __future__ import annotations

from typing import Optional


class ApiError(Exception):
    status_code = 500
    default_body = {"error": "Something went wrong"}

    def __init__(self, body: Optional[dict] = None):
        self.body = dict(body) if body else dict(self.default_body)
        super().__init__(self.body)


class ValidationError(ApiError):
    """Empty or malformed input field."""

    status_code = 400
    default_body = {"error": "Invalid request"}


class AuthError(ApiError):
    """Missing, invalid or expired credentials, or a forbidden action."""

    status_code = 403
    default_body = {"error": "Unauthorised"}


class NotFoundError(ApiError):
    status_code = 404
    default_body = {"error": "Not found"}


class ConflictError(ApiError):
    """The write collides with existing state (duplicate like, taken handle)."""

    status_code = 400
    default_body = {"error": "Conflict"}


class PlatformError(ApiError):
    """A database, storage or identity provider call failed."""

    status_code = 500
    default_body = {"error": "Something went wrong"}
