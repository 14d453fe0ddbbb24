"""
Pydantic schemas for the Social Ape API.

Attributes are snake_case in Python and camelCase on the wire.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True
    )


# Requests


class ScreamCreate(ApiModel):
    body: Optional[str] = None


class CommentCreate(ApiModel):
    body: Optional[str] = None


class SignupRequest(ApiModel):
    email: Optional[str] = None
    password: Optional[str] = None
    confirm_password: Optional[str] = None
    handle: Optional[str] = None


class LoginRequest(ApiModel):
    email: Optional[str] = None
    password: Optional[str] = None


class UserDetailsRequest(ApiModel):
    bio: Optional[str] = None
    website: Optional[str] = None
    location: Optional[str] = None


# Responses


class ScreamResponse(ApiModel):
    scream_id: str
    user_handle: str
    body: str
    user_image: str
    like_count: int
    comment_count: int
    created_at: str


class CommentResponse(ApiModel):
    comment_id: str
    scream_id: str
    user_handle: str
    body: str
    user_image: str
    created_at: str


class ScreamWithCommentsResponse(ScreamResponse):
    comments: list[CommentResponse]


class LikeResponse(ApiModel):
    like_id: str
    scream_id: str
    user_handle: str
    created_at: str


class NotificationResponse(ApiModel):
    notification_id: str
    recipient: str
    sender: str
    type: str
    read: bool
    scream_id: str
    created_at: str


class CredentialsResponse(ApiModel):
    user_id: str
    handle: str
    email: str
    image_url: str
    created_at: str
    bio: Optional[str] = None
    website: Optional[str] = None
    location: Optional[str] = None


class AuthenticatedUserResponse(ApiModel):
    credentials: CredentialsResponse
    likes: list[LikeResponse]
    notifications: list[NotificationResponse]


class UserProfileResponse(ApiModel):
    credentials: CredentialsResponse
    screams: list[ScreamResponse]


class TokenResponse(ApiModel):
    token: str


class MessageResponse(ApiModel):
    message: str


class ImageUploadResponse(ApiModel):
    message: str
    image_url: str
