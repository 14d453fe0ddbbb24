"""
Configuration and settings for the Social Ape backend.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service and the worker."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    api_prefix: str = Field(default="/api")
    cors_allow_origins: list[str] = Field(default=["*"])
    log_level: str = Field(default="INFO")

    # Database (Postgres expected, any SQLAlchemy URL works)
    database_url: Optional[str] = Field(default=None)

    # S3-compatible object storage for profile images
    storage_bucket: Optional[str] = Field(default=None)
    storage_region: Optional[str] = Field(default=None)
    storage_endpoint: Optional[str] = Field(default=None)
    storage_public_base_url: Optional[str] = Field(default=None)
    aws_access_key_id: Optional[str] = Field(default=None)
    aws_secret_access_key: Optional[str] = Field(default=None)
    default_image_name: str = Field(default="no-img.png")

    # Identity provider (Firebase Authentication)
    firebase_credentials_file: Optional[str] = Field(default=None)
    firebase_web_api_key: Optional[str] = Field(default=None)

    # Event queue (Redis)
    redis_url: Optional[str] = Field(default=None)
    redis_queue_key: str = Field(default="socialape:events")

    # Event processing
    process_events_inline: bool = Field(default=False)
    max_event_attempts: int = Field(default=5, ge=1)
    event_lock_timeout_seconds: float = Field(default=600, gt=0)

    recent_notifications_limit: int = Field(default=10, ge=1)

    # Development toggles
    use_in_memory_backends: bool = Field(default=False)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
