"""Outbox dispatcher settings."""

from __future__ import annotations

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class OutboxSettings(BaseSettings):
    """Transactional outbox dispatch and retention.

    Environment variables use OUTBOX_ prefix.
    """

    batch_size: int = Field(default=100, ge=1, le=5000, description="Records dispatched per tenant per pass.")
    poll_interval: float = Field(default=1.0, ge=0, le=300, description="Seconds between passes when idle.")
    initial_backoff_seconds: float = Field(
        default=1.0,
        gt=0,
        le=3600,
        description="Delay before re-publishing after the first broker failure.",
    )
    max_backoff_seconds: float = Field(
        default=300.0,
        gt=0,
        le=86_400,
        description="Upper bound for the re-publish delay.",
    )
    retention_days: int = Field(
        default=7,
        ge=1,
        le=3650,
        description="Days dispatched records are retained for audit and replay before compaction.",
    )
    lease_ttl: float = Field(default=30.0, gt=0, le=3600, description="Dispatcher lease time-to-live in seconds.")

    @model_validator(mode="after")
    def validate_backoff(self) -> OutboxSettings:
        """Ensure the cap is not below the base backoff."""
        if self.max_backoff_seconds < self.initial_backoff_seconds:
            msg = "max_backoff_seconds must be >= initial_backoff_seconds"
            raise ValueError(msg)
        return self

    model_config = SettingsConfigDict(
        env_prefix="OUTBOX_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        frozen=True,
        extra="ignore",
        env_ignore_empty=True,
    )
