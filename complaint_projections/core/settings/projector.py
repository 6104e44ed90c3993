"""Projector (read-model builder) settings.

Batch size and poll cadence drive how quickly a partition drains. The
defaults keep an idle partition's checkpoint fresh well inside the
5 second staleness SLA; tune them per deployment under load.
"""

from __future__ import annotations

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ProjectorSettings(BaseSettings):
    """Per-partition worker settings.

    Environment variables use PROJECTOR_ prefix.
    Example: PROJECTOR_BATCH_SIZE=200, PROJECTOR_CONSUMER_GROUP=complaint_stats
    """

    # ─────────────────────────────────────────────────────
    # Identity
    # ─────────────────────────────────────────────────────
    consumer_group: str = Field(
        default="complaint_stats",
        pattern=r"^[A-Za-z0-9_-]{1,64}$",
        description="Consumer group name; also the checkpoint consumer name.",
    )

    # ─────────────────────────────────────────────────────
    # Fetching
    # ─────────────────────────────────────────────────────
    batch_size: int = Field(default=100, ge=1, le=5000, description="Maximum envelopes per batch.")
    fetch_timeout: float = Field(
        default=1.0,
        gt=0,
        le=60,
        description="Seconds a fetch waits for the first message of a batch.",
    )
    idle_poll_interval: float = Field(
        default=0.25,
        ge=0,
        le=60,
        description="Seconds to sleep after an empty fetch.",
    )

    # ─────────────────────────────────────────────────────
    # Partition ownership
    # ─────────────────────────────────────────────────────
    lease_ttl: float = Field(default=30.0, gt=0, le=3600, description="Partition lease time-to-live in seconds.")
    tenant_refresh_interval: float = Field(
        default=10.0,
        gt=0,
        le=3600,
        description="Seconds between tenant discovery passes in the supervisor.",
    )

    # ─────────────────────────────────────────────────────
    # Failure handling
    # ─────────────────────────────────────────────────────
    pause_seconds: float = Field(
        default=5.0,
        ge=0,
        le=3600,
        description="Seconds a partition stays paused after exhausting whole-batch retries.",
    )
    shutdown_timeout: float = Field(
        default=30.0,
        gt=0,
        le=600,
        description="Seconds to wait for in-flight batches on shutdown before cancelling.",
    )

    # ─────────────────────────────────────────────────────
    # Maintenance
    # ─────────────────────────────────────────────────────
    applied_event_retention_days: int = Field(
        default=30,
        ge=1,
        le=3650,
        description="Days applied-event markers are kept for duplicate detection.",
    )

    @model_validator(mode="after")
    def validate_lease(self) -> ProjectorSettings:
        """Ensure a lease outlives at least one fetch cycle."""
        if self.lease_ttl <= self.fetch_timeout:
            msg = "lease_ttl must be greater than fetch_timeout"
            raise ValueError(msg)
        return self

    model_config = SettingsConfigDict(
        env_prefix="PROJECTOR_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        frozen=True,
        extra="ignore",
        env_ignore_empty=True,
    )
