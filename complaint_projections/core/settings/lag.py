"""Staleness SLA settings for the lag monitor."""

from __future__ import annotations

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LagSettings(BaseSettings):
    """Lag thresholds and sampling cadence.

    Environment variables use LAG_ prefix.
    """

    staleness_sla_seconds: float = Field(
        default=5.0,
        gt=0,
        le=86_400,
        description="Lag above this is reported as stale.",
    )
    alert_threshold_seconds: float = Field(
        default=10.0,
        gt=0,
        le=86_400,
        description="Lag above this raises an operator alert.",
    )
    sample_interval: float = Field(
        default=5.0,
        gt=0,
        le=3600,
        description="Seconds between lag samples published as metrics.",
    )

    @model_validator(mode="after")
    def validate_thresholds(self) -> LagSettings:
        """Ensure the alert threshold is not below the SLA."""
        if self.alert_threshold_seconds < self.staleness_sla_seconds:
            msg = "alert_threshold_seconds must be >= staleness_sla_seconds"
            raise ValueError(msg)
        return self

    model_config = SettingsConfigDict(
        env_prefix="LAG_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        frozen=True,
        extra="ignore",
        env_ignore_empty=True,
    )
