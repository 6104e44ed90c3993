"""Retry policy settings shared by per-event and whole-batch retries."""

from __future__ import annotations

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RetrySettings(BaseSettings):
    """Capped exponential backoff configuration.

    Environment variables use RETRY_ prefix (e.g., RETRY_MAX_ATTEMPTS=3).

    Example:
        With initial_delay_ms=100 and multiplier=2.0:

        Attempt | Delay
        --------|-------
        1       | 100ms
        2       | 200ms
        3       | 400ms
    """

    max_attempts: int = Field(
        default=3,
        ge=1,
        le=20,
        description="Total attempts (first try included) before giving up.",
    )
    initial_delay_ms: int = Field(
        default=100,
        ge=0,
        le=60_000,
        description="Delay before the first retry in milliseconds.",
    )
    max_delay_ms: int = Field(
        default=5_000,
        ge=0,
        le=600_000,
        description="Upper bound for any single retry delay in milliseconds.",
    )
    multiplier: float = Field(
        default=2.0,
        ge=1.0,
        le=10.0,
        description="Exponential growth factor between attempts.",
    )
    jitter: bool = Field(default=True, description="Randomise delays to avoid synchronized retries.")
    jitter_range: float = Field(
        default=0.5,
        ge=0.0,
        lt=1.0,
        description="Jitter spread as a fraction of the delay (0.5 means ±50%).",
    )

    @model_validator(mode="after")
    def validate_delays(self) -> RetrySettings:
        """Ensure the cap is not below the base delay."""
        if self.max_delay_ms < self.initial_delay_ms:
            msg = "max_delay_ms must be >= initial_delay_ms"
            raise ValueError(msg)
        return self

    model_config = SettingsConfigDict(
        env_prefix="RETRY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        frozen=True,
        extra="ignore",
        env_ignore_empty=True,
    )
