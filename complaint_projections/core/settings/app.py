"""Application-level settings for the HTTP surface."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

Environment = Literal["development", "staging", "production", "test"]


class AppSettings(BaseSettings):
    """Core service settings.

    Environment variables use APP_ prefix.
    Example: APP_ENVIRONMENT=production, APP_DEBUG=false
    """

    # ─────────────────────────────────────────────────────
    # Identity
    # ─────────────────────────────────────────────────────
    service_name: str = Field(
        default="complaint-projections",
        min_length=1,
        max_length=100,
        description="Service name used in logs, metrics and broker connection names.",
    )
    title: str = Field(
        default="Complaint Projections",
        description="OpenAPI title.",
    )
    version: str = Field(
        default="0.1.0",
        description="Service version reported by OpenAPI and the CLI.",
    )
    environment: Environment = Field(
        default="development",
        description="Deployment environment.",
    )
    debug: bool = Field(
        default=False,
        description="Enable FastAPI debug mode.",
    )

    # ─────────────────────────────────────────────────────
    # HTTP
    # ─────────────────────────────────────────────────────
    api_prefix: str = Field(
        default="/api/v1",
        pattern=r"^/[A-Za-z0-9/_-]*$",
        description="Prefix for all versioned API routes.",
    )
    tenant_header: str = Field(
        default="X-Tenant-ID",
        min_length=1,
        description="Header carrying the caller's authenticated tenant identifier.",
    )
    host: str = Field(default="0.0.0.0", description="Bind host for the API server.")
    port: int = Field(default=8000, ge=1, le=65535, description="Bind port for the API server.")

    # ─────────────────────────────────────────────────────
    # Workers
    # ─────────────────────────────────────────────────────
    embedded_workers: bool = Field(
        default=False,
        description="Run the projector, outbox dispatcher and drain inside the API process.",
    )

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        frozen=True,
        extra="ignore",
        env_ignore_empty=True,
    )
