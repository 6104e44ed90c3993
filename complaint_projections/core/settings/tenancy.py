"""Tenant namespace routing settings."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

IsolationStrategyName = Literal["shared", "schema"]


class TenancySettings(BaseSettings):
    """Tenant router configuration.

    Environment variables use TENANCY_ prefix.
    """

    cache_ttl_seconds: float = Field(
        default=60.0,
        ge=0,
        le=3600,
        description="How long a resolved namespace mapping is cached (0 disables caching).",
    )
    cache_max_entries: int = Field(
        default=10_000,
        ge=1,
        description="Upper bound on cached namespace mappings.",
    )
    default_strategy: IsolationStrategyName = Field(
        default="shared",
        description="Isolation strategy used when provisioning without an explicit choice.",
    )
    schema_prefix: str = Field(
        default="tenant_",
        pattern=r"^[a-z_][a-z0-9_]*$",
        description="Prefix of per-tenant schemas under the schema strategy.",
    )

    model_config = SettingsConfigDict(
        env_prefix="TENANCY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        frozen=True,
        extra="ignore",
        env_ignore_empty=True,
    )
