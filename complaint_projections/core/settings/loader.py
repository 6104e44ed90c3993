"""LRU-cached settings loaders.

Settings are loaded and validated once, then cached for the lifetime of the
process.

Usage:
    from complaint_projections.core.settings import get_projector_settings

    settings = get_projector_settings()

Testing:
    Clear every cache to force a reload after changing the environment:
    clear_settings_cache()
"""

from __future__ import annotations

from functools import lru_cache

from .app import AppSettings
from .database import DatabaseSettings
from .lag import LagSettings
from .logs import LoggingSettings
from .outbox import OutboxSettings
from .projector import ProjectorSettings
from .rabbit import RabbitSettings
from .retry import RetrySettings
from .tenancy import TenancySettings


@lru_cache(maxsize=1)
def get_app_settings() -> AppSettings:
    """Get cached application settings.

    Returns:
        Validated and frozen AppSettings instance.
    """
    return AppSettings()


@lru_cache(maxsize=1)
def get_db_settings() -> DatabaseSettings:
    """Get cached database settings.

    Returns:
        Validated and frozen DatabaseSettings instance.
    """
    return DatabaseSettings()


@lru_cache(maxsize=1)
def get_rabbit_settings() -> RabbitSettings:
    """Get cached broker settings."""
    return RabbitSettings()


@lru_cache(maxsize=1)
def get_logging_settings() -> LoggingSettings:
    """Get cached logging settings."""
    return LoggingSettings()


@lru_cache(maxsize=1)
def get_projector_settings() -> ProjectorSettings:
    """Get cached projector settings."""
    return ProjectorSettings()


@lru_cache(maxsize=1)
def get_retry_settings() -> RetrySettings:
    """Get cached retry policy settings."""
    return RetrySettings()


@lru_cache(maxsize=1)
def get_outbox_settings() -> OutboxSettings:
    """Get cached outbox settings."""
    return OutboxSettings()


@lru_cache(maxsize=1)
def get_lag_settings() -> LagSettings:
    """Get cached lag monitor settings."""
    return LagSettings()


@lru_cache(maxsize=1)
def get_tenancy_settings() -> TenancySettings:
    """Get cached tenant router settings."""
    return TenancySettings()


def clear_settings_cache() -> None:
    """Drop every cached settings instance."""
    for loader in (
        get_app_settings,
        get_db_settings,
        get_rabbit_settings,
        get_logging_settings,
        get_projector_settings,
        get_retry_settings,
        get_outbox_settings,
        get_lag_settings,
        get_tenancy_settings,
    ):
        loader.cache_clear()
