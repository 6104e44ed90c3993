"""Modular settings, one BaseSettings class per concern."""

from __future__ import annotations

from .app import AppSettings
from .database import DatabaseSettings
from .lag import LagSettings
from .loader import (
    clear_settings_cache,
    get_app_settings,
    get_db_settings,
    get_lag_settings,
    get_logging_settings,
    get_outbox_settings,
    get_projector_settings,
    get_rabbit_settings,
    get_retry_settings,
    get_tenancy_settings,
)
from .logs import LoggingSettings
from .outbox import OutboxSettings
from .projector import ProjectorSettings
from .rabbit import RabbitSettings
from .retry import RetrySettings
from .tenancy import TenancySettings

__all__ = [
    "AppSettings",
    "DatabaseSettings",
    "LagSettings",
    "LoggingSettings",
    "OutboxSettings",
    "ProjectorSettings",
    "RabbitSettings",
    "RetrySettings",
    "TenancySettings",
    "clear_settings_cache",
    "get_app_settings",
    "get_db_settings",
    "get_lag_settings",
    "get_logging_settings",
    "get_outbox_settings",
    "get_projector_settings",
    "get_rabbit_settings",
    "get_retry_settings",
    "get_tenancy_settings",
]
