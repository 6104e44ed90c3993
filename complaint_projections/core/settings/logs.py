"""Logging configuration settings."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class LoggingSettings(BaseSettings):
    """Log output for the API, workers and CLI.

    Environment variables use LOG_ prefix.
    Example: LOG_LEVEL=DEBUG, LOG_JSON_LOGS=false
    """

    # ──────────────────────────────────────────────────────────────
    # Output
    # ──────────────────────────────────────────────────────────────

    service_name: str = Field(
        default="complaint-projections",
        description="Static 'service' field on JSON records",
    )
    level: LogLevel = Field(default="INFO", description="Root logger level")
    json_logs: bool = Field(
        default=True,
        description="One JSON object per line; plain text with context suffix when false",
    )
    include_process_info: bool = Field(
        default=False,
        description="Add pid and process name to JSON records (useful with several worker processes)",
    )
    include_thread_info: bool = Field(default=False, description="Add thread id and name to JSON records")

    # ──────────────────────────────────────────────────────────────
    # Channels
    # ──────────────────────────────────────────────────────────────

    security_level: LogLevel = Field(
        default="WARNING",
        description="Level of the security logger; isolation violations are logged at ERROR",
    )
    sqlalchemy_level: LogLevel = Field(
        default="WARNING",
        description="Level of sqlalchemy.engine; INFO logs every statement",
    )
    broker_level: LogLevel = Field(default="WARNING", description="Level of the aio_pika/aiormq loggers")
    capture_warnings: bool = Field(default=True, description="Route Python warnings through logging")

    def library_levels(self) -> dict[str, str]:
        """Per-logger levels for third-party libraries."""
        return {
            "sqlalchemy.engine": self.sqlalchemy_level,
            "aio_pika": self.broker_level,
            "aiormq": self.broker_level,
        }

    def to_logging_kwargs(self) -> dict[str, Any]:
        """Keyword arguments for ``configure_logging``."""
        return {
            "service_name": self.service_name,
            "log_level": self.level,
            "json_logs": self.json_logs,
            "security_level": self.security_level,
            "library_levels": self.library_levels(),
            "capture_warnings": self.capture_warnings,
            "include_process_info": self.include_process_info,
            "include_thread_info": self.include_thread_info,
        }

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        frozen=True,
        extra="ignore",
        env_ignore_empty=True,
    )
