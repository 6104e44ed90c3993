"""Logging configuration setup.

Handlers live on the root logger; application loggers propagate up. The
security channel (``complaint_projections.security``) carries isolation
violations and keeps its own level so it cannot be silenced by a quiet root.
"""

from __future__ import annotations

import logging
import logging.config
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from complaint_projections.core.settings.logs import LoggingSettings

logger = logging.getLogger(__name__)
_LOGGING_INITIALIZED = False

SECURITY_LOGGER_NAME = "complaint_projections.security"


def get_security_logger() -> logging.Logger:
    """Return the logger used for security-relevant events."""
    return logging.getLogger(SECURITY_LOGGER_NAME)


def setup_logging(
    log_settings: LoggingSettings | None = None,
    *,
    force: bool = False,
    **configure_kwargs: Any,
) -> None:
    """Ensure logging is configured once across entrypoints.

    Args:
        log_settings: Optional logging settings instance. If omitted, settings
            are loaded via get_logging_settings().
        force: Reconfigure logging even if it was already initialized.
        **configure_kwargs: Explicit overrides for configure_logging().
    """
    global _LOGGING_INITIALIZED

    if _LOGGING_INITIALIZED and not force:
        return

    settings_obj = log_settings
    if settings_obj is None:
        from complaint_projections.core.settings import get_logging_settings

        settings_obj = get_logging_settings()

    log_config = {**settings_obj.to_logging_kwargs(), **configure_kwargs}
    configure_logging(**log_config)
    _LOGGING_INITIALIZED = True


def configure_logging(
    log_level: str = "INFO",
    service_name: str = "complaint-projections",
    json_logs: bool = True,
    security_level: str = "WARNING",
    library_levels: dict[str, str] | None = None,
    capture_warnings: bool = True,
    include_process_info: bool = False,
    include_thread_info: bool = False,
    **kwargs: Any,
) -> None:
    """Configure logging with dictConfig.

    Args:
        log_level: Root logger level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        service_name: Static ``service`` field added to JSON records.
        json_logs: Emit JSON Lines instead of plain text.
        security_level: Level of the security logger.
        library_levels: Logger name to level for third-party libraries;
            SQLAlchemy and the broker client default to WARNING.
        capture_warnings: Forward Python warnings to logging.
        include_process_info: Include process ID and name in JSON records.
        include_thread_info: Include thread ID and name in JSON records.
        **kwargs: Ignored, logged at DEBUG.

    Example:
        configure_logging(log_level="DEBUG", json_logs=False)
    """
    if capture_warnings:
        logging.captureWarnings(True)

    levels = {"sqlalchemy.engine": "WARNING", "aio_pika": "WARNING", "aiormq": "WARNING", **(library_levels or {})}

    formatter: dict[str, Any]
    if json_logs:
        formatter = {
            "()": "complaint_projections.infra.logging.formatters.JSONFormatter",
            "static": {"service": service_name},
            "include_process_info": include_process_info,
            "include_thread_info": include_thread_info,
        }
    else:
        formatter = {"()": "complaint_projections.infra.logging.formatters.ContextTextFormatter"}

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"default": formatter},
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                    "stream": "ext://sys.stderr",
                },
            },
            "loggers": {
                **{name: {"level": level} for name, level in levels.items()},
                SECURITY_LOGGER_NAME: {"level": security_level},
            },
            "root": {"level": log_level, "handlers": ["console"]},
        }
    )

    if kwargs:
        logger.debug("Unused logging kwargs supplied: %s", ", ".join(sorted(kwargs)))


__all__ = [
    "SECURITY_LOGGER_NAME",
    "configure_logging",
    "get_security_logger",
    "setup_logging",
]
