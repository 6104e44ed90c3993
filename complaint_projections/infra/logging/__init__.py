"""Structured logging for the projection engine."""

from __future__ import annotations

from .config import SECURITY_LOGGER_NAME, configure_logging, get_security_logger, setup_logging
from .formatters import ContextTextFormatter, JSONFormatter

__all__ = [
    "SECURITY_LOGGER_NAME",
    "ContextTextFormatter",
    "JSONFormatter",
    "configure_logging",
    "get_security_logger",
    "setup_logging",
]
