"""CLI utilities for running async operations and formatting output."""

from complaint_projections.cli.utils.async_runner import coro, open_runtime
from complaint_projections.cli.utils.formatters import (
    error,
    header,
    info,
    print_json,
    print_table,
    success,
    warning,
)

__all__ = [
    "coro",
    "error",
    "header",
    "info",
    "open_runtime",
    "print_json",
    "print_table",
    "success",
    "warning",
]
