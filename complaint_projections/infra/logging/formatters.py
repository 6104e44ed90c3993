"""Log formatters with trace correlation."""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import Any

from opentelemetry import trace

# Attributes every LogRecord carries; anything else came in through extra=
_RESERVED_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}

# Partition identity comes first among the context keys
PARTITION_KEYS = ("tenant_id", "consumer", "event_id")


def _context(record: logging.LogRecord) -> dict[str, Any]:
    extra = {key: value for key, value in record.__dict__.items() if key not in _RESERVED_ATTRS}
    ordered = {key: extra.pop(key) for key in PARTITION_KEYS if extra.get(key) is not None}
    ordered.update(extra)
    return ordered


class JSONFormatter(logging.Formatter):
    """Structured JSON Lines (JSONL) formatter with UTC timestamps.

    One JSON object per line. Context passed through ``extra={...}`` becomes
    top-level keys; the active OpenTelemetry span, when valid, adds
    ``trace_id`` and ``span_id``.

    Example output:
        {"level": "WARNING", "logger": "complaint_projections.projections.lag",
         "message": "Partition lag above alert threshold", "tenant_id": "acme",
         "lag_seconds": 12.4, "timestamp": "2026-01-01T00:00:00.123Z",
         "service": "complaint-projections"}
    """

    def __init__(
        self,
        fmt_keys: dict[str, str] | None = None,
        static: dict[str, Any] | None = None,
        include_process_info: bool = False,
        include_thread_info: bool = False,
    ) -> None:
        super().__init__()
        self.fmt_keys = fmt_keys or {
            "level": "levelname",
            "logger": "name",
            "message": "message",
        }
        self.static = static or {}
        self.include_process_info = include_process_info
        self.include_thread_info = include_thread_info

    def format(self, record: logging.LogRecord) -> str:
        record.message = record.getMessage()
        data: dict[str, Any] = {k: getattr(record, v, None) for k, v in self.fmt_keys.items()}

        data["timestamp"] = (
            datetime.fromtimestamp(record.created, tz=UTC)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z")
        )

        if self.include_process_info:
            data["process_id"] = record.process
            data["process_name"] = record.processName

        if self.include_thread_info:
            data["thread_id"] = record.thread
            data["thread_name"] = record.threadName

        span = trace.get_current_span()
        if span and span.get_span_context().is_valid:
            ctx = span.get_span_context()
            data["trace_id"] = format(ctx.trace_id, "032x")
            data["span_id"] = format(ctx.span_id, "016x")

        # Keep one record per line
        if record.exc_info:
            data["exception"] = self.formatException(record.exc_info).replace("\n", "\\n")
        if record.stack_info:
            data["stack_trace"] = record.stack_info.replace("\n", "\\n")

        if self.static:
            data.update(self.static)

        for key, value in _context(record).items():
            data.setdefault(key, value)

        return json.dumps(data, ensure_ascii=False, default=str)


class ContextTextFormatter(logging.Formatter):
    """Human-readable formatter that appends ``extra`` context as key=value pairs."""

    def __init__(self) -> None:
        super().__init__(fmt="%(asctime)s %(levelname)-8s %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        context = _context(record)
        if not context:
            return base
        rendered = " ".join(f"{key}={value}" for key, value in context.items())
        return f"{base} [{rendered}]"
