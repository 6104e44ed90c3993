"""Unit tests for log formatters."""

from __future__ import annotations

import json
import logging
import sys

import pytest

from complaint_projections.infra.logging.formatters import ContextTextFormatter, JSONFormatter


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord(
        "complaint_projections.projections.projector", logging.WARNING, __file__, 1, "Batch paused", None, None
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.mark.unit
class TestJSONFormatter:
    def test_extra_context_becomes_top_level_keys(self):
        formatter = JSONFormatter(static={"service": "complaint-projections"})

        data = json.loads(formatter.format(_record(tenant_id="acme", consumer="complaint_stats", attempt=2)))

        assert data["level"] == "WARNING"
        assert data["message"] == "Batch paused"
        assert data["service"] == "complaint-projections"
        assert data["tenant_id"] == "acme"
        assert data["attempt"] == 2
        assert data["timestamp"].endswith("Z")
        assert "msg" not in data
        assert "taskName" not in data

    def test_exception_stays_on_one_line(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = _record()
            record.exc_info = sys.exc_info()

        output = JSONFormatter().format(record)

        assert "\n" not in output
        assert "RuntimeError: boom" in json.loads(output)["exception"]


@pytest.mark.unit
class TestContextTextFormatter:
    def test_partition_keys_lead_context(self):
        line = ContextTextFormatter().format(_record(attempt=2, event_id="e-1", tenant_id="acme"))

        assert line.endswith("[tenant_id=acme event_id=e-1 attempt=2]")

    def test_no_context_no_suffix(self):
        line = ContextTextFormatter().format(_record())

        assert line.endswith("Batch paused")
