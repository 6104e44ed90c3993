"""Unit tests for lag classification and reporting."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from complaint_projections.core.exceptions import NamespaceUnavailableError
from complaint_projections.projections.checkpoints import Checkpoint
from complaint_projections.projections.lag import LagMonitor, LagStatus

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)


def _checkpoint(age_seconds: float, tenant_id: str = "acme") -> Checkpoint:
    return Checkpoint(
        tenant_id=tenant_id,
        consumer="complaint_stats",
        last_event_id="evt-9",
        last_sequence=9,
        updated_at=NOW - timedelta(seconds=age_seconds),
    )


@pytest.fixture
def checkpoints():
    store = MagicMock()
    store.get = AsyncMock(return_value=None)
    return store


@pytest.fixture
def router():
    tenant_router = MagicMock()
    tenant_router.list_tenants = AsyncMock(
        return_value=[SimpleNamespace(tenant_id="acme"), SimpleNamespace(tenant_id="globex")]
    )
    return tenant_router


@pytest.fixture
def monitor(router, checkpoints) -> LagMonitor:
    return LagMonitor(router, checkpoints, staleness_sla_seconds=5, alert_threshold_seconds=10, clock=lambda: NOW)


@pytest.mark.unit
class TestClassify:
    @pytest.mark.parametrize(
        ("lag_seconds", "expected"),
        [
            (None, LagStatus.UNKNOWN),
            (0.0, LagStatus.FRESH),
            (5.0, LagStatus.FRESH),
            (5.5, LagStatus.STALE),
            (10.0, LagStatus.STALE),
            (10.1, LagStatus.ALERTING),
        ],
    )
    def test_thresholds(self, monitor, lag_seconds, expected):
        assert monitor.classify(lag_seconds) is expected


@pytest.mark.unit
class TestReport:
    async def test_unknown_before_first_checkpoint(self, monitor):
        report = await monitor.report("acme", "complaint_stats")

        assert report.status is LagStatus.UNKNOWN
        assert report.lag_seconds is None
        assert report.data_as_of is None

    async def test_stale_partition(self, monitor, checkpoints):
        checkpoints.get.return_value = _checkpoint(7)

        report = await monitor.report("acme", "complaint_stats")

        assert report.status is LagStatus.STALE
        assert report.lag_seconds == pytest.approx(7.0)
        assert report.lag == timedelta(seconds=7)
        assert report.data_as_of == NOW - timedelta(seconds=7)
        assert report.position == 9

    async def test_clock_skew_never_reports_negative_lag(self, monitor, checkpoints):
        checkpoints.get.return_value = _checkpoint(-3)

        assert (await monitor.lag("acme", "complaint_stats")) == timedelta(0)

    async def test_report_all_isolates_failing_tenant(self, monitor, checkpoints):
        async def get(tenant_id, consumer):
            if tenant_id == "globex":
                raise NamespaceUnavailableError("read store down", tenant_id=tenant_id)
            return _checkpoint(1)

        checkpoints.get.side_effect = get

        reports = await monitor.report_all("complaint_stats")

        assert [r.tenant_id for r in reports] == ["acme", "globex"]
        assert reports[0].status is LagStatus.FRESH
        assert reports[1].status is LagStatus.UNKNOWN
        assert reports[1].error == "read store down"

    async def test_sample_warns_on_alerting(self, monitor, checkpoints, caplog):
        checkpoints.get.return_value = _checkpoint(60)

        with caplog.at_level("WARNING", logger="complaint_projections.projections.lag"):
            reports = await monitor.sample("complaint_stats")

        assert all(r.status is LagStatus.ALERTING for r in reports)
        assert "Projection lag above alert threshold" in caplog.text
