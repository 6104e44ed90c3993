"""Lag monitor.

Lag is ``now - checkpoint.updated_at`` per (tenant, consumer). The projector
touches the checkpoint on every empty fetch, so a drained partition reads as
fresh; a partition that stopped or fell behind ages past the SLA.

The same measure feeds two audiences: operators (``projection_lag_seconds``
and alert logs from the sampler) and end users (``data_as_of`` on read-model
responses).
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum
from typing import TYPE_CHECKING

from complaint_projections.core.database.base import utcnow
from complaint_projections.core.exceptions import ProjectionError
from complaint_projections.infra.metrics.prometheus import projection_lag_alerting, projection_lag_seconds

if TYPE_CHECKING:
    from collections.abc import Callable

    from complaint_projections.core.settings.lag import LagSettings
    from complaint_projections.infra.tenancy.router import TenantRouter

    from .checkpoints import Checkpoint, CheckpointStore

logger = logging.getLogger(__name__)


class LagStatus(StrEnum):
    FRESH = "fresh"
    STALE = "stale"
    ALERTING = "alerting"
    UNKNOWN = "unknown"


@dataclass(frozen=True, slots=True)
class LagReport:
    """Staleness of one partition at ``measured_at``."""

    tenant_id: str
    consumer: str
    status: LagStatus
    measured_at: datetime
    lag_seconds: float | None = None
    data_as_of: datetime | None = None
    position: int | None = None
    last_event_id: str | None = None
    error: str | None = None

    @property
    def lag(self) -> timedelta | None:
        return timedelta(seconds=self.lag_seconds) if self.lag_seconds is not None else None


class LagMonitor:
    """Read-only staleness queries over checkpoints.

    Args:
        router: Tenant router, for discovering tenants.
        checkpoints: Checkpoint store.
        staleness_sla_seconds: Lag above this is ``stale``.
        alert_threshold_seconds: Lag above this is ``alerting``.
        sample_interval: Seconds between background samples.
        clock: UTC clock, injectable for tests.
    """

    def __init__(
        self,
        router: TenantRouter,
        checkpoints: CheckpointStore,
        *,
        staleness_sla_seconds: float = 5.0,
        alert_threshold_seconds: float = 10.0,
        sample_interval: float = 5.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.staleness_sla_seconds = staleness_sla_seconds
        self.alert_threshold_seconds = alert_threshold_seconds
        self.sample_interval = sample_interval
        self._router = router
        self._checkpoints = checkpoints
        self._clock = clock
        self._stopping = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @classmethod
    def from_settings(
        cls,
        router: TenantRouter,
        checkpoints: CheckpointStore,
        settings: LagSettings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> LagMonitor:
        return cls(
            router,
            checkpoints,
            staleness_sla_seconds=settings.staleness_sla_seconds,
            alert_threshold_seconds=settings.alert_threshold_seconds,
            sample_interval=settings.sample_interval,
            clock=clock,
        )

    def classify(self, lag_seconds: float | None) -> LagStatus:
        if lag_seconds is None:
            return LagStatus.UNKNOWN
        if lag_seconds > self.alert_threshold_seconds:
            return LagStatus.ALERTING
        if lag_seconds > self.staleness_sla_seconds:
            return LagStatus.STALE
        return LagStatus.FRESH

    async def lag(self, tenant_id: str, consumer: str) -> timedelta | None:
        """Age of the partition's checkpoint, or None if it never advanced."""
        checkpoint = await self._checkpoints.get(tenant_id, consumer)
        if checkpoint is None:
            return None
        return max(self._clock() - checkpoint.updated_at, timedelta(0))

    async def report(self, tenant_id: str, consumer: str) -> LagReport:
        """Lag report of one partition.

        Raises:
            IsolationViolationError: The tenant is unknown or inactive.
        """
        checkpoint = await self._checkpoints.get(tenant_id, consumer)
        return self._report(tenant_id, consumer, checkpoint)

    def _report(self, tenant_id: str, consumer: str, checkpoint: Checkpoint | None) -> LagReport:
        now = self._clock()
        if checkpoint is None:
            return LagReport(tenant_id, consumer, LagStatus.UNKNOWN, measured_at=now)
        lag_seconds = max((now - checkpoint.updated_at).total_seconds(), 0.0)
        return LagReport(
            tenant_id,
            consumer,
            self.classify(lag_seconds),
            measured_at=now,
            lag_seconds=lag_seconds,
            data_as_of=checkpoint.updated_at,
            position=checkpoint.last_sequence,
            last_event_id=checkpoint.last_event_id,
        )

    async def report_all(self, consumer: str) -> list[LagReport]:
        """Lag of ``consumer`` for every active tenant.

        A tenant whose namespace cannot be read reports ``unknown`` with the
        error instead of failing the whole listing.
        """
        reports: list[LagReport] = []
        for tenant in await self._router.list_tenants(active_only=True):
            try:
                reports.append(await self.report(tenant.tenant_id, consumer))
            except ProjectionError as exc:
                reports.append(
                    LagReport(
                        tenant.tenant_id,
                        consumer,
                        LagStatus.UNKNOWN,
                        measured_at=self._clock(),
                        error=exc.message,
                    )
                )
        return reports

    # ------------------------------------------------------------------
    # Sampler
    # ------------------------------------------------------------------

    async def sample(self, consumer: str) -> list[LagReport]:
        """Publish lag gauges and warn about alerting partitions."""
        reports = await self.report_all(consumer)
        for report in reports:
            labels = {"tenant": report.tenant_id, "consumer": report.consumer}
            if report.lag_seconds is not None:
                projection_lag_seconds.labels(**labels).set(report.lag_seconds)
            projection_lag_alerting.labels(**labels).set(1 if report.status is LagStatus.ALERTING else 0)
            if report.status is LagStatus.ALERTING:
                logger.warning(
                    "Projection lag above alert threshold",
                    extra={
                        "tenant_id": report.tenant_id,
                        "consumer": report.consumer,
                        "lag_seconds": round(report.lag_seconds or 0.0, 3),
                        "threshold_seconds": self.alert_threshold_seconds,
                    },
                )
        return reports

    async def start(self, consumer: str) -> None:
        if self._task is not None:
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._run(consumer), name=f"lag-sampler:{consumer}")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stopping.set()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def _run(self, consumer: str) -> None:
        while not self._stopping.is_set():
            try:
                await self.sample(consumer)
            except Exception:
                logger.exception("Lag sampling failed", extra={"consumer": consumer})
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._stopping.wait(), timeout=self.sample_interval)


__all__ = ["LagMonitor", "LagReport", "LagStatus"]
