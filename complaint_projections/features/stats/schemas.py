"""Read-model response schemas.

Every response carries ``data_as_of``: the time the projection last
confirmed it was caught up for the caller's tenant.
"""

from __future__ import annotations

from datetime import date, datetime

from pydantic import Field

from complaint_projections.core.schemas.base import CustomBase
from complaint_projections.projections.lag import LagStatus


class Freshness(CustomBase):
    """Staleness of the read model behind a response."""

    data_as_of: datetime | None = Field(default=None, description="Time the projection was last known current")
    lag_seconds: float | None = Field(default=None, description="Seconds since data_as_of")
    status: LagStatus = Field(description="fresh, stale, alerting or unknown")


class DailyStatsItem(CustomBase):
    day: date
    category: str
    priority: str
    total_complaints: int
    open_complaints: int
    assigned_complaints: int
    resolved_complaints: int
    resolution_count: int
    average_resolution_seconds: float | None = None


class DailyStatsResponse(CustomBase):
    tenant_id: str
    freshness: Freshness
    items: list[DailyStatsItem] = Field(default_factory=list)


class StatusCountsResponse(CustomBase):
    tenant_id: str
    freshness: Freshness
    counts: dict[str, int] = Field(default_factory=dict, description="Complaints per current status")


class FreshnessResponse(Freshness):
    tenant_id: str
    consumer: str
    staleness_sla_seconds: float
    alert_threshold_seconds: float
