"""Read-model endpoints.

The tenant comes from the gateway-set tenant header only; each query runs
inside the router's scope for that tenant.
"""

from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Query

from complaint_projections.app.dependencies import RuntimeDep, TenantIdDep  # noqa: TC001
from complaint_projections.core.events.payloads import ComplaintPriority
from complaint_projections.core.exceptions import AppException

from .schemas import (
    DailyStatsItem,
    DailyStatsResponse,
    Freshness,
    FreshnessResponse,
    StatusCountsResponse,
)

router = APIRouter(tags=["stats"])


async def _freshness(runtime: RuntimeDep, tenant_id: str) -> Freshness:
    report = await runtime.lag.report(tenant_id, runtime.consumer)
    return Freshness(data_as_of=report.data_as_of, lag_seconds=report.lag_seconds, status=report.status)


@router.get(
    "/stats/daily",
    response_model=DailyStatsResponse,
    summary="Daily complaint statistics",
    description="Counts per day, category and priority for the caller's tenant",
)
async def daily_stats(
    runtime: RuntimeDep,
    tenant_id: TenantIdDep,
    start: date | None = Query(default=None, description="First day (inclusive)"),
    end: date | None = Query(default=None, description="Last day (inclusive)"),
    category: str | None = Query(default=None, max_length=100),
    priority: ComplaintPriority | None = Query(default=None),
) -> DailyStatsResponse:
    if start is not None and end is not None and start > end:
        raise AppException(400, "start must not be after end", type="invalid-range")
    rows = await runtime.queries.daily_stats(
        tenant_id,
        start=start,
        end=end,
        category=category,
        priority=priority.value if priority else None,
    )
    return DailyStatsResponse(
        tenant_id=tenant_id,
        freshness=await _freshness(runtime, tenant_id),
        items=[DailyStatsItem.model_validate(row) for row in rows],
    )


@router.get(
    "/stats/status",
    response_model=StatusCountsResponse,
    summary="Complaints per status",
)
async def status_counts(runtime: RuntimeDep, tenant_id: TenantIdDep) -> StatusCountsResponse:
    counts = await runtime.queries.status_counts(tenant_id)
    return StatusCountsResponse(
        tenant_id=tenant_id,
        freshness=await _freshness(runtime, tenant_id),
        counts=counts,
    )


@router.get(
    "/freshness",
    response_model=FreshnessResponse,
    summary="Data-as-of indicator",
    description="How current the caller's read model is",
)
async def freshness(runtime: RuntimeDep, tenant_id: TenantIdDep) -> FreshnessResponse:
    report = await runtime.lag.report(tenant_id, runtime.consumer)
    return FreshnessResponse(
        tenant_id=tenant_id,
        consumer=report.consumer,
        data_as_of=report.data_as_of,
        lag_seconds=report.lag_seconds,
        status=report.status,
        staleness_sla_seconds=runtime.lag.staleness_sla_seconds,
        alert_threshold_seconds=runtime.lag.alert_threshold_seconds,
    )
