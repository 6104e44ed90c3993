"""Tenant-scoped read-model queries.

The only way to read the views: every query takes a tenant id, opens the
tenant's read namespace through the router, filters by ``tenant_id`` and
re-asserts the tenant of every row it returns.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from sqlalchemy import select

from complaint_projections.infra.database.session import StoreKind

from .models import ComplaintStatsByDay, ComplaintStatusCount

if TYPE_CHECKING:
    from datetime import date

    from complaint_projections.infra.tenancy.router import TenantRouter


@dataclass(frozen=True, slots=True)
class DailyStats:
    day: date
    category: str
    priority: str
    total_complaints: int
    open_complaints: int
    assigned_complaints: int
    resolved_complaints: int
    resolution_count: int
    average_resolution_seconds: float | None

    @classmethod
    def from_model(cls, row: ComplaintStatsByDay) -> DailyStats:
        return cls(
            day=row.day,
            category=row.category,
            priority=row.priority,
            total_complaints=row.total_complaints,
            open_complaints=row.open_complaints,
            assigned_complaints=row.assigned_complaints,
            resolved_complaints=row.resolved_complaints,
            resolution_count=row.resolution_count,
            average_resolution_seconds=row.average_resolution_seconds,
        )


class ReadModelQueries:
    """Queries over the complaint views of one tenant at a time."""

    def __init__(self, router: TenantRouter) -> None:
        self._router = router

    async def daily_stats(
        self,
        tenant_id: str,
        *,
        start: date | None = None,
        end: date | None = None,
        category: str | None = None,
        priority: str | None = None,
    ) -> list[DailyStats]:
        """Rows of ``complaint_stats_by_day`` within ``[start, end]``.

        Raises:
            IsolationViolationError: The tenant is missing, unknown or inactive.
        """
        stmt = select(ComplaintStatsByDay).where(ComplaintStatsByDay.tenant_id == tenant_id)
        if start is not None:
            stmt = stmt.where(ComplaintStatsByDay.day >= start)
        if end is not None:
            stmt = stmt.where(ComplaintStatsByDay.day <= end)
        if category is not None:
            stmt = stmt.where(ComplaintStatsByDay.category == category)
        if priority is not None:
            stmt = stmt.where(ComplaintStatsByDay.priority == priority)
        stmt = stmt.order_by(
            ComplaintStatsByDay.day,
            ComplaintStatsByDay.category,
            ComplaintStatsByDay.priority,
        )

        async with self._router.within(tenant_id, StoreKind.READ) as scope:
            rows = (await scope.session.execute(stmt)).scalars().all()
            for row in rows:
                scope.assert_tenant(row.tenant_id)
            return [DailyStats.from_model(row) for row in rows]

    async def status_counts(self, tenant_id: str) -> dict[str, int]:
        """Current complaint count per status."""
        stmt = (
            select(ComplaintStatusCount)
            .where(ComplaintStatusCount.tenant_id == tenant_id)
            .order_by(ComplaintStatusCount.status)
        )
        async with self._router.within(tenant_id, StoreKind.READ) as scope:
            rows = (await scope.session.execute(stmt)).scalars().all()
            for row in rows:
                scope.assert_tenant(row.tenant_id)
            return {row.status: row.complaint_count for row in rows}


__all__ = ["DailyStats", "ReadModelQueries"]
