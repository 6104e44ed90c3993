"""Materialized view writer.

Applies a computed ``Projection`` to the read store through a tenant scope:
view counters are upserted with ``INSERT ... ON CONFLICT DO UPDATE SET
col = col + delta``, the aggregate snapshot is upserted, and the event is
recorded as applied. Nothing is committed here; the projector commits the
whole batch together with the checkpoint.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from complaint_projections.core.database.base import utcnow
from complaint_projections.core.events.payloads import ComplaintStatus

from .deltas import AggregateSnapshot
from .models import AggregateProjectionState, AppliedEvent, ComplaintStatsByDay, ComplaintStatusCount

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from complaint_projections.core.events.envelope import EventEnvelope
    from complaint_projections.infra.tenancy.router import TenantScope

    from .deltas import Projection

logger = logging.getLogger(__name__)

# Keyed by SUPPORTED_DIALECTS; Database refuses any other backend
_INSERTS = {"postgresql": pg_insert, "sqlite": sqlite_insert}


def _insert_for(scope: TenantScope, model: type[Any]) -> Any:
    return _INSERTS[scope.dialect_name](model)


class ViewWriter:
    """Reads and writes a consumer's projection state within a tenant scope.

    Args:
        consumer: Consumer group owning the watermarks and applied markers.
    """

    def __init__(self, consumer: str) -> None:
        self.consumer = consumer

    # ------------------------------------------------------------------
    # Dedup and watermark
    # ------------------------------------------------------------------

    async def applied_event_ids(self, scope: TenantScope, event_ids: Iterable[str]) -> set[str]:
        """Subset of ``event_ids`` already applied by this consumer."""
        ids = list(event_ids)
        if not ids:
            return set()
        result = await scope.session.execute(
            select(AppliedEvent.event_id).where(
                AppliedEvent.tenant_id == scope.tenant_id,
                AppliedEvent.consumer == self.consumer,
                AppliedEvent.event_id.in_(ids),
            )
        )
        return set(result.scalars().all())

    async def load_snapshot(self, scope: TenantScope, aggregate_id: str) -> AggregateSnapshot | None:
        row = await scope.session.get(AggregateProjectionState, (scope.tenant_id, self.consumer, aggregate_id))
        if row is None:
            return None
        return AggregateSnapshot(
            category=row.category,
            priority=row.priority,
            status=ComplaintStatus(row.status),
            opened_at=row.opened_at,
            opened_on=row.opened_on,
            is_assigned=row.is_assigned,
            last_sequence=row.last_sequence,
            last_event_id=row.last_event_id,
        )

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    async def apply(self, scope: TenantScope, envelope: EventEnvelope, projection: Projection) -> None:
        """Write one event's effects into the current transaction."""
        scope.assert_tenant(envelope.tenant_id, event_id=envelope.event_id)
        now = utcnow()

        for (day, category, priority), delta in projection.delta.stats.items():
            if delta.is_zero():
                continue
            await self._upsert_increment(
                scope,
                ComplaintStatsByDay,
                keys={"tenant_id": scope.tenant_id, "day": day, "category": category, "priority": priority},
                increments={
                    "total_complaints": delta.total,
                    "open_complaints": delta.open,
                    "assigned_complaints": delta.assigned,
                    "resolved_complaints": delta.resolved,
                    "resolution_seconds_sum": delta.resolution_seconds,
                    "resolution_count": delta.resolution_count,
                },
                now=now,
            )

        for status, change in projection.delta.status_counts.items():
            if change == 0:
                continue
            await self._upsert_increment(
                scope,
                ComplaintStatusCount,
                keys={"tenant_id": scope.tenant_id, "status": status},
                increments={"complaint_count": change},
                now=now,
            )

        await self._upsert_snapshot(scope, envelope.aggregate_id, projection.snapshot, now=now)
        self.mark_applied(scope, envelope, now=now)

    def mark_applied(self, scope: TenantScope, envelope: EventEnvelope, *, now: datetime | None = None) -> None:
        scope.session.add(
            AppliedEvent(
                tenant_id=scope.tenant_id,
                consumer=self.consumer,
                event_id=envelope.event_id,
                aggregate_id=envelope.aggregate_id,
                applied_at=now or utcnow(),
            )
        )

    async def _upsert_increment(
        self,
        scope: TenantScope,
        model: type[Any],
        *,
        keys: dict[str, Any],
        increments: dict[str, int | float],
        now: datetime,
    ) -> None:
        stmt = _insert_for(scope, model).values(**keys, **increments, updated_at=now)
        table = model.__table__
        set_: dict[str, Any] = {name: table.c[name] + stmt.excluded[name] for name in increments}
        set_["updated_at"] = stmt.excluded.updated_at
        await scope.session.execute(stmt.on_conflict_do_update(index_elements=list(keys), set_=set_))

    async def _upsert_snapshot(
        self,
        scope: TenantScope,
        aggregate_id: str,
        snapshot: AggregateSnapshot,
        *,
        now: datetime,
    ) -> None:
        values = {
            "category": snapshot.category,
            "priority": snapshot.priority,
            "status": snapshot.status.value,
            "opened_at": snapshot.opened_at,
            "opened_on": snapshot.opened_on,
            "is_assigned": snapshot.is_assigned,
            "last_sequence": snapshot.last_sequence,
            "last_event_id": snapshot.last_event_id,
            "updated_at": now,
        }
        keys = {"tenant_id": scope.tenant_id, "consumer": self.consumer, "aggregate_id": aggregate_id}
        stmt = _insert_for(scope, AggregateProjectionState).values(**keys, **values)
        stmt = stmt.on_conflict_do_update(
            index_elements=list(keys),
            set_={name: stmt.excluded[name] for name in values},
        )
        await scope.session.execute(stmt)

    # ------------------------------------------------------------------
    # Queries and maintenance
    # ------------------------------------------------------------------

    async def purge_applied(self, scope: TenantScope, *, older_than_days: int) -> int:
        """Delete applied markers older than the retention window.

        A redelivery of a purged event is quarantined as out of order by the
        per-aggregate watermark instead of being applied twice.
        """
        cutoff = utcnow() - timedelta(days=older_than_days)
        result = await scope.session.execute(
            delete(AppliedEvent)
            .where(
                AppliedEvent.tenant_id == scope.tenant_id,
                AppliedEvent.consumer == self.consumer,
                AppliedEvent.applied_at < cutoff,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def snapshots(self, scope: TenantScope) -> Sequence[AggregateProjectionState]:
        result = await scope.session.execute(
            select(AggregateProjectionState)
            .where(
                AggregateProjectionState.tenant_id == scope.tenant_id,
                AggregateProjectionState.consumer == self.consumer,
            )
            .order_by(AggregateProjectionState.aggregate_id)
        )
        return result.scalars().all()


__all__ = ["ViewWriter"]
