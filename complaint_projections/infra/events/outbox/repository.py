"""Repository for OutboxRecord operations.

Every method takes a ``TenantScope`` on the write store rather than a bare
session and filters by the scope's tenant, so a record can only be read or
changed through its owner's namespace.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import delete, func, select, update

from complaint_projections.core.database.base import utcnow

from .models import DispatchState, OutboxRecord

if TYPE_CHECKING:
    from collections.abc import Sequence

    from complaint_projections.core.events.envelope import EventEnvelope
    from complaint_projections.infra.tenancy.router import TenantScope


class OutboxRepository:
    """Outbox queries used by the recorder, the dispatcher and maintenance."""

    def add(self, scope: TenantScope, envelope: EventEnvelope) -> OutboxRecord:
        """Stage ``envelope`` in the caller's transaction.

        Raises:
            IsolationViolationError: The envelope belongs to another tenant.
        """
        scope.assert_tenant(envelope.tenant_id, event_id=envelope.event_id)
        record = OutboxRecord(
            tenant_id=scope.tenant_id,
            event_id=envelope.event_id,
            event_type=envelope.event_type.value,
            aggregate_id=envelope.aggregate_id,
            sequence=envelope.sequence,
            payload=envelope.to_wire().decode("utf-8"),
            dispatch_state=DispatchState.PENDING.value,
            attempts=0,
        )
        scope.session.add(record)
        return record

    async def fetch_pending(self, scope: TenantScope, *, limit: int = 100) -> Sequence[OutboxRecord]:
        """Pending records in creation order, due or not.

        Callers need the not-yet-due records too: they block later records of
        the same aggregate.
        """
        stmt = (
            select(OutboxRecord)
            .where(
                OutboxRecord.tenant_id == scope.tenant_id,
                OutboxRecord.dispatch_state == DispatchState.PENDING.value,
            )
            .order_by(OutboxRecord.id.asc())
            .limit(limit)
        )
        result = await scope.session.execute(stmt)
        return result.scalars().all()

    def mark_dispatched(self, record: OutboxRecord, *, now: datetime | None = None) -> None:
        record.dispatch_state = DispatchState.DISPATCHED.value
        record.dispatched_at = now or utcnow()
        record.next_attempt_at = None
        record.last_error = None

    def mark_retry(self, record: OutboxRecord, error: str, *, next_attempt_at: datetime) -> None:
        record.attempts += 1
        record.next_attempt_at = next_attempt_at
        record.last_error = error[:1000]

    def mark_failed(self, record: OutboxRecord, error: str) -> None:
        record.dispatch_state = DispatchState.FAILED.value
        record.last_error = error[:1000]
        record.next_attempt_at = None

    async def compact(self, scope: TenantScope, *, older_than_days: int, now: datetime | None = None) -> int:
        """Delete dispatched records older than the retention window.

        Returns:
            Number of records deleted.
        """
        cutoff = (now or utcnow()) - timedelta(days=older_than_days)
        stmt = (
            delete(OutboxRecord)
            .where(
                OutboxRecord.tenant_id == scope.tenant_id,
                OutboxRecord.dispatch_state == DispatchState.DISPATCHED.value,
                OutboxRecord.dispatched_at < cutoff,
            )
            .execution_options(synchronize_session=False)
        )
        result = await scope.session.execute(stmt)
        return result.rowcount or 0

    async def reset_failed(self, scope: TenantScope) -> int:
        """Return Failed records to Pending with a fresh attempt budget."""
        stmt = (
            update(OutboxRecord)
            .where(
                OutboxRecord.tenant_id == scope.tenant_id,
                OutboxRecord.dispatch_state == DispatchState.FAILED.value,
            )
            .values(dispatch_state=DispatchState.PENDING.value, attempts=0, next_attempt_at=None)
            .execution_options(synchronize_session=False)
        )
        result = await scope.session.execute(stmt)
        return result.rowcount or 0

    async def count_by_state(self, scope: TenantScope) -> dict[str, int]:
        """Record counts per dispatch state (missing states are 0)."""
        stmt = (
            select(OutboxRecord.dispatch_state, func.count())
            .where(OutboxRecord.tenant_id == scope.tenant_id)
            .group_by(OutboxRecord.dispatch_state)
        )
        result = await scope.session.execute(stmt)
        counts = {state.value: 0 for state in DispatchState}
        counts.update({state: count for state, count in result.all()})
        return counts


__all__ = ["OutboxRepository"]
