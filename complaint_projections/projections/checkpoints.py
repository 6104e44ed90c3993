"""Checkpoint store.

Checkpoints are monotonic: ``advance`` only succeeds when the new position
is strictly ahead of the stored one, so a stale worker that lost its
partition can never drag progress backwards. The advance runs inside the
projector's batch transaction, next to the view upserts it accounts for.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from sqlalchemy import select, update
from sqlalchemy.exc import DBAPIError, IntegrityError

from complaint_projections.core.database.base import utcnow
from complaint_projections.core.exceptions import CheckpointConflictError, NamespaceUnavailableError
from complaint_projections.infra.database.session import StoreKind

from .models import ProjectionCheckpoint

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from complaint_projections.infra.tenancy.router import TenantRouter, TenantScope

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Checkpoint:
    """Durable progress marker of one (tenant, consumer) partition."""

    tenant_id: str
    consumer: str
    last_event_id: str | None
    last_sequence: int
    updated_at: datetime

    @classmethod
    def from_model(cls, row: ProjectionCheckpoint) -> Checkpoint:
        return cls(
            tenant_id=row.tenant_id,
            consumer=row.consumer,
            last_event_id=row.last_event_id,
            last_sequence=row.last_sequence,
            updated_at=row.updated_at,
        )


class CheckpointStore:
    """Read and advance checkpoints.

    Args:
        router: Tenant router; checkpoints live in the tenant's read namespace.
        clock: UTC clock, injectable for tests.
    """

    def __init__(self, router: TenantRouter, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._router = router
        self._clock = clock

    async def get(self, tenant_id: str, consumer: str) -> Checkpoint | None:
        """Current checkpoint of a partition, or None if it never advanced.

        Raises:
            NamespaceUnavailableError: The read namespace failed mid-query.
        """
        try:
            async with self._router.within(tenant_id, StoreKind.READ) as scope:
                return await self.load(scope, consumer)
        except (OSError, DBAPIError) as exc:
            msg = f"Checkpoint of {tenant_id!r} for {consumer} could not be read"
            raise NamespaceUnavailableError(msg, tenant_id=tenant_id) from exc

    async def load(self, scope: TenantScope, consumer: str) -> Checkpoint | None:
        result = await scope.session.execute(
            select(ProjectionCheckpoint).where(
                ProjectionCheckpoint.tenant_id == scope.tenant_id,
                ProjectionCheckpoint.consumer == consumer,
            )
        )
        row = result.scalar_one_or_none()
        return Checkpoint.from_model(row) if row is not None else None

    async def advance(self, scope: TenantScope, consumer: str, event_id: str | None, sequence: int) -> Checkpoint:
        """Move the checkpoint to ``sequence`` within the caller's transaction.

        Raises:
            CheckpointConflictError: ``sequence`` is not ahead of the stored value.
        """
        now = self._clock()
        result = await scope.session.execute(
            update(ProjectionCheckpoint)
            .where(
                ProjectionCheckpoint.tenant_id == scope.tenant_id,
                ProjectionCheckpoint.consumer == consumer,
                ProjectionCheckpoint.last_sequence < sequence,
            )
            .values(last_event_id=event_id, last_sequence=sequence, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            current = await self.load(scope, consumer)
            if current is not None:
                raise CheckpointConflictError(
                    scope.tenant_id,
                    consumer,
                    stored_sequence=current.last_sequence,
                    attempted_sequence=sequence,
                )
            if sequence <= 0:
                raise CheckpointConflictError(
                    scope.tenant_id,
                    consumer,
                    stored_sequence=0,
                    attempted_sequence=sequence,
                )
            await self._insert(scope, consumer, event_id, sequence, now)

        return Checkpoint(scope.tenant_id, consumer, event_id, sequence, now)

    async def _insert(
        self,
        scope: TenantScope,
        consumer: str,
        event_id: str | None,
        sequence: int,
        now: datetime,
    ) -> None:
        # Flush the batch's own pending rows outside the savepoint
        await scope.session.flush()
        scope.session.add(
            ProjectionCheckpoint(
                tenant_id=scope.tenant_id,
                consumer=consumer,
                last_event_id=event_id,
                last_sequence=sequence,
                created_at=now,
                updated_at=now,
            )
        )
        try:
            async with scope.session.begin_nested():
                await scope.session.flush()
        except IntegrityError as exc:
            # Another worker created the row first
            raise CheckpointConflictError(
                scope.tenant_id,
                consumer,
                stored_sequence=None,
                attempted_sequence=sequence,
            ) from exc

    async def touch(self, scope: TenantScope, consumer: str) -> bool:
        """Refresh ``updated_at`` without moving the position.

        Called when a fetch comes back empty, so lag measures a drained
        partition as fresh.

        Returns:
            True if a checkpoint existed.
        """
        result = await scope.session.execute(
            update(ProjectionCheckpoint)
            .where(
                ProjectionCheckpoint.tenant_id == scope.tenant_id,
                ProjectionCheckpoint.consumer == consumer,
            )
            .values(updated_at=self._clock())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def list(self, scope: TenantScope) -> list[Checkpoint]:
        """Every consumer's checkpoint in the scope's tenant."""
        result = await scope.session.execute(
            select(ProjectionCheckpoint)
            .where(ProjectionCheckpoint.tenant_id == scope.tenant_id)
            .order_by(ProjectionCheckpoint.consumer)
        )
        return [Checkpoint.from_model(row) for row in result.scalars().all()]


__all__ = ["Checkpoint", "CheckpointStore"]
