"""Partition leases.

A lease row per (tenant, consumer) in the control database gives one worker
exclusive ownership of a partition until the lease expires. Ownership moves
only through conditional updates on the previous owner and fencing token,
so two workers racing for the same expired lease cannot both win.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import Integer, String, delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, mapped_column

from complaint_projections.core.database.base import ControlBase, UTCDateTime, utcnow
from complaint_projections.core.exceptions import LeaseLostError

if TYPE_CHECKING:
    from collections.abc import Callable

    from complaint_projections.infra.database.session import Database

logger = logging.getLogger(__name__)


class PartitionLease(ControlBase):
    """Ownership record of one (tenant, consumer) partition."""

    __tablename__ = "partition_leases"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    consumer: Mapped[str] = mapped_column(String(100), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(200), nullable=False, comment="Worker holding the lease")
    fencing_token: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
        comment="Incremented every time ownership changes hands",
    )
    acquired_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)


@dataclass(frozen=True, slots=True)
class Lease:
    """A held lease, as seen by its owner."""

    tenant_id: str
    consumer: str
    owner_id: str
    fencing_token: int
    acquired_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    @classmethod
    def from_model(cls, row: PartitionLease) -> Lease:
        return cls(
            tenant_id=row.tenant_id,
            consumer=row.consumer,
            owner_id=row.owner_id,
            fencing_token=row.fencing_token,
            acquired_at=row.acquired_at,
            expires_at=row.expires_at,
        )


class LeaseManager:
    """Claim, renew and release partition leases.

    Args:
        database: The write store (hosts the control tables).
        ttl: Lease lifetime in seconds; owners renew well before it elapses.
        clock: UTC clock, injectable for tests.
    """

    def __init__(
        self,
        database: Database,
        *,
        ttl: float = 30.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._database = database
        self._ttl = timedelta(seconds=ttl)
        self._clock = clock

    async def claim(self, tenant_id: str, consumer: str, owner_id: str) -> Lease | None:
        """Take the lease if it is free, expired or already ours.

        Returns:
            The held lease, or None if another owner holds a live lease.
        """
        now = self._clock()
        expires_at = now + self._ttl
        async with self._database.session() as session:
            row = await session.get(PartitionLease, (tenant_id, consumer))
            if row is None:
                session.add(
                    PartitionLease(
                        tenant_id=tenant_id,
                        consumer=consumer,
                        owner_id=owner_id,
                        fencing_token=1,
                        acquired_at=now,
                        expires_at=expires_at,
                    )
                )
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    return None
                logger.info(
                    "Lease acquired",
                    extra={"tenant_id": tenant_id, "consumer": consumer, "owner_id": owner_id, "fencing_token": 1},
                )
                return Lease(tenant_id, consumer, owner_id, 1, now, expires_at)

            if row.owner_id != owner_id and row.expires_at > now:
                return None

            taking_over = row.owner_id != owner_id
            token = row.fencing_token + 1 if taking_over else row.fencing_token
            acquired_at = now if taking_over else row.acquired_at
            result = await session.execute(
                update(PartitionLease)
                .where(
                    PartitionLease.tenant_id == tenant_id,
                    PartitionLease.consumer == consumer,
                    PartitionLease.owner_id == row.owner_id,
                    PartitionLease.fencing_token == row.fencing_token,
                )
                .values(owner_id=owner_id, fencing_token=token, acquired_at=acquired_at, expires_at=expires_at)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        if result.rowcount == 0:
            return None
        if taking_over:
            logger.info(
                "Lease acquired",
                extra={
                    "tenant_id": tenant_id,
                    "consumer": consumer,
                    "owner_id": owner_id,
                    "fencing_token": token,
                    "previous_owner": row.owner_id,
                },
            )
        return Lease(tenant_id, consumer, owner_id, token, acquired_at, expires_at)

    async def renew(self, lease: Lease) -> Lease:
        """Extend a held lease.

        Raises:
            LeaseLostError: Another owner took the lease over.
        """
        expires_at = self._clock() + self._ttl
        async with self._database.session() as session:
            result = await session.execute(
                update(PartitionLease)
                .where(
                    PartitionLease.tenant_id == lease.tenant_id,
                    PartitionLease.consumer == lease.consumer,
                    PartitionLease.owner_id == lease.owner_id,
                    PartitionLease.fencing_token == lease.fencing_token,
                )
                .values(expires_at=expires_at)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        if result.rowcount == 0:
            msg = f"Lease on {lease.tenant_id}/{lease.consumer} was taken over"
            raise LeaseLostError(msg, tenant_id=lease.tenant_id, details={"consumer": lease.consumer})
        return Lease(
            lease.tenant_id,
            lease.consumer,
            lease.owner_id,
            lease.fencing_token,
            lease.acquired_at,
            expires_at,
        )

    async def release(self, lease: Lease) -> None:
        """Give a lease up so another worker can claim it at once."""
        async with self._database.session() as session:
            await session.execute(
                delete(PartitionLease).where(
                    PartitionLease.tenant_id == lease.tenant_id,
                    PartitionLease.consumer == lease.consumer,
                    PartitionLease.owner_id == lease.owner_id,
                    PartitionLease.fencing_token == lease.fencing_token,
                )
            )
            await session.commit()
        logger.info(
            "Lease released",
            extra={"tenant_id": lease.tenant_id, "consumer": lease.consumer, "owner_id": lease.owner_id},
        )

    async def list(self, consumer: str | None = None) -> list[Lease]:
        stmt = select(PartitionLease).order_by(PartitionLease.tenant_id, PartitionLease.consumer)
        if consumer is not None:
            stmt = stmt.where(PartitionLease.consumer == consumer)
        async with self._database.session() as session:
            result = await session.execute(stmt)
            return [Lease.from_model(row) for row in result.scalars().all()]


__all__ = ["Lease", "LeaseManager", "PartitionLease"]
