"""OutboxRecord model for the transactional outbox.

Outbox rows live in the tenant's write namespace and are inserted in the same
transaction as the business mutation they report on, so either both commit
or neither does. The dispatcher forwards them to the broker afterwards.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from sqlalchemy import Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from complaint_projections.core.database.base import BigIntegerPK, TenantWriteBase, TimestampMixin, UTCDateTime


class DispatchState(StrEnum):
    """Outbox record lifecycle.

    PENDING -> DISPATCHED once the broker accepts it. PENDING -> FAILED when
    the stored payload can never be published (operator may reset it).
    """

    PENDING = "pending"
    DISPATCHED = "dispatched"
    FAILED = "failed"


class OutboxRecord(TenantWriteBase, TimestampMixin):
    """One staged domain event.

    Attributes:
        id: Autoincrementing key; defines creation order.
        tenant_id: Owning tenant.
        event_id: Envelope event id.
        event_type: Envelope event type.
        aggregate_id: Aggregate the event describes (dispatch is ordered per aggregate).
        sequence: Per-aggregate sequence number.
        payload: Envelope wire body (JSON).
        dispatch_state: DispatchState value.
        attempts: Failed publish attempts so far.
        next_attempt_at: Earliest time of the next publish attempt.
        last_error: Last publish error.
        dispatched_at: When the broker accepted the record.
    """

    __tablename__ = "outbox_records"

    id: Mapped[int] = mapped_column(BigIntegerPK, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, comment="Owning tenant")
    event_id: Mapped[str] = mapped_column(String(64), nullable=False, comment="Envelope event id")
    event_type: Mapped[str] = mapped_column(String(100), nullable=False, comment="Envelope event type")
    aggregate_id: Mapped[str] = mapped_column(String(100), nullable=False, comment="Aggregate id")
    sequence: Mapped[int] = mapped_column(Integer, nullable=False, comment="Per-aggregate sequence")
    payload: Mapped[str] = mapped_column(Text, nullable=False, comment="Envelope wire body")

    dispatch_state: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=DispatchState.PENDING.value,
        comment="Dispatch state",
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0, comment="Failed publish attempts")
    next_attempt_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
        comment="Earliest next publish attempt",
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True, comment="Last publish error")
    dispatched_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
        comment="When the broker accepted the record",
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "event_id", name="uq_outbox_records_tenant_event"),
        # Pending scan in creation order
        Index("ix_outbox_records_state_id", "tenant_id", "dispatch_state", "id"),
        # Compaction by age
        Index("ix_outbox_records_dispatched_at", "dispatch_state", "dispatched_at"),
    )

    @property
    def is_pending(self) -> bool:
        return self.dispatch_state == DispatchState.PENDING

    def is_due(self, now: datetime) -> bool:
        """Whether a pending record may be published at ``now``."""
        return self.is_pending and (self.next_attempt_at is None or self.next_attempt_at <= now)

    def __repr__(self) -> str:
        return (
            f"OutboxRecord(id={self.id}, event_id={self.event_id!r}, "
            f"aggregate_id={self.aggregate_id!r}, state={self.dispatch_state})"
        )


__all__ = ["DispatchState", "OutboxRecord"]
