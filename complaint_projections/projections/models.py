"""Read-side tables owned by the projector.

All of them live in the tenant's read namespace and carry ``tenant_id`` in
their primary key, so even under the shared-schema strategy a row can only
be addressed together with its tenant.
"""

from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import BigInteger, Boolean, Date, Float, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from complaint_projections.core.database.base import TenantReadBase, UTCDateTime, utcnow


class ProjectionCheckpoint(TenantReadBase):
    """Last disposed envelope of a (tenant, consumer) partition.

    ``last_sequence`` is the partition position: it increases by one for
    every envelope the partition applies, skips or quarantines.
    """

    __tablename__ = "projection_checkpoints"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    consumer: Mapped[str] = mapped_column(String(100), primary_key=True)
    last_event_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    last_sequence: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return (
            f"ProjectionCheckpoint(tenant_id={self.tenant_id!r}, consumer={self.consumer!r}, "
            f"last_sequence={self.last_sequence})"
        )


class AppliedEvent(TenantReadBase):
    """Marker of an event already applied by a consumer."""

    __tablename__ = "applied_events"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    consumer: Mapped[str] = mapped_column(String(100), primary_key=True)
    event_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    aggregate_id: Mapped[str] = mapped_column(String(100), nullable=False)
    applied_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)

    __table_args__ = (Index("ix_applied_events_applied_at", "tenant_id", "applied_at"),)


class AggregateProjectionState(TenantReadBase):
    """Per-aggregate watermark plus the facts later events need.

    A status change decrements counters of the complaint's current status and
    attributes resolution time to the day it was opened, so both must be
    remembered here.
    """

    __tablename__ = "aggregate_projection_state"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    consumer: Mapped[str] = mapped_column(String(100), primary_key=True)
    aggregate_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    priority: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    opened_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    opened_on: Mapped[date] = mapped_column(Date, nullable=False)
    is_assigned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_sequence: Mapped[int] = mapped_column(BigInteger, nullable=False)
    last_event_id: Mapped[str] = mapped_column(String(64), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)


class ComplaintStatsByDay(TenantReadBase):
    """Daily complaint counters by category and priority.

    Averages are derived (``resolution_seconds_sum / resolution_count``) so
    they can be maintained incrementally.
    """

    __tablename__ = "complaint_stats_by_day"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    day: Mapped[date] = mapped_column(Date, primary_key=True)
    category: Mapped[str] = mapped_column(String(100), primary_key=True)
    priority: Mapped[str] = mapped_column(String(20), primary_key=True)
    total_complaints: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    open_complaints: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    assigned_complaints: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    resolved_complaints: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    resolution_seconds_sum: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    resolution_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)

    @property
    def average_resolution_seconds(self) -> float | None:
        if not self.resolution_count:
            return None
        return self.resolution_seconds_sum / self.resolution_count


class ComplaintStatusCount(TenantReadBase):
    """Current number of complaints per status."""

    __tablename__ = "complaint_status_counts"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    status: Mapped[str] = mapped_column(String(20), primary_key=True)
    complaint_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)


__all__ = [
    "AggregateProjectionState",
    "AppliedEvent",
    "ComplaintStatsByDay",
    "ComplaintStatusCount",
    "ProjectionCheckpoint",
]
