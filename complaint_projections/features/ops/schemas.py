"""Operator API schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Any
import uuid

from pydantic import Field, field_validator

from complaint_projections.core.schemas.base import CustomBase
from complaint_projections.projections.dead_letters import DeadLetterReason, DeadLetterStatus
from complaint_projections.projections.lag import LagStatus
from complaint_projections.projections.projector import PartitionState


class LagReportResponse(CustomBase):
    tenant_id: str
    consumer: str
    status: LagStatus
    measured_at: datetime
    lag_seconds: float | None = None
    data_as_of: datetime | None = None
    position: int | None = None
    last_event_id: str | None = None
    error: str | None = None


class PartitionHealthResponse(CustomBase):
    tenant_id: str
    consumer: str
    state: PartitionState
    owner_id: str | None = None
    fencing_token: int | None = None
    position: int | None = None
    batches: int = 0
    applied: int = 0
    skipped: int = 0
    dead_lettered: int = 0
    pauses: int = 0
    last_batch_at: datetime | None = None
    last_error: str | None = None
    stop_reason: str | None = None
    started_at: datetime


class LeaseResponse(CustomBase):
    tenant_id: str
    consumer: str
    owner_id: str
    fencing_token: int
    acquired_at: datetime
    expires_at: datetime


class PartitionsResponse(CustomBase):
    """Partitions run by this process plus every lease of the consumer group."""

    consumer: str
    owner_id: str
    supervisor_running: bool
    partitions: list[PartitionHealthResponse] = Field(default_factory=list)
    leases: list[LeaseResponse] = Field(default_factory=list)


class DeadLetterSummary(CustomBase):
    id: uuid.UUID
    consumer: str
    tenant_id: str | None = None
    event_id: str | None = None
    event_type: str | None = None
    aggregate_id: str | None = None
    topic: str
    reason: DeadLetterReason
    status: DeadLetterStatus
    failure_count: int
    replay_count: int
    last_error: str
    first_failed_at: datetime
    last_failed_at: datetime
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    resolution_note: str | None = None


class DeadLetterDetail(DeadLetterSummary):
    """Full entry, including the original message."""

    dedup_key: str
    body: str = Field(description="Original message body (UTF-8, undecodable bytes replaced)")
    headers: dict[str, Any] = Field(default_factory=dict)

    @field_validator("body", mode="before")
    @classmethod
    def decode_body(cls, value: Any) -> Any:
        if isinstance(value, bytes):
            return value.decode("utf-8", errors="replace")
        return value


class DiscardRequest(CustomBase):
    note: str | None = Field(default=None, max_length=1000, description="Why the message is dropped")
