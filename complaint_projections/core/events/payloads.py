"""Typed payload schemas for complaint domain events."""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ComplaintStatus(StrEnum):
    """Lifecycle status of a complaint."""

    NEW = "NEW"
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    ESCALATED = "ESCALATED"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"
    REOPENED = "REOPENED"

    @property
    def is_open(self) -> bool:
        """True while the complaint still needs work."""
        return self not in (ComplaintStatus.RESOLVED, ComplaintStatus.CLOSED)


class ComplaintPriority(StrEnum):
    """Triage priority of a complaint."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class EventPayload(BaseModel):
    """Base class for event payloads (immutable, tolerant of extra keys)."""

    model_config = ConfigDict(frozen=True, extra="ignore")


class ComplaintCreatedPayload(EventPayload):
    """A complaint was filed."""

    category: str = Field(min_length=1, max_length=100, description="Complaint category")
    priority: ComplaintPriority = Field(description="Initial priority")
    status: ComplaintStatus = Field(default=ComplaintStatus.NEW, description="Initial status")
    channel: str | None = Field(default=None, max_length=50, description="Intake channel")


class ComplaintStatusChangedPayload(EventPayload):
    """A complaint moved between lifecycle statuses."""

    old_status: ComplaintStatus
    new_status: ComplaintStatus
    reason: str | None = Field(default=None, max_length=500)

    @model_validator(mode="after")
    def validate_transition(self) -> ComplaintStatusChangedPayload:
        if self.old_status == self.new_status:
            msg = f"Status change must change the status (got {self.new_status} twice)"
            raise ValueError(msg)
        return self


class ComplaintAssignedPayload(EventPayload):
    """A complaint was assigned to a handler."""

    assignee_id: str = Field(min_length=1, max_length=100)
    team: str | None = Field(default=None, max_length=100)


__all__ = [
    "ComplaintAssignedPayload",
    "ComplaintCreatedPayload",
    "ComplaintPriority",
    "ComplaintStatus",
    "ComplaintStatusChangedPayload",
    "EventPayload",
]
