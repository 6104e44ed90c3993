"""Complaint domain event contract."""

from __future__ import annotations

from .envelope import (
    PAYLOAD_MODELS,
    TENANT_ID_PATTERN,
    EventEnvelope,
    EventType,
    generate_event_id,
)
from .payloads import (
    ComplaintAssignedPayload,
    ComplaintCreatedPayload,
    ComplaintPriority,
    ComplaintStatus,
    ComplaintStatusChangedPayload,
    EventPayload,
)

__all__ = [
    "PAYLOAD_MODELS",
    "TENANT_ID_PATTERN",
    "ComplaintAssignedPayload",
    "ComplaintCreatedPayload",
    "ComplaintPriority",
    "ComplaintStatus",
    "ComplaintStatusChangedPayload",
    "EventEnvelope",
    "EventPayload",
    "EventType",
    "generate_event_id",
]
