"""Event envelope: the wire contract for complaint domain events.

Every event crossing the broker is a JSON object with the fields below. The
envelope is immutable once built; ``tenant_id`` is restricted to a charset
that can never smuggle topic separators or wildcards into a routing key.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Final

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from uuid_utils import uuid7

from complaint_projections.core.exceptions import MalformedEnvelopeError

from .payloads import (
    ComplaintAssignedPayload,
    ComplaintCreatedPayload,
    ComplaintStatusChangedPayload,
    EventPayload,
)

TENANT_ID_PATTERN: Final = r"^[A-Za-z0-9_-]{1,64}$"


def generate_event_id() -> str:
    """Generate a time-sortable event identifier (UUID v7)."""
    return str(uuid7())


class EventType(StrEnum):
    """Closed set of complaint event types."""

    COMPLAINT_CREATED = "ComplaintCreated"
    COMPLAINT_STATUS_CHANGED = "ComplaintStatusChanged"
    COMPLAINT_ASSIGNED = "ComplaintAssigned"


PAYLOAD_MODELS: Final[dict[EventType, type[EventPayload]]] = {
    EventType.COMPLAINT_CREATED: ComplaintCreatedPayload,
    EventType.COMPLAINT_STATUS_CHANGED: ComplaintStatusChangedPayload,
    EventType.COMPLAINT_ASSIGNED: ComplaintAssignedPayload,
}


class EventEnvelope(BaseModel):
    """Immutable domain event envelope.

    Attributes:
        event_id: Globally unique id, used for deduplication.
        event_type: One of ``EventType``.
        aggregate_id: Complaint the event describes.
        tenant_id: Isolation key; never absent, never mutable.
        occurred_at: Source timestamp (normalised to UTC).
        sequence: Monotonic per-aggregate ordering number.
        payload: Type-specific data, validated at apply time.

    Example:
        envelope = EventEnvelope(
            event_type=EventType.COMPLAINT_CREATED,
            aggregate_id="C1",
            tenant_id="acme",
            sequence=1,
            payload={"category": "billing", "priority": "HIGH"},
        )
        body = envelope.to_wire()
        assert EventEnvelope.from_wire(body) == envelope
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    event_id: str = Field(default_factory=generate_event_id, min_length=1, max_length=64)
    event_type: EventType
    aggregate_id: str = Field(min_length=1, max_length=100)
    tenant_id: str = Field(pattern=TENANT_ID_PATTERN)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    sequence: int = Field(ge=0)
    payload: dict[str, Any] = Field(default_factory=dict)

    @field_validator("occurred_at")
    @classmethod
    def normalise_occurred_at(cls, value: datetime) -> datetime:
        # Naive source timestamps are taken to be UTC
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def to_wire(self) -> bytes:
        """Serialize to the UTF-8 JSON wire form."""
        return self.model_dump_json().encode("utf-8")

    @classmethod
    def from_wire(cls, body: bytes | str) -> EventEnvelope:
        """Parse and validate a wire body.

        Args:
            body: Raw message body.

        Returns:
            The validated envelope.

        Raises:
            MalformedEnvelopeError: Body is not a JSON object, lacks
                ``tenant_id`` or ``event_id``, or fails schema validation.
                Whatever identifiers could be salvaged are attached.
        """
        try:
            raw = json.loads(body)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            msg = f"Envelope body is not valid JSON: {exc}"
            raise MalformedEnvelopeError(msg) from exc

        if not isinstance(raw, dict):
            msg = f"Envelope body must be a JSON object, got {type(raw).__name__}"
            raise MalformedEnvelopeError(msg)

        tenant_id = _salvage(raw.get("tenant_id"))
        event_id = _salvage(raw.get("event_id"))
        if tenant_id is None:
            raise MalformedEnvelopeError("Envelope is missing tenant_id", event_id=event_id)
        if event_id is None:
            raise MalformedEnvelopeError("Envelope is missing event_id", tenant_id=tenant_id)

        try:
            return cls.model_validate(raw)
        except ValidationError as exc:
            msg = f"Envelope failed validation with {exc.error_count()} error(s): {_summarize(exc)}"
            raise MalformedEnvelopeError(msg, tenant_id=tenant_id, event_id=event_id) from exc

    def parsed_payload(self) -> EventPayload:
        """Validate ``payload`` against the schema of ``event_type``.

        Raises:
            pydantic.ValidationError: The payload does not match its schema.
        """
        return PAYLOAD_MODELS[self.event_type].model_validate(self.payload)


def _salvage(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value
    return None


def _summarize(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors()[:3]:
        location = ".".join(str(item) for item in error["loc"]) or "envelope"
        parts.append(f"{location}: {error['msg']}")
    return "; ".join(parts)


__all__ = [
    "PAYLOAD_MODELS",
    "TENANT_ID_PATTERN",
    "EventEnvelope",
    "EventType",
    "generate_event_id",
]
