"""View delta computation.

Turning an event into view changes is a pure function of the envelope and
the aggregate's current snapshot. Nothing here touches a database, so a
failure while computing a delta can never leave a partial write behind.

Counters are attributed to the (day opened, category, priority) of the
complaint, whatever event changes them. ``open_complaints`` and
``resolved_complaints`` always add up to ``total_complaints``: leaving an
open status counts as a resolution, re-entering one undoes it.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field, replace
from datetime import date
from typing import TYPE_CHECKING, TypeAlias

from pydantic import ValidationError

from complaint_projections.core.events.payloads import (
    ComplaintAssignedPayload,
    ComplaintCreatedPayload,
    ComplaintStatus,
    ComplaintStatusChangedPayload,
)
from complaint_projections.core.exceptions import MalformedEnvelopeError, PoisonMessageError, UnknownAggregateError

if TYPE_CHECKING:
    from datetime import datetime

    from complaint_projections.core.events.envelope import EventEnvelope

StatsKey: TypeAlias = tuple[date, str, str]


@dataclass(frozen=True, slots=True)
class AggregateSnapshot:
    """What the projector remembers about one complaint."""

    category: str
    priority: str
    status: ComplaintStatus
    opened_at: datetime
    opened_on: date
    is_assigned: bool
    last_sequence: int
    last_event_id: str

    @property
    def stats_key(self) -> StatsKey:
        return (self.opened_on, self.category, self.priority)


@dataclass(slots=True)
class StatsDelta:
    """Increments for one ``complaint_stats_by_day`` row."""

    total: int = 0
    open: int = 0
    assigned: int = 0
    resolved: int = 0
    resolution_seconds: float = 0.0
    resolution_count: int = 0

    def is_zero(self) -> bool:
        return not (
            self.total or self.open or self.assigned or self.resolved or self.resolution_seconds or self.resolution_count
        )


@dataclass(slots=True)
class ViewDelta:
    """All view increments caused by one event."""

    stats: dict[StatsKey, StatsDelta] = field(default_factory=lambda: defaultdict(StatsDelta))
    status_counts: dict[str, int] = field(default_factory=lambda: defaultdict(int))

    def is_empty(self) -> bool:
        return all(delta.is_zero() for delta in self.stats.values()) and not any(self.status_counts.values())


@dataclass(frozen=True, slots=True)
class Projection:
    """Result of projecting one event: the aggregate's new snapshot and the view delta."""

    snapshot: AggregateSnapshot
    delta: ViewDelta


def compute_projection(envelope: EventEnvelope, state: AggregateSnapshot | None) -> Projection:
    """Compute the new snapshot and view delta for ``envelope``.

    Args:
        envelope: Event to project; its sequence is above ``state.last_sequence``.
        state: Current snapshot of the aggregate, or None if never seen.

    Raises:
        MalformedEnvelopeError: The payload does not match its event type.
        UnknownAggregateError: A follow-up event for an aggregate never created.
        PoisonMessageError: A second creation of an existing aggregate.
    """
    try:
        payload = envelope.parsed_payload()
    except ValidationError as exc:
        msg = f"{envelope.event_type} payload failed validation: {exc.error_count()} error(s)"
        raise MalformedEnvelopeError(msg, tenant_id=envelope.tenant_id, event_id=envelope.event_id) from exc

    if isinstance(payload, ComplaintCreatedPayload):
        if state is not None:
            msg = f"Aggregate {envelope.aggregate_id!r} was already created"
            raise PoisonMessageError(msg, tenant_id=envelope.tenant_id, event_id=envelope.event_id)
        return _created(envelope, payload)

    if state is None:
        msg = f"{envelope.event_type} for unknown aggregate {envelope.aggregate_id!r}"
        raise UnknownAggregateError(
            msg,
            tenant_id=envelope.tenant_id,
            event_id=envelope.event_id,
            details={"aggregate_id": envelope.aggregate_id},
        )

    if isinstance(payload, ComplaintStatusChangedPayload):
        return _status_changed(envelope, payload, state)
    if isinstance(payload, ComplaintAssignedPayload):
        return _assigned(envelope, state)

    msg = f"No projection for event type {envelope.event_type}"
    raise PoisonMessageError(msg, tenant_id=envelope.tenant_id, event_id=envelope.event_id)


def _created(envelope: EventEnvelope, payload: ComplaintCreatedPayload) -> Projection:
    snapshot = AggregateSnapshot(
        category=payload.category,
        priority=payload.priority.value,
        status=payload.status,
        opened_at=envelope.occurred_at,
        opened_on=envelope.occurred_at.date(),
        is_assigned=payload.status is ComplaintStatus.ASSIGNED,
        last_sequence=envelope.sequence,
        last_event_id=envelope.event_id,
    )
    delta = ViewDelta()
    stats = delta.stats[snapshot.stats_key]
    stats.total += 1
    if payload.status.is_open:
        stats.open += 1
    else:
        stats.resolved += 1
        stats.resolution_count += 1
    if snapshot.is_assigned:
        stats.assigned += 1
    delta.status_counts[payload.status.value] += 1
    return Projection(snapshot=snapshot, delta=delta)


def _status_changed(
    envelope: EventEnvelope,
    payload: ComplaintStatusChangedPayload,
    state: AggregateSnapshot,
) -> Projection:
    # Decrement the stored status, not payload.old_status
    old, new = state.status, payload.new_status
    delta = ViewDelta()
    snapshot = replace(state, last_sequence=envelope.sequence, last_event_id=envelope.event_id)
    if old is new:
        return Projection(snapshot=snapshot, delta=delta)

    delta.status_counts[old.value] -= 1
    delta.status_counts[new.value] += 1

    stats = delta.stats[state.stats_key]
    if old.is_open and not new.is_open:
        stats.open -= 1
        stats.resolved += 1
        stats.resolution_seconds += max((envelope.occurred_at - state.opened_at).total_seconds(), 0.0)
        stats.resolution_count += 1
    elif not old.is_open and new.is_open:
        stats.open += 1
        stats.resolved -= 1

    is_assigned = state.is_assigned
    if new is ComplaintStatus.ASSIGNED and not is_assigned:
        stats.assigned += 1
        is_assigned = True

    return Projection(snapshot=replace(snapshot, status=new, is_assigned=is_assigned), delta=delta)


def _assigned(envelope: EventEnvelope, state: AggregateSnapshot) -> Projection:
    delta = ViewDelta()
    snapshot = replace(state, last_sequence=envelope.sequence, last_event_id=envelope.event_id, is_assigned=True)
    if not state.is_assigned:
        delta.stats[state.stats_key].assigned += 1
    return Projection(snapshot=snapshot, delta=delta)


__all__ = [
    "AggregateSnapshot",
    "Projection",
    "StatsDelta",
    "StatsKey",
    "ViewDelta",
    "compute_projection",
]
