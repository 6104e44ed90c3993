"""Transactional outbox.

1. ``record_event`` writes an event to the outbox in the same transaction as
   the business change it reports on
2. ``OutboxDispatcher`` publishes Pending records to the broker in creation
   order per aggregate
3. Records are marked Dispatched on broker acceptance and compacted after
   the retention window

This gives at-least-once delivery; duplicates are absorbed downstream.
"""

from complaint_projections.infra.events.outbox.dispatcher import OUTBOX_CONSUMER, DispatchReport, OutboxDispatcher
from complaint_projections.infra.events.outbox.models import DispatchState, OutboxRecord
from complaint_projections.infra.events.outbox.recorder import record_event
from complaint_projections.infra.events.outbox.repository import OutboxRepository

__all__ = [
    "OUTBOX_CONSUMER",
    "DispatchReport",
    "DispatchState",
    "OutboxDispatcher",
    "OutboxRecord",
    "OutboxRepository",
    "record_event",
]
