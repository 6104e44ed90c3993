"""Event infrastructure for reliable event delivery.

This package provides the transactional outbox:
- OutboxRecord model staging events in the tenant's write namespace
- record_event for the write path
- OutboxDispatcher forwarding staged events to the broker
"""

from complaint_projections.infra.events.outbox import (
    DispatchReport,
    DispatchState,
    OutboxDispatcher,
    OutboxRecord,
    OutboxRepository,
    record_event,
)

__all__ = [
    "DispatchReport",
    "DispatchState",
    "OutboxDispatcher",
    "OutboxRecord",
    "OutboxRepository",
    "record_event",
]
