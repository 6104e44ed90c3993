"""Write-side entry point of the outbox.

Business code records events through the same tenant scope it uses for its
own mutation, then commits once:

    async with router.within(tenant_id, StoreKind.WRITE) as scope:
        scope.session.add(complaint)
        record_event(scope, envelope)
        await scope.commit()
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .repository import OutboxRepository

if TYPE_CHECKING:
    from complaint_projections.core.events.envelope import EventEnvelope
    from complaint_projections.infra.tenancy.router import TenantScope

    from .models import OutboxRecord

logger = logging.getLogger(__name__)

_repository = OutboxRepository()


def record_event(scope: TenantScope, envelope: EventEnvelope) -> OutboxRecord:
    """Append ``envelope`` to the outbox within the caller's transaction.

    Nothing is written until the caller commits; a rolled back transaction
    leaves no outbox row behind.

    Raises:
        IsolationViolationError: ``envelope.tenant_id`` is not the scope's tenant.
    """
    record = _repository.add(scope, envelope)
    logger.debug(
        "Event staged in outbox",
        extra={
            "tenant_id": scope.tenant_id,
            "event_id": envelope.event_id,
            "event_type": envelope.event_type.value,
            "aggregate_id": envelope.aggregate_id,
        },
    )
    return record


__all__ = ["record_event"]
