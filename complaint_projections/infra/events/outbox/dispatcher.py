"""Background outbox dispatcher.

The dispatcher runs as a background task that:
1. Claims the ``outbox-dispatcher`` lease of each active tenant
2. Reads the tenant's Pending records in creation order
3. Publishes each to ``{prefix}.{tenant}.{event_type}`` and marks it Dispatched

Ordering per aggregate is preserved: once a record of an aggregate is not
yet due (backing off) or fails to publish, every later record of that
aggregate waits for the next pass. Broker outages only delay records; they
are never lost or marked Failed. A record whose stored payload cannot be
parsed back into an envelope can never be published and is marked Failed.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import socket
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from complaint_projections.core.database.base import utcnow
from complaint_projections.core.events.envelope import EventEnvelope
from complaint_projections.core.exceptions import (
    IsolationViolationError,
    MalformedEnvelopeError,
    ProjectionError,
    TransientInfrastructureError,
)
from complaint_projections.infra.database.session import StoreKind
from complaint_projections.infra.messaging.conventions import DEFAULT_TOPIC_PREFIX, event_topic
from complaint_projections.infra.metrics.prometheus import (
    outbox_dispatched_total,
    outbox_publish_failures_total,
    outbox_records_failed_total,
)

from .repository import OutboxRepository

if TYPE_CHECKING:
    from collections.abc import Callable

    from complaint_projections.infra.messaging.broker import MessageBroker
    from complaint_projections.infra.tenancy.router import TenantRouter
    from complaint_projections.projections.leases import Lease, LeaseManager

logger = logging.getLogger(__name__)

OUTBOX_CONSUMER = "outbox-dispatcher"


def default_owner_id() -> str:
    """Identify this process in lease rows."""
    return f"{socket.gethostname()}:{os.getpid()}"


@dataclass(slots=True)
class DispatchReport:
    """Outcome of one dispatch pass over one tenant's outbox."""

    tenant_id: str
    published: int = 0
    deferred: int = 0
    failed: int = 0


class OutboxDispatcher:
    """Forward Pending outbox records to the broker.

    Args:
        router: Tenant router (records live in each tenant's write namespace).
        broker: Broker to publish to.
        leases: Lease manager; one dispatcher per tenant at a time.
        batch_size: Records read per tenant per pass.
        poll_interval: Seconds between passes when nothing was published.
        initial_backoff: Delay before the first re-publish attempt.
        max_backoff: Cap for the re-publish delay.
        topic_prefix: First word of every event topic.
        owner_id: Lease owner identity.
        clock: UTC clock, injectable for tests.
    """

    def __init__(
        self,
        router: TenantRouter,
        broker: MessageBroker,
        leases: LeaseManager,
        *,
        batch_size: int = 100,
        poll_interval: float = 1.0,
        initial_backoff: float = 1.0,
        max_backoff: float = 300.0,
        topic_prefix: str = DEFAULT_TOPIC_PREFIX,
        owner_id: str | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.batch_size = batch_size
        self.poll_interval = poll_interval
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.topic_prefix = topic_prefix
        self.owner_id = owner_id or f"{default_owner_id()}:outbox"

        self._router = router
        self._broker = broker
        self._leases = leases
        self._clock = clock
        self._repository = OutboxRepository()
        self._held: dict[str, Lease] = {}
        self._stopping = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    def backoff(self, attempts: int) -> float:
        """Delay before attempt ``attempts + 1``: initial * 2^(attempts-1), capped."""
        return min(self.initial_backoff * 2 ** max(attempts - 1, 0), self.max_backoff)

    # ------------------------------------------------------------------
    # Dispatching
    # ------------------------------------------------------------------

    async def dispatch_tenant(self, tenant_id: str) -> DispatchReport:
        """Run one dispatch pass over ``tenant_id``'s outbox.

        Each record's state change is committed on its own, right after its
        publish attempt, so a crash re-publishes at most one record.
        """
        now = self._clock()
        report = DispatchReport(tenant_id=tenant_id)
        blocked: set[str] = set()

        async with self._router.within(tenant_id, StoreKind.WRITE) as scope:
            records = await self._repository.fetch_pending(scope, limit=self.batch_size)
            for position, record in enumerate(records):
                if record.aggregate_id in blocked or not record.is_due(now):
                    blocked.add(record.aggregate_id)
                    report.deferred += 1
                    continue

                try:
                    envelope = EventEnvelope.from_wire(record.payload)
                    scope.assert_tenant(envelope.tenant_id, event_id=envelope.event_id)
                except (MalformedEnvelopeError, IsolationViolationError) as exc:
                    self._repository.mark_failed(record, exc.message)
                    await scope.commit()
                    report.failed += 1
                    outbox_records_failed_total.labels(tenant=tenant_id).inc()
                    logger.error(
                        "Outbox record can never be published",
                        extra={"tenant_id": tenant_id, "outbox_id": record.id, "error": exc.message},
                    )
                    continue

                topic = event_topic(tenant_id, envelope.event_type.value, self.topic_prefix)
                try:
                    await self._broker.publish(topic, envelope)
                except TransientInfrastructureError as exc:
                    attempts = record.attempts + 1
                    delay = self.backoff(attempts)
                    self._repository.mark_retry(record, exc.message, next_attempt_at=now + timedelta(seconds=delay))
                    await scope.commit()
                    outbox_publish_failures_total.labels(tenant=tenant_id).inc()
                    logger.warning(
                        "Failed to publish outbox record, scheduled for retry",
                        extra={
                            "tenant_id": tenant_id,
                            "event_id": record.event_id,
                            "attempts": attempts,
                            "retry_in_seconds": delay,
                            "error": exc.message,
                        },
                    )
                    # The broker is down; leave the rest for the next pass
                    report.deferred += len(records) - position
                    break

                self._repository.mark_dispatched(record, now=self._clock())
                await scope.commit()
                report.published += 1
                outbox_dispatched_total.labels(tenant=tenant_id).inc()

        if report.published or report.failed:
            logger.info(
                "Outbox batch processed",
                extra={
                    "tenant_id": tenant_id,
                    "published": report.published,
                    "deferred": report.deferred,
                    "failed": report.failed,
                },
            )
        return report

    async def dispatch_once(self) -> list[DispatchReport]:
        """Dispatch every active tenant whose dispatcher lease we hold or can claim."""
        reports: list[DispatchReport] = []
        tenants = await self._router.list_tenants(active_only=True)
        for tenant in tenants:
            lease = await self._leases.claim(tenant.tenant_id, OUTBOX_CONSUMER, self.owner_id)
            if lease is None:
                self._held.pop(tenant.tenant_id, None)
                continue
            self._held[tenant.tenant_id] = lease
            try:
                reports.append(await self.dispatch_tenant(tenant.tenant_id))
            except ProjectionError as exc:
                logger.warning("Outbox pass skipped tenant", extra=exc.to_log_extra())
        return reports

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the background dispatch loop."""
        if self._task is not None:
            logger.warning("Outbox dispatcher already running")
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self.run(), name="outbox-dispatcher")
        logger.info(
            "Outbox dispatcher started",
            extra={"batch_size": self.batch_size, "poll_interval": self.poll_interval, "owner_id": self.owner_id},
        )

    async def stop(self, timeout: float = 30.0) -> None:
        """Stop after the current pass and release held leases."""
        if self._task is None:
            return
        self._stopping.set()
        try:
            await asyncio.wait_for(self._task, timeout=timeout)
        except TimeoutError:
            logger.warning("Outbox dispatcher shutdown timed out, cancelling")
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None
        await self._release_all()
        logger.info("Outbox dispatcher stopped")

    async def run(self) -> None:
        """Dispatch until ``stop`` is requested."""
        while not self._stopping.is_set():
            try:
                reports = await self.dispatch_once()
                published = sum(report.published for report in reports)
                delay = 0.0 if published else self.poll_interval
            except Exception:
                logger.exception("Error in outbox dispatcher loop")
                delay = self.poll_interval * 2

            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._stopping.wait(), timeout=delay or 0.001)

    async def _release_all(self) -> None:
        for lease in list(self._held.values()):
            try:
                await self._leases.release(lease)
            except Exception:
                logger.exception("Failed to release outbox lease", extra={"tenant_id": lease.tenant_id})
        self._held.clear()

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def compact(self, tenant_id: str, *, retention_days: int) -> int:
        """Delete the tenant's Dispatched records older than ``retention_days``."""
        async with self._router.within(tenant_id, StoreKind.WRITE) as scope:
            deleted = await self._repository.compact(scope, older_than_days=retention_days, now=self._clock())
            await scope.commit()
        logger.info("Outbox compacted", extra={"tenant_id": tenant_id, "deleted": deleted})
        return deleted

    async def reset_failed(self, tenant_id: str) -> int:
        """Return the tenant's Failed records to Pending."""
        async with self._router.within(tenant_id, StoreKind.WRITE) as scope:
            reset = await self._repository.reset_failed(scope)
            await scope.commit()
        logger.info("Failed outbox records reset", extra={"tenant_id": tenant_id, "reset": reset})
        return reset

    async def counts(self, tenant_id: str) -> dict[str, int]:
        async with self._router.within(tenant_id, StoreKind.WRITE) as scope:
            return await self._repository.count_by_state(scope)


__all__ = ["OUTBOX_CONSUMER", "DispatchReport", "OutboxDispatcher", "default_owner_id"]
