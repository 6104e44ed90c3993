"""Projector supervisor.

Runs one ``PartitionProjector`` task per active tenant whose partition lease
this process holds. Every ``tenant_refresh_interval`` it:

1. Reaps finished partition tasks (lost lease, conflict, isolation failure)
2. Stops partitions of tenants that were deactivated
3. Claims leases for tenants without a running partition and starts them

Partitions share nothing but the connection pools, so tenants progress fully
in parallel while each partition stays strictly sequential.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING

from complaint_projections.infra.events.outbox.dispatcher import default_owner_id
from complaint_projections.infra.messaging.conventions import DEFAULT_TOPIC_PREFIX
from complaint_projections.infra.metrics.prometheus import projection_partitions_active

from .projector import PartitionHealth, PartitionProjector, PartitionState
from .views import ViewWriter

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from complaint_projections.core.settings.projector import ProjectorSettings
    from complaint_projections.infra.messaging.broker import MessageBroker
    from complaint_projections.infra.tenancy.router import TenantRouter

    from .checkpoints import CheckpointStore
    from .dead_letters import DeadLetterStore
    from .leases import Lease, LeaseManager
    from .retry import RetryManager

logger = logging.getLogger(__name__)


class ProjectorSupervisor:
    """Own the partitions of one consumer group in this process.

    Args:
        router: Tenant router, used for discovery and by every partition.
        broker: Broker the partitions pull from.
        leases: Lease manager for single active ownership.
        checkpoints: Checkpoint store.
        dead_letters: Quarantine store.
        retry: Retry manager shared by the partitions.
        settings: Projector settings (consumer group, batch and poll sizes).
        topic_prefix: First word of event topics.
        owner_id: Lease owner identity of this process.
        sleep: Awaitable sleep handed to the partitions.
    """

    def __init__(
        self,
        router: TenantRouter,
        broker: MessageBroker,
        leases: LeaseManager,
        checkpoints: CheckpointStore,
        dead_letters: DeadLetterStore,
        retry: RetryManager,
        settings: ProjectorSettings,
        *,
        topic_prefix: str = DEFAULT_TOPIC_PREFIX,
        owner_id: str | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.consumer = settings.consumer_group
        self.owner_id = owner_id or default_owner_id()
        self.settings = settings
        self.topic_prefix = topic_prefix

        self._router = router
        self._broker = broker
        self._leases = leases
        self._checkpoints = checkpoints
        self._dead_letters = dead_letters
        self._retry = retry
        self._sleep = sleep
        self._views = ViewWriter(self.consumer)

        self._partitions: dict[str, PartitionProjector] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._stopped: dict[str, PartitionHealth] = {}
        self._stopping = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def partition(self, tenant_id: str) -> PartitionProjector | None:
        return self._partitions.get(tenant_id)

    def health(self) -> list[PartitionHealth]:
        """Health of every running partition plus the last state of stopped ones."""
        merged = dict(self._stopped)
        merged.update({tenant_id: p.health for tenant_id, p in self._partitions.items()})
        return [merged[tenant_id] for tenant_id in sorted(merged)]

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def reconcile(self) -> list[str]:
        """Bring running partitions in line with the tenant registry.

        Returns:
            Tenant ids of the partitions started by this pass.
        """
        await self._reap()
        tenants = await self._router.list_tenants(active_only=True)
        active = {tenant.tenant_id for tenant in tenants}

        for tenant_id, projector in self._partitions.items():
            if tenant_id not in active:
                logger.info(
                    "Tenant deactivated, stopping partition",
                    extra={"tenant_id": tenant_id, "consumer": self.consumer},
                )
                projector.request_stop()

        started: list[str] = []
        for tenant_id in sorted(active - self._partitions.keys()):
            if self._stopping.is_set():
                break
            lease = await self._leases.claim(tenant_id, self.consumer, self.owner_id)
            if lease is None:
                continue
            self._start_partition(tenant_id, lease)
            started.append(tenant_id)

        projection_partitions_active.labels(consumer=self.consumer).set(len(self._partitions))
        return started

    def _start_partition(self, tenant_id: str, lease: Lease) -> PartitionProjector:
        projector = PartitionProjector(
            tenant_id,
            router=self._router,
            broker=self._broker,
            checkpoints=self._checkpoints,
            views=self._views,
            dead_letters=self._dead_letters,
            retry=self._retry,
            consumer=self.consumer,
            batch_size=self.settings.batch_size,
            fetch_timeout=self.settings.fetch_timeout,
            idle_poll_interval=self.settings.idle_poll_interval,
            pause_seconds=self.settings.pause_seconds,
            topic_prefix=self.topic_prefix,
            leases=self._leases,
            lease=lease,
            lease_renew_interval=self.settings.lease_ttl / 3,
            sleep=self._sleep,
        )
        self._partitions[tenant_id] = projector
        self._stopped.pop(tenant_id, None)
        self._tasks[tenant_id] = asyncio.create_task(
            projector.run(), name=f"projector:{self.consumer}:{tenant_id}"
        )
        return projector

    async def _reap(self) -> None:
        for tenant_id, task in list(self._tasks.items()):
            if not task.done():
                continue
            await self._finish(tenant_id, task)

    async def _finish(self, tenant_id: str, task: asyncio.Task[None]) -> None:
        projector = self._partitions.pop(tenant_id)
        self._tasks.pop(tenant_id, None)
        self._stopped[tenant_id] = projector.health
        if not task.cancelled() and (exc := task.exception()) is not None:
            logger.error(
                "Partition task crashed",
                extra={"tenant_id": tenant_id, "consumer": self.consumer, "error": str(exc)},
                exc_info=exc,
            )
        # A lost lease already belongs to someone else
        if projector.lease is not None and projector.health.stop_reason != "lease_lost":
            try:
                await self._leases.release(projector.lease)
            except Exception:
                logger.exception("Failed to release partition lease", extra={"tenant_id": tenant_id})

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the supervision loop in the background."""
        if self._task is not None:
            logger.warning("Projector supervisor already running")
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self.run(), name=f"projector-supervisor:{self.consumer}")
        logger.info(
            "Projector supervisor started",
            extra={"consumer": self.consumer, "owner_id": self.owner_id},
        )

    async def run(self) -> None:
        """Reconcile until ``stop`` is requested."""
        while not self._stopping.is_set():
            try:
                await self.reconcile()
            except Exception:
                logger.exception("Error in projector supervisor loop", extra={"consumer": self.consumer})
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._stopping.wait(), timeout=self.settings.tenant_refresh_interval)

    async def stop(self, timeout: float | None = None) -> None:
        """Stop every partition after its in-flight batch, then release leases."""
        timeout = self.settings.shutdown_timeout if timeout is None else timeout
        self._stopping.set()
        if self._task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

        for projector in self._partitions.values():
            projector.request_stop()
        pending = set(self._tasks.values())
        if pending:
            _, still_running = await asyncio.wait(pending, timeout=timeout)
            for task in still_running:
                logger.warning("Partition did not stop in time, cancelling", extra={"task": task.get_name()})
                task.cancel()
            if still_running:
                await asyncio.wait(still_running)

        for tenant_id, task in list(self._tasks.items()):
            await self._finish(tenant_id, task)
        projection_partitions_active.labels(consumer=self.consumer).set(0)
        logger.info("Projector supervisor stopped", extra={"consumer": self.consumer})

    def states(self) -> dict[str, PartitionState]:
        return {tenant_id: p.state for tenant_id, p in self._partitions.items()}


__all__ = ["ProjectorSupervisor"]
