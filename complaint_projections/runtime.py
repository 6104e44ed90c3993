"""Engine runtime: wires stores, router, broker and workers together.

Both entrypoints build one ``Runtime``: the FastAPI lifespan (API plus,
optionally, embedded workers) and the ``worker run`` CLI command.

Startup order:
1. Stores (with connection retries) and shared tables
2. Broker connection
3. Workers: projector supervisor, outbox dispatcher, dead-letter drain,
   lag sampler

Shutdown runs in reverse; partitions finish their in-flight batch first.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import TYPE_CHECKING

from sqlalchemy.exc import DBAPIError

from complaint_projections.core.settings import (
    get_db_settings,
    get_lag_settings,
    get_outbox_settings,
    get_projector_settings,
    get_rabbit_settings,
    get_retry_settings,
    get_tenancy_settings,
)
from complaint_projections.infra.database.session import StoreRegistry
from complaint_projections.infra.events.outbox import OutboxDispatcher
from complaint_projections.infra.events.outbox.dispatcher import default_owner_id
from complaint_projections.infra.messaging import create_broker
from complaint_projections.infra.tenancy.router import TenantRouter
from complaint_projections.projections import (
    CheckpointStore,
    DeadLetterManager,
    DeadLetterStore,
    DeadLetterTopicDrain,
    LagMonitor,
    LeaseManager,
    ProjectorSupervisor,
    ReadModelQueries,
    RetryManager,
)
from complaint_projections.utils.retry import retry

if TYPE_CHECKING:
    from complaint_projections.core.settings import (
        DatabaseSettings,
        LagSettings,
        OutboxSettings,
        ProjectorSettings,
        RabbitSettings,
        RetrySettings,
        TenancySettings,
    )
    from complaint_projections.infra.messaging.broker import MessageBroker

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Runtime:
    """Every long-lived component of one engine process."""

    stores: StoreRegistry
    router: TenantRouter
    broker: MessageBroker
    leases: LeaseManager
    checkpoints: CheckpointStore
    dead_letters: DeadLetterStore
    dead_letter_manager: DeadLetterManager
    retry: RetryManager
    lag: LagMonitor
    queries: ReadModelQueries
    supervisor: ProjectorSupervisor
    dispatcher: OutboxDispatcher
    drain: DeadLetterTopicDrain
    projector_settings: ProjectorSettings
    outbox_settings: OutboxSettings
    db_settings: DatabaseSettings
    workers_started: bool = field(default=False)

    @property
    def consumer(self) -> str:
        return self.projector_settings.consumer_group

    @classmethod
    def from_settings(
        cls,
        *,
        db: DatabaseSettings | None = None,
        rabbit: RabbitSettings | None = None,
        projector: ProjectorSettings | None = None,
        retry_settings: RetrySettings | None = None,
        outbox: OutboxSettings | None = None,
        lag: LagSettings | None = None,
        tenancy: TenancySettings | None = None,
        broker: MessageBroker | None = None,
        owner_id: str | None = None,
    ) -> Runtime:
        """Build a runtime from (cached) settings.

        Args:
            broker: Use this broker instead of the one ``RABBIT_ENABLED`` selects.
            owner_id: Lease owner identity; defaults to ``hostname:pid``.
        """
        db = db or get_db_settings()
        rabbit = rabbit or get_rabbit_settings()
        projector = projector or get_projector_settings()
        retry_settings = retry_settings or get_retry_settings()
        outbox = outbox or get_outbox_settings()
        lag = lag or get_lag_settings()
        tenancy = tenancy or get_tenancy_settings()
        owner_id = owner_id or default_owner_id()

        stores = StoreRegistry.from_settings(db)
        router = TenantRouter(
            stores,
            cache_ttl=tenancy.cache_ttl_seconds,
            cache_max_entries=tenancy.cache_max_entries,
            schema_prefix=tenancy.schema_prefix,
            default_strategy=tenancy.default_strategy,
        )
        broker = broker or create_broker(rabbit)
        checkpoints = CheckpointStore(router)
        dead_letters = DeadLetterStore(stores.quarantine)
        retry_manager = RetryManager.from_settings(retry_settings)
        projector_leases = LeaseManager(stores.write, ttl=projector.lease_ttl)

        return cls(
            stores=stores,
            router=router,
            broker=broker,
            leases=projector_leases,
            checkpoints=checkpoints,
            dead_letters=dead_letters,
            dead_letter_manager=DeadLetterManager(dead_letters, broker),
            retry=retry_manager,
            lag=LagMonitor.from_settings(router, checkpoints, lag),
            queries=ReadModelQueries(router),
            supervisor=ProjectorSupervisor(
                router,
                broker,
                projector_leases,
                checkpoints,
                dead_letters,
                retry_manager,
                projector,
                topic_prefix=rabbit.topic_prefix,
                owner_id=owner_id,
            ),
            dispatcher=OutboxDispatcher(
                router,
                broker,
                LeaseManager(stores.write, ttl=outbox.lease_ttl),
                batch_size=outbox.batch_size,
                poll_interval=outbox.poll_interval,
                initial_backoff=outbox.initial_backoff_seconds,
                max_backoff=outbox.max_backoff_seconds,
                topic_prefix=rabbit.topic_prefix,
                owner_id=f"{owner_id}:outbox",
            ),
            drain=DeadLetterTopicDrain(
                broker,
                dead_letters,
                default_consumer=projector.consumer_group,
                fetch_timeout=projector.fetch_timeout,
            ),
            projector_settings=projector,
            outbox_settings=outbox,
            db_settings=db,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self, *, create_tables: bool = True) -> None:
        """Reach every store and the broker; optionally ensure shared tables."""
        ping = retry(
            max_attempts=self.db_settings.startup_retry_attempts,
            initial_delay=self.db_settings.startup_retry_delay,
            max_delay=30.0,
            exceptions=(OSError, DBAPIError),
        )(self.stores.ping_all)
        await ping()
        if create_tables:
            await self.stores.init_shared_tables()
        await self.broker.connect()
        logger.info("Runtime opened", extra={"consumer": self.consumer})

    async def start_workers(self) -> None:
        """Start the projector, outbox dispatcher, dead-letter drain and lag sampler."""
        await self.supervisor.start()
        await self.dispatcher.start()
        await self.drain.start()
        await self.lag.start(self.consumer)
        self.workers_started = True
        logger.info("Workers started", extra={"consumer": self.consumer})

    async def stop_workers(self) -> None:
        if not self.workers_started:
            return
        await self.lag.stop()
        await self.drain.stop()
        await self.dispatcher.stop()
        await self.supervisor.stop(self.projector_settings.shutdown_timeout)
        self.workers_started = False
        logger.info("Workers stopped", extra={"consumer": self.consumer})

    async def close(self) -> None:
        """Stop workers, then close the broker and dispose every store."""
        await self.stop_workers()
        try:
            await self.broker.close()
        except Exception:
            logger.exception("Error closing broker")
        await self.stores.dispose()
        logger.info("Runtime closed")


__all__ = ["Runtime"]
