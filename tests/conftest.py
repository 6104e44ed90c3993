"""Pytest configuration and shared fixtures.

Organization:
    - Settings Fixtures: environment and settings cache
    - Store Fixtures: SQLite write, read and quarantine stores in tmp_path
    - Engine Fixtures: router, broker, checkpoints, dead letters, retries
    - Event Fixtures: envelope factory and publishing helpers

Every store is a separate SQLite file: SQLite cannot host per-tenant schemas,
so tenants use the shared strategy and tables live in the default schema.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import UTC, datetime, timedelta
import os
from typing import Any

import pytest

from complaint_projections.core.events.envelope import EventEnvelope, EventType
from complaint_projections.core.settings import clear_settings_cache
from complaint_projections.infra.database.session import Database, StoreKind, StoreRegistry
from complaint_projections.infra.messaging import InMemoryBroker, event_topic, partition_pattern
from complaint_projections.infra.tenancy.router import TenantRouter
from complaint_projections.projections import (
    CheckpointStore,
    DeadLetterStore,
    PartitionProjector,
    ReadModelQueries,
    RetryManager,
    ViewWriter,
)

# Keep tests off external infrastructure
os.environ.setdefault("RABBIT_ENABLED", "false")
os.environ.setdefault("APP_ENVIRONMENT", "test")
os.environ.setdefault("LOG_JSON_LOGS", "false")

CONSUMER = "complaint_stats"
BASE_TIME = datetime(2024, 3, 1, 9, 0, tzinfo=UTC)


async def no_sleep(_: float) -> None:
    """Sleep replacement that only yields to the loop."""
    await asyncio.sleep(0)


async def eventually(check: Callable[[], Awaitable[bool]], *, timeout: float = 5.0, interval: float = 0.02) -> None:
    """Poll ``check`` until it returns True or fail after ``timeout`` seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not await check():
        if loop.time() > deadline:
            pytest.fail(f"Condition not met within {timeout}s")
        await asyncio.sleep(interval)


# ============================================================================
# Settings Fixtures
# ============================================================================


@pytest.fixture(autouse=True)
def _fresh_settings():
    """Reload settings from the environment for every test."""
    clear_settings_cache()
    yield
    clear_settings_cache()


# ============================================================================
# Store Fixtures
# ============================================================================


@pytest.fixture
def sqlite_urls(tmp_path) -> dict[str, str]:
    """One SQLite database file per store."""
    return {kind.value: f"sqlite+aiosqlite:///{tmp_path / f'{kind.value}.db'}" for kind in StoreKind}


@pytest.fixture
async def stores(sqlite_urls) -> AsyncGenerator[StoreRegistry]:
    """Store registry with the shared tables created."""
    registry = StoreRegistry(
        write=Database(sqlite_urls["write"], name=StoreKind.WRITE),
        read=Database(sqlite_urls["read"], name=StoreKind.READ),
        quarantine=Database(sqlite_urls["quarantine"], name=StoreKind.QUARANTINE),
    )
    await registry.init_shared_tables()
    yield registry
    await registry.dispose()


# ============================================================================
# Engine Fixtures
# ============================================================================


@pytest.fixture
def router(stores) -> TenantRouter:
    return TenantRouter(stores)


@pytest.fixture
async def tenants(router) -> list[str]:
    """Two provisioned tenants."""
    for tenant_id in ("acme", "globex"):
        await router.provision(tenant_id)
    return ["acme", "globex"]


@pytest.fixture
def broker() -> InMemoryBroker:
    return InMemoryBroker(max_redeliveries=2, visibility_timeout=30.0)


@pytest.fixture
def checkpoints(router) -> CheckpointStore:
    return CheckpointStore(router)


@pytest.fixture
def dead_letter_store(stores) -> DeadLetterStore:
    return DeadLetterStore(stores.quarantine)


@pytest.fixture
def views() -> ViewWriter:
    return ViewWriter(CONSUMER)


@pytest.fixture
def retry_manager() -> RetryManager:
    """Three attempts, no waiting."""
    return RetryManager(max_attempts=3, initial_delay=0.0, max_delay=0.0, jitter=False, sleep=no_sleep)


@pytest.fixture
def queries(router) -> ReadModelQueries:
    return ReadModelQueries(router)


@pytest.fixture
def make_projector(router, broker, checkpoints, views, dead_letter_store, retry_manager):
    """Factory for partition projectors with fast polling.

    Example:
        async def test_apply(make_projector):
            projector = make_projector("acme")
            result = await projector.run_once()
    """

    def factory(tenant_id: str = "acme", **overrides: Any) -> PartitionProjector:
        options: dict[str, Any] = {
            "router": router,
            "broker": broker,
            "checkpoints": checkpoints,
            "views": views,
            "dead_letters": dead_letter_store,
            "retry": retry_manager,
            "consumer": CONSUMER,
            "batch_size": 100,
            "fetch_timeout": 0.05,
            "idle_poll_interval": 0,
            "pause_seconds": 0,
            "sleep": no_sleep,
        }
        options.update(overrides)
        return PartitionProjector(tenant_id, **options)

    return factory


# ============================================================================
# Event Fixtures
# ============================================================================


class EventFactory:
    """Builds complaint envelopes with sensible defaults."""

    def created(
        self,
        aggregate_id: str,
        *,
        tenant_id: str = "acme",
        sequence: int = 1,
        category: str = "billing",
        priority: str = "HIGH",
        status: str = "NEW",
        occurred_at: datetime = BASE_TIME,
        **kwargs: Any,
    ) -> EventEnvelope:
        return EventEnvelope(
            event_type=EventType.COMPLAINT_CREATED,
            aggregate_id=aggregate_id,
            tenant_id=tenant_id,
            sequence=sequence,
            occurred_at=occurred_at,
            payload={"category": category, "priority": priority, "status": status},
            **kwargs,
        )

    def status_changed(
        self,
        aggregate_id: str,
        old_status: str,
        new_status: str,
        *,
        tenant_id: str = "acme",
        sequence: int = 2,
        occurred_at: datetime | None = None,
        **kwargs: Any,
    ) -> EventEnvelope:
        return EventEnvelope(
            event_type=EventType.COMPLAINT_STATUS_CHANGED,
            aggregate_id=aggregate_id,
            tenant_id=tenant_id,
            sequence=sequence,
            occurred_at=occurred_at or BASE_TIME + timedelta(hours=sequence),
            payload={"old_status": old_status, "new_status": new_status},
            **kwargs,
        )

    def assigned(
        self,
        aggregate_id: str,
        *,
        tenant_id: str = "acme",
        sequence: int = 2,
        assignee_id: str = "agent-7",
        **kwargs: Any,
    ) -> EventEnvelope:
        return EventEnvelope(
            event_type=EventType.COMPLAINT_ASSIGNED,
            aggregate_id=aggregate_id,
            tenant_id=tenant_id,
            sequence=sequence,
            occurred_at=BASE_TIME + timedelta(hours=sequence),
            payload={"assignee_id": assignee_id},
            **kwargs,
        )


@pytest.fixture
def events() -> EventFactory:
    return EventFactory()


@pytest.fixture
def publish(broker):
    """Publish envelopes to their tenant's topic.

    The tenant's partition queue is declared first, so messages published
    before the projector subscribes are kept.
    """

    async def _publish(*envelopes: EventEnvelope, tenant_id: str | None = None) -> None:
        for envelope in envelopes:
            target = tenant_id or envelope.tenant_id
            await broker.subscribe(partition_pattern(target), CONSUMER)
            await broker.publish(event_topic(target, envelope.event_type.value), envelope)

    return _publish
