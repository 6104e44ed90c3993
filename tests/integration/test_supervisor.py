"""Integration tests for the projector supervisor."""

from __future__ import annotations

import pytest

from complaint_projections.core.settings.projector import ProjectorSettings
from complaint_projections.projections import LeaseManager, ProjectorSupervisor
from tests.conftest import CONSUMER, eventually, no_sleep


def _nonzero(counts: dict[str, int]) -> dict[str, int]:
    return {status: count for status, count in counts.items() if count}


@pytest.fixture
def settings() -> ProjectorSettings:
    return ProjectorSettings(
        consumer_group=CONSUMER,
        fetch_timeout=0.05,
        idle_poll_interval=0.01,
        pause_seconds=0,
        lease_ttl=30,
        tenant_refresh_interval=0.05,
        shutdown_timeout=5,
    )


@pytest.fixture
def leases(stores) -> LeaseManager:
    return LeaseManager(stores.write)


@pytest.fixture
def make_supervisor(router, broker, leases, checkpoints, dead_letter_store, retry_manager, settings):
    def factory(owner_id: str) -> ProjectorSupervisor:
        supervisor = ProjectorSupervisor(
            router,
            broker,
            leases,
            checkpoints,
            dead_letter_store,
            retry_manager,
            settings,
            owner_id=owner_id,
            sleep=no_sleep,
        )
        return supervisor

    return factory


@pytest.mark.integration
class TestProjectorSupervisor:
    async def test_runs_one_partition_per_tenant(self, tenants, make_supervisor, events, publish, queries, leases):
        supervisor = make_supervisor("owner-a")

        try:
            assert await supervisor.reconcile() == ["acme", "globex"]
            # Same aggregate id in both tenants, interleaved on the broker
            await publish(
                events.created("c-1"),
                events.created("c-1", tenant_id="globex", category="delivery", priority="LOW"),
                events.created("c-2"),
                events.status_changed("c-1", "NEW", "ASSIGNED"),
                events.status_changed("c-1", "NEW", "RESOLVED", tenant_id="globex"),
            )

            async def both_projected() -> bool:
                acme = await queries.status_counts("acme")
                globex = await queries.status_counts("globex")
                return acme.get("ASSIGNED") == 1 and globex.get("RESOLVED") == 1

            await eventually(both_projected)

            acme = await queries.daily_stats("acme")
            globex = await queries.daily_stats("globex")
            assert [(s.category, s.priority, s.total_complaints, s.assigned_complaints) for s in acme] == [
                ("billing", "HIGH", 2, 1)
            ]
            assert [(s.category, s.priority, s.total_complaints, s.resolved_complaints) for s in globex] == [
                ("delivery", "LOW", 1, 1)
            ]
            assert _nonzero(await queries.status_counts("acme")) == {"NEW": 1, "ASSIGNED": 1}
            assert _nonzero(await queries.status_counts("globex")) == {"RESOLVED": 1}
            assert {h.tenant_id for h in supervisor.health()} == {"acme", "globex"}
            assert {lease.owner_id for lease in await leases.list(CONSUMER)} == {"owner-a"}
        finally:
            await supervisor.stop(timeout=5)

        assert await leases.list(CONSUMER) == []

    async def test_second_owner_gets_no_partitions(self, tenants, make_supervisor):
        first = make_supervisor("owner-a")
        second = make_supervisor("owner-b")

        try:
            await first.reconcile()
            assert await second.reconcile() == []
            assert second.states() == {}
        finally:
            await first.stop(timeout=5)
            await second.stop(timeout=5)

    async def test_deactivated_tenant_partition_is_stopped(self, tenants, router, make_supervisor):
        supervisor = make_supervisor("owner-a")

        try:
            await supervisor.reconcile()
            await router.deactivate("globex")

            async def globex_gone() -> bool:
                await supervisor.reconcile()
                return "globex" not in supervisor.states()

            await eventually(globex_gone)
            assert "acme" in supervisor.states()
            stopped = {h.tenant_id: h for h in supervisor.health()}["globex"]
            assert stopped.stop_reason in ("shutdown", "isolation_violation")
        finally:
            await supervisor.stop(timeout=5)

    async def test_background_loop(self, tenants, make_supervisor):
        supervisor = make_supervisor("owner-a")

        await supervisor.start()
        try:
            async def started() -> bool:
                return set(supervisor.states()) == {"acme", "globex"}

            await eventually(started)
            assert supervisor.running
        finally:
            await supervisor.stop(timeout=5)

        assert not supervisor.running
