"""Integration tests for tenant resolution and scoped sessions."""

from __future__ import annotations

import pytest

from complaint_projections.core.exceptions import (
    IsolationViolationError,
    MissingTenantError,
    TenantMismatchError,
    UnknownTenantError,
)
from complaint_projections.infra.database.session import StoreKind
from complaint_projections.infra.tenancy.models import IsolationStrategy
from complaint_projections.infra.tenancy.router import TenantRouter


@pytest.mark.integration
class TestResolve:
    async def test_provisioned_tenant_resolves(self, router, tenants):
        handle = await router.resolve("acme")

        assert handle.tenant_id == "acme"
        assert handle.strategy is IsolationStrategy.SHARED
        assert handle.read_schema is None

    @pytest.mark.parametrize("tenant_id", [None, "", "   "])
    async def test_missing_tenant(self, router, tenant_id):
        with pytest.raises(MissingTenantError):
            await router.resolve(tenant_id)

    @pytest.mark.parametrize("tenant_id", ["acme;drop", "../globex", "x" * 65])
    async def test_malformed_tenant(self, router, tenant_id):
        with pytest.raises(UnknownTenantError):
            await router.resolve(tenant_id)

    async def test_unregistered_tenant(self, router, tenants):
        with pytest.raises(UnknownTenantError):
            await router.resolve("initech")

    async def test_isolation_errors_share_a_base(self, router):
        with pytest.raises(IsolationViolationError):
            await router.resolve("initech")


@pytest.mark.integration
class TestProvision:
    async def test_provision_is_idempotent(self, router):
        first = await router.provision("acme")
        second = await router.provision("acme")

        assert first == second
        assert [t.tenant_id for t in await router.list_tenants()] == ["acme"]

    async def test_schema_strategy_needs_schema_support(self, router):
        with pytest.raises(ValueError, match="cannot host per-tenant schemas"):
            await router.provision("acme", IsolationStrategy.SCHEMA)

        with pytest.raises(UnknownTenantError):
            await router.resolve("acme")

    async def test_reprovision_reactivates(self, router, tenants):
        await router.deactivate("acme")
        await router.provision("acme")

        assert (await router.resolve("acme")).tenant_id == "acme"


@pytest.mark.integration
class TestDeactivate:
    async def test_deactivated_tenant_fails_closed(self, router, tenants):
        assert await router.deactivate("acme") is True

        with pytest.raises(UnknownTenantError):
            await router.resolve("acme")
        assert [t.tenant_id for t in await router.list_tenants()] == ["globex"]
        assert len(await router.list_tenants(active_only=False)) == 2

    async def test_unknown_tenant_deactivation(self, router):
        assert await router.deactivate("initech") is False

    async def test_cached_mapping_is_revalidated(self, stores, router, tenants):
        async with router.within("acme"):
            pass
        await TenantRouter(stores).deactivate("acme")

        # The first router still caches acme's mapping
        with pytest.raises(UnknownTenantError):
            async with router.within("acme"):
                pass


@pytest.mark.integration
class TestWithin:
    async def test_scope_is_bound_to_tenant(self, router, tenants):
        async with router.within("acme", StoreKind.WRITE) as scope:
            assert scope.tenant_id == "acme"
            assert scope.store is StoreKind.WRITE
            assert scope.dialect_name == "sqlite"

    async def test_quarantine_store_is_not_tenant_scoped(self, router, tenants):
        with pytest.raises(ValueError, match="not tenant-partitioned"):
            async with router.within("acme", StoreKind.QUARANTINE):
                pass

    async def test_assert_tenant_rejects_foreign_data(self, router, tenants):
        async with router.within("acme") as scope:
            scope.assert_tenant("acme")
            with pytest.raises(TenantMismatchError) as exc_info:
                scope.assert_tenant("globex", event_id="evt-1")

        assert exc_info.value.expected == "acme"
        assert exc_info.value.actual == "globex"

    async def test_assert_tenant_rejects_missing_identifier(self, router, tenants):
        async with router.within("acme") as scope:
            with pytest.raises(MissingTenantError):
                scope.assert_tenant(None)

    async def test_tenants_do_not_see_each_other(self, router, tenants, checkpoints):
        async with router.within("acme") as scope:
            await checkpoints.advance(scope, "complaint_stats", "evt-1", 1)
            await scope.commit()

        assert (await checkpoints.get("acme", "complaint_stats")).last_sequence == 1
        assert await checkpoints.get("globex", "complaint_stats") is None
