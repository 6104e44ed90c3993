"""Integration tests for checkpoints and partition leases."""

from __future__ import annotations

from datetime import timedelta

import pytest

from complaint_projections.core.exceptions import CheckpointConflictError, LeaseLostError
from complaint_projections.projections import CheckpointStore, LeaseManager
from tests.conftest import BASE_TIME, CONSUMER


class FakeClock:
    def __init__(self) -> None:
        self.now = BASE_TIME

    def __call__(self):
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.mark.integration
class TestCheckpointStore:
    async def test_first_advance_creates_row(self, router, tenants, checkpoints):
        async with router.within("acme") as scope:
            checkpoint = await checkpoints.advance(scope, CONSUMER, "evt-1", 1)
            await scope.commit()

        stored = await checkpoints.get("acme", CONSUMER)
        assert stored == checkpoint
        assert stored.last_event_id == "evt-1"

    async def test_advance_is_monotonic(self, router, tenants, checkpoints):
        async with router.within("acme") as scope:
            await checkpoints.advance(scope, CONSUMER, "evt-5", 5)
            await scope.commit()

        for sequence in (5, 3):
            async with router.within("acme") as scope:
                with pytest.raises(CheckpointConflictError) as exc_info:
                    await checkpoints.advance(scope, CONSUMER, "evt-old", sequence)
            assert exc_info.value.stored_sequence == 5

        assert (await checkpoints.get("acme", CONSUMER)).last_sequence == 5

    async def test_zero_position_never_creates_row(self, router, tenants, checkpoints):
        async with router.within("acme") as scope:
            with pytest.raises(CheckpointConflictError):
                await checkpoints.advance(scope, CONSUMER, None, 0)

    async def test_uncommitted_advance_is_discarded(self, router, tenants, checkpoints):
        with pytest.raises(RuntimeError):
            async with router.within("acme") as scope:
                await checkpoints.advance(scope, CONSUMER, "evt-1", 1)
                raise RuntimeError("batch failed")

        assert await checkpoints.get("acme", CONSUMER) is None

    async def test_touch_refreshes_timestamp_only(self, router, tenants, clock):
        store = CheckpointStore(router, clock=clock)
        async with router.within("acme") as scope:
            assert await store.touch(scope, CONSUMER) is False
            await store.advance(scope, CONSUMER, "evt-1", 1)
            await scope.commit()

        clock.advance(30)
        async with router.within("acme") as scope:
            assert await store.touch(scope, CONSUMER) is True
            await scope.commit()

        stored = await store.get("acme", CONSUMER)
        assert stored.last_sequence == 1
        assert stored.updated_at == clock.now

    async def test_list_per_tenant(self, router, tenants, checkpoints):
        async with router.within("acme") as scope:
            await checkpoints.advance(scope, "a_consumer", "evt-1", 1)
            await checkpoints.advance(scope, "b_consumer", "evt-1", 1)
            await scope.commit()

        async with router.within("acme") as scope:
            assert [c.consumer for c in await checkpoints.list(scope)] == ["a_consumer", "b_consumer"]
        async with router.within("globex") as scope:
            assert await checkpoints.list(scope) == []


@pytest.mark.integration
class TestLeaseManager:
    @pytest.fixture
    def leases(self, stores, clock) -> LeaseManager:
        return LeaseManager(stores.write, ttl=30, clock=clock)

    async def test_claim_free_lease(self, leases):
        lease = await leases.claim("acme", CONSUMER, "worker-a")

        assert lease is not None
        assert lease.fencing_token == 1
        assert lease.expires_at == BASE_TIME + timedelta(seconds=30)

    async def test_live_lease_blocks_other_owner(self, leases):
        await leases.claim("acme", CONSUMER, "worker-a")

        assert await leases.claim("acme", CONSUMER, "worker-b") is None

    async def test_reclaim_by_owner_keeps_token(self, leases):
        await leases.claim("acme", CONSUMER, "worker-a")

        again = await leases.claim("acme", CONSUMER, "worker-a")

        assert again is not None
        assert again.fencing_token == 1

    async def test_expired_lease_is_taken_over(self, leases, clock):
        await leases.claim("acme", CONSUMER, "worker-a")
        clock.advance(31)

        lease = await leases.claim("acme", CONSUMER, "worker-b")

        assert lease.owner_id == "worker-b"
        assert lease.fencing_token == 2

    async def test_renew_after_takeover_fails(self, leases, clock):
        original = await leases.claim("acme", CONSUMER, "worker-a")
        clock.advance(31)
        await leases.claim("acme", CONSUMER, "worker-b")

        with pytest.raises(LeaseLostError):
            await leases.renew(original)

    async def test_renew_extends_expiry(self, leases, clock):
        lease = await leases.claim("acme", CONSUMER, "worker-a")
        clock.advance(20)

        renewed = await leases.renew(lease)

        assert renewed.expires_at == clock.now + timedelta(seconds=30)
        assert renewed.fencing_token == lease.fencing_token

    async def test_release_frees_partition(self, leases):
        lease = await leases.claim("acme", CONSUMER, "worker-a")
        await leases.release(lease)

        assert await leases.claim("acme", CONSUMER, "worker-b") is not None
        assert [held.owner_id for held in await leases.list(CONSUMER)] == ["worker-b"]
