"""Integration tests for the transactional outbox."""

from __future__ import annotations

from datetime import timedelta

import pytest

from complaint_projections.core.events.envelope import EventEnvelope
from complaint_projections.core.exceptions import TenantMismatchError
from complaint_projections.infra.database.session import StoreKind
from complaint_projections.infra.events.outbox import (
    OUTBOX_CONSUMER,
    DispatchState,
    OutboxDispatcher,
    OutboxRecord,
    record_event,
)
from complaint_projections.infra.messaging import event_topic
from complaint_projections.projections import LeaseManager
from tests.conftest import BASE_TIME


class FakeClock:
    def __init__(self) -> None:
        self.now = BASE_TIME

    def __call__(self):
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def dispatcher(router, broker, stores, clock) -> OutboxDispatcher:
    return OutboxDispatcher(
        router,
        broker,
        LeaseManager(stores.write, clock=clock),
        initial_backoff=1.0,
        max_backoff=60.0,
        owner_id="dispatcher-1",
        clock=clock,
    )


async def _record(router, *envelopes: EventEnvelope, tenant_id: str = "acme") -> None:
    async with router.within(tenant_id, StoreKind.WRITE) as scope:
        for envelope in envelopes:
            record_event(scope, envelope)
        await scope.commit()


@pytest.mark.integration
class TestRecordEvent:
    async def test_rolled_back_transaction_leaves_no_record(self, router, tenants, events, dispatcher):
        with pytest.raises(RuntimeError):
            async with router.within("acme", StoreKind.WRITE) as scope:
                record_event(scope, events.created("c-1"))
                raise RuntimeError("business write failed")

        assert (await dispatcher.counts("acme"))["pending"] == 0

    async def test_foreign_tenant_event_is_refused(self, router, tenants, events):
        async with router.within("acme", StoreKind.WRITE) as scope:
            with pytest.raises(TenantMismatchError):
                record_event(scope, events.created("c-1", tenant_id="globex"))


@pytest.mark.integration
class TestDispatch:
    async def test_publishes_in_creation_order(self, router, tenants, events, dispatcher, broker):
        created = events.created("c-1")
        changed = events.status_changed("c-1", "NEW", "IN_PROGRESS")
        await _record(router, created, changed)

        report = await dispatcher.dispatch_tenant("acme")

        assert (report.published, report.deferred, report.failed) == (2, 0, 0)
        topics = [delivery.topic for delivery in broker.published]
        assert topics == [
            event_topic("acme", "ComplaintCreated"),
            event_topic("acme", "ComplaintStatusChanged"),
        ]
        assert [EventEnvelope.from_wire(d.body).event_id for d in broker.published] == [
            created.event_id,
            changed.event_id,
        ]
        assert await dispatcher.counts("acme") == {"pending": 0, "dispatched": 2, "failed": 0}

    async def test_dispatched_records_are_not_republished(self, router, tenants, events, dispatcher, broker):
        await _record(router, events.created("c-1"))
        await dispatcher.dispatch_tenant("acme")

        report = await dispatcher.dispatch_tenant("acme")

        assert report.published == 0
        assert len(broker.published) == 1

    async def test_broker_outage_defers_with_backoff(self, router, tenants, events, dispatcher, broker, clock):
        await _record(router, events.created("c-1"), events.created("c-2"))
        broker.available = False

        report = await dispatcher.dispatch_tenant("acme")
        assert (report.published, report.deferred) == (0, 2)

        broker.available = True
        report = await dispatcher.dispatch_tenant("acme")
        # c-1 waits for its backoff; c-2 is independent
        assert (report.published, report.deferred) == (1, 1)

        clock.advance(seconds=2)
        report = await dispatcher.dispatch_tenant("acme")
        assert report.published == 1
        assert (await dispatcher.counts("acme"))["dispatched"] == 2

    async def test_later_events_wait_for_their_aggregate(self, router, tenants, events, dispatcher, broker, clock):
        await _record(router, events.created("c-1"))
        broker.available = False
        await dispatcher.dispatch_tenant("acme")
        broker.available = True
        await _record(router, events.status_changed("c-1", "NEW", "RESOLVED"))

        report = await dispatcher.dispatch_tenant("acme")

        assert (report.published, report.deferred) == (0, 2)

    async def test_unparsable_record_fails_without_blocking(self, router, tenants, events, dispatcher, broker):
        async with router.within("acme", StoreKind.WRITE) as scope:
            scope.session.add(
                OutboxRecord(
                    tenant_id="acme",
                    event_id="evt-broken",
                    event_type="ComplaintCreated",
                    aggregate_id="c-0",
                    sequence=1,
                    payload="not json",
                    dispatch_state=DispatchState.PENDING.value,
                    attempts=0,
                )
            )
            await scope.commit()
        await _record(router, events.created("c-1"))

        report = await dispatcher.dispatch_tenant("acme")

        assert (report.published, report.failed) == (1, 1)
        assert await dispatcher.reset_failed("acme") == 1
        assert (await dispatcher.counts("acme"))["pending"] == 1

    async def test_compact_removes_old_dispatched_records(self, router, tenants, events, dispatcher, clock):
        await _record(router, events.created("c-1"))
        await dispatcher.dispatch_tenant("acme")

        assert await dispatcher.compact("acme", retention_days=7) == 0
        clock.advance(days=8)
        assert await dispatcher.compact("acme", retention_days=7) == 1
        assert (await dispatcher.counts("acme"))["dispatched"] == 0

    async def test_dispatch_once_claims_tenant_leases(self, router, tenants, events, dispatcher, stores, clock):
        await _record(router, events.created("c-1"))
        await _record(router, events.created("c-9", tenant_id="globex"), tenant_id="globex")
        other = LeaseManager(stores.write, clock=clock)
        await other.claim("globex", OUTBOX_CONSUMER, "dispatcher-2")

        reports = await dispatcher.dispatch_once()

        assert [(r.tenant_id, r.published) for r in reports] == [("acme", 1)]
        assert (await dispatcher.counts("globex"))["pending"] == 1
