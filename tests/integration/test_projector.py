"""Integration tests for the partition projector.

Each test publishes envelopes to the in-memory broker and drives the
projector one batch at a time with ``run_once``.
"""

from __future__ import annotations

import asyncio
from datetime import date, timedelta

import pytest

from complaint_projections.core.exceptions import NamespaceUnavailableError
from complaint_projections.infra.messaging import DLQ_PATTERN, BrokerUnavailableError, event_topic, partition_pattern
from complaint_projections.infra.messaging.memory import InMemorySubscription
from complaint_projections.projections import (
    DeadLetterManager,
    DeadLetterReason,
    DeadLetterStatus,
    LeaseManager,
    PartitionState,
    ViewWriter,
)
from complaint_projections.projections import projector as projector_module
from complaint_projections.projections.projector import PartitionStopped
from tests.conftest import BASE_TIME, CONSUMER, eventually

DAY = BASE_TIME.date()


class FlakyViewWriter(ViewWriter):
    """View writer whose first ``failures`` applies hit an unreachable store."""

    def __init__(self, consumer: str, failures: int) -> None:
        super().__init__(consumer)
        self.failures = failures
        self.calls = 0

    async def apply(self, scope, envelope, projection):
        self.calls += 1
        if self.calls <= self.failures:
            raise NamespaceUnavailableError("read store unreachable", tenant_id=scope.tenant_id)
        await super().apply(scope, envelope, projection)


async def _stats(queries, tenant_id="acme"):
    return await queries.daily_stats(tenant_id)


def _nonzero(counts: dict[str, int]) -> dict[str, int]:
    return {status: count for status, count in counts.items() if count}


async def _view_state(queries, tenant_id):
    rows = [
        (
            s.day,
            s.category,
            s.priority,
            s.total_complaints,
            s.open_complaints,
            s.resolved_complaints,
            s.assigned_complaints,
            s.average_resolution_seconds,
        )
        for s in await queries.daily_stats(tenant_id)
    ]
    return rows, _nonzero(await queries.status_counts(tenant_id))


@pytest.mark.integration
class TestApply:
    async def test_batch_updates_views_and_checkpoint(
        self, tenants, make_projector, events, publish, queries, checkpoints
    ):
        first = events.created("c-1")
        await publish(first, events.created("c-2", category="delivery", priority="LOW"))

        result = await make_projector().run_once()

        assert result.applied == 2
        assert result.position == 2
        stats = await _stats(queries)
        assert [(s.category, s.priority, s.total_complaints, s.open_complaints) for s in stats] == [
            ("billing", "HIGH", 1, 1),
            ("delivery", "LOW", 1, 1),
        ]
        assert await queries.status_counts("acme") == {"NEW": 2}
        checkpoint = await checkpoints.get("acme", CONSUMER)
        assert checkpoint.last_sequence == 2

    async def test_empty_fetch_keeps_position(self, tenants, make_projector, checkpoints):
        assert await make_projector().run_once() is None
        assert await checkpoints.get("acme", CONSUMER) is None

    async def test_redelivered_event_is_a_duplicate(self, tenants, make_projector, events, publish, queries):
        created = events.created("c-1")
        projector = make_projector()
        await publish(created)
        await projector.run_once()

        await publish(created)
        result = await projector.run_once()

        assert result.applied == 0
        assert result.duplicates == 1
        assert result.position == 2
        assert (await _stats(queries))[0].total_complaints == 1

    async def test_event_behind_watermark_is_quarantined_as_out_of_order(
        self, tenants, make_projector, events, publish, queries, dead_letter_store
    ):
        late = events.status_changed("c-1", "NEW", "ASSIGNED", sequence=2)
        await publish(
            events.created("c-1"),
            events.status_changed("c-1", "NEW", "IN_PROGRESS", sequence=3),
            late,
        )

        result = await make_projector().run_once()

        assert (result.applied, result.dead_lettered, result.position) == (2, 1, 3)
        counts = await queries.status_counts("acme")
        assert counts["IN_PROGRESS"] == 1
        assert counts.get("NEW", 0) == 0
        assert counts.get("ASSIGNED", 0) == 0
        [entry], _ = await dead_letter_store.list(tenant_id="acme")
        assert entry.reason == DeadLetterReason.OUT_OF_ORDER
        assert entry.event_id == late.event_id
        assert entry.aggregate_id == "c-1"

    async def test_resolution_statistics(self, tenants, make_projector, events, publish, queries):
        await publish(
            events.created("c-1"),
            events.status_changed("c-1", "NEW", "ASSIGNED", sequence=2),
            events.status_changed("c-1", "ASSIGNED", "RESOLVED", sequence=3),
            events.created("c-2"),
        )

        await make_projector().run_once()

        [row] = await _stats(queries)
        assert row.total_complaints == 2
        assert row.open_complaints == 1
        assert row.resolved_complaints == 1
        assert row.assigned_complaints == 1
        assert row.open_complaints + row.resolved_complaints == row.total_complaints
        # Resolved three hours after opening
        assert row.average_resolution_seconds == pytest.approx(3 * 3600)

    async def test_stats_bucketed_by_day_opened(self, tenants, make_projector, events, publish, queries):
        await publish(
            events.created("c-1"),
            events.created("c-2", occurred_at=BASE_TIME + timedelta(days=1)),
        )
        await make_projector().run_once()

        days = [s.day for s in await _stats(queries)]
        assert days == [DAY, DAY + timedelta(days=1)]
        filtered = await queries.daily_stats("acme", start=date(2024, 3, 2), end=date(2024, 3, 2))
        assert [s.day for s in filtered] == [date(2024, 3, 2)]


@pytest.mark.integration
class TestOrdering:
    async def test_redelivery_leaves_the_same_views_as_one_delivery(
        self, tenants, make_projector, events, publish, queries
    ):
        for tenant_id, redelivered in (("acme", False), ("globex", True)):
            created = events.created("c-1", tenant_id=tenant_id)
            resolved = events.status_changed("c-1", "NEW", "RESOLVED", tenant_id=tenant_id)
            await publish(*([created, created, resolved] if redelivered else [created, resolved]))
            await make_projector(tenant_id).run_once()

        once = await _view_state(queries, "acme")
        twice = await _view_state(queries, "globex")

        assert once == twice
        assert once[1] == {"RESOLVED": 1}

    @pytest.mark.parametrize("same_batch", [True, False])
    async def test_created_redelivered_after_status_change(
        self, tenants, make_projector, events, publish, queries, dead_letter_store, same_batch
    ):
        created = events.created("c-1")
        projector = make_projector()
        await publish(created, events.status_changed("c-1", "NEW", "ASSIGNED"))
        if not same_batch:
            await projector.run_once()
        await publish(created)

        result = await projector.run_once()

        assert result.duplicates == 1
        assert result.dead_lettered == 0
        [row] = await _stats(queries)
        assert (row.total_complaints, row.open_complaints, row.assigned_complaints) == (1, 1, 1)
        assert _nonzero(await queries.status_counts("acme")) == {"ASSIGNED": 1}
        _, quarantined = await dead_letter_store.list()
        assert quarantined == 0


@pytest.mark.integration
class TestPoisonMessages:
    async def test_malformed_body_is_quarantined_without_blocking_batch(
        self, tenants, make_projector, events, publish, broker, queries, dead_letter_store
    ):
        await publish(*(events.created(f"c-{i}") for i in range(5)))
        await broker.publish_raw(event_topic("acme", "ComplaintCreated"), b"not json")
        await publish(*(events.created(f"c-{i}") for i in range(5, 9)))

        result = await make_projector().run_once()

        assert (result.applied, result.dead_lettered, result.position) == (9, 1, 10)
        assert sum(s.total_complaints for s in await _stats(queries)) == 9
        entries, total = await dead_letter_store.list(tenant_id="acme")
        assert total == 1
        assert entries[0].reason == DeadLetterReason.POISON
        assert entries[0].body == b"not json"
        assert entries[0].dedup_key.startswith("sha256:")

    async def test_follow_up_before_creation_can_be_replayed(
        self, tenants, make_projector, events, publish, broker, queries, dead_letter_store
    ):
        projector = make_projector()
        await publish(events.status_changed("c-1", "NEW", "RESOLVED", sequence=2))
        result = await projector.run_once()
        assert result.dead_lettered == 1

        [entry], _ = await dead_letter_store.list(tenant_id="acme")
        assert entry.reason == DeadLetterReason.POISON
        assert entry.aggregate_id == "c-1"

        await publish(events.created("c-1"))
        await projector.run_once()
        await DeadLetterManager(dead_letter_store, broker).replay(entry.id, operator="ops")
        result = await projector.run_once()

        assert result.applied == 1
        [row] = await _stats(queries)
        assert (row.open_complaints, row.resolved_complaints) == (0, 1)
        assert row.average_resolution_seconds == pytest.approx(2 * 3600)
        assert (await dead_letter_store.get(entry.id)).status == DeadLetterStatus.REPLAYED

    async def test_foreign_tenant_envelope_is_isolation_violation(
        self, tenants, make_projector, events, publish, queries, dead_letter_store
    ):
        await publish(events.created("c-1", tenant_id="globex"), tenant_id="acme")
        await publish(events.created("c-2"))

        result = await make_projector().run_once()

        assert (result.applied, result.dead_lettered) == (1, 1)
        [entry], _ = await dead_letter_store.list()
        assert entry.reason == DeadLetterReason.ISOLATION_VIOLATION
        assert await _stats(queries, "globex") == []

    async def test_retries_exhausted(self, tenants, make_projector, events, publish, dead_letter_store, monkeypatch):
        compute = projector_module.compute_projection
        attempts = []

        def failing_compute(envelope, state):
            if envelope.aggregate_id == "c-bad":
                attempts.append(envelope.event_id)
                raise RuntimeError("projection bug")
            return compute(envelope, state)

        monkeypatch.setattr(projector_module, "compute_projection", failing_compute)
        await publish(events.created("c-bad"), events.created("c-ok"))

        result = await make_projector().run_once()

        assert (result.applied, result.dead_lettered) == (1, 1)
        assert len(attempts) == 3
        [entry], _ = await dead_letter_store.list()
        assert entry.reason == DeadLetterReason.RETRIES_EXHAUSTED
        assert entry.failure_count == 3
        assert "projection bug" in entry.last_error


@pytest.mark.integration
class TestFailureHandling:
    async def test_transient_failure_pauses_then_recovers(
        self, tenants, make_projector, events, publish, queries, checkpoints
    ):
        projector = make_projector(views=FlakyViewWriter(CONSUMER, failures=3))
        await publish(events.created("c-1"))

        assert await projector.run_once() is None
        assert projector.health.pauses == 1
        assert await checkpoints.get("acme", CONSUMER) is None

        result = await projector.run_once()

        assert result.applied == 1
        assert projector.state is PartitionState.IDLE
        assert (await _stats(queries))[0].total_complaints == 1

    async def test_batch_retry_recovers_without_pause(self, tenants, make_projector, events, publish):
        projector = make_projector(views=FlakyViewWriter(CONSUMER, failures=1))
        await publish(events.created("c-1"))

        result = await projector.run_once()

        assert result.applied == 1
        assert projector.health.pauses == 0

    async def test_outage_longer_than_redelivery_limit_loses_nothing(
        self, tenants, make_projector, events, publish, broker, queries, dead_letter_store
    ):
        # Nine failed applies are three paused cycles, one more than the broker's redelivery limit
        projector = make_projector(views=FlakyViewWriter(CONSUMER, failures=9))
        await publish(events.created("c-1"), events.created("c-2"))

        for _ in range(3):
            assert await projector.run_once() is None
        assert projector.health.pauses == 3
        assert projector.state is PartitionState.PAUSED

        result = await projector.run_once()

        assert (result.applied, result.dead_lettered) == (2, 0)
        assert broker.published_to(DLQ_PATTERN) == []
        assert broker.pending_count(partition_pattern("acme"), CONSUMER) == 0
        assert sum(s.total_complaints for s in await _stats(queries)) == 2
        _, quarantined = await dead_letter_store.list()
        assert quarantined == 0

    async def test_stop_while_paused_returns_batch_to_queue(self, tenants, make_projector, events, publish, broker):
        projector = make_projector(views=FlakyViewWriter(CONSUMER, failures=3))
        await publish(events.created("c-1"))
        assert await projector.run_once() is None

        await projector.close()

        assert broker.pending_count(partition_pattern("acme"), CONSUMER) == 1
        result = await make_projector().run_once()
        assert result.applied == 1
        assert broker.published_to(DLQ_PATTERN) == []

    async def test_unreachable_broker_backs_off_and_resubscribes(
        self, tenants, make_projector, events, publish, broker
    ):
        await publish(events.created("c-1"))
        delays = []

        async def record_sleep(seconds: float) -> None:
            delays.append(seconds)

        projector = make_projector(sleep=record_sleep)
        broker.available = False

        assert await projector.run_once() is None
        assert await projector.run_once() is None
        assert len(delays) == 2
        assert projector.state is PartitionState.IDLE
        assert projector.health.last_error.startswith("BrokerUnavailableError")

        broker.available = True
        result = await projector.run_once()

        assert result.applied == 1
        assert projector.health.last_error is None

    async def test_run_survives_broker_outage(self, tenants, make_projector, events, publish, broker, queries):
        broker.available = False
        projector = make_projector()
        task = asyncio.create_task(projector.run())

        async def failing() -> bool:
            return projector.health.last_error is not None

        async def projected() -> bool:
            return bool(await _stats(queries))

        try:
            await eventually(failing)
            broker.available = True
            await publish(events.created("c-1"))
            await eventually(projected)
        finally:
            projector.request_stop()
            await task

        assert projector.health.stop_reason == "shutdown"

    async def test_failed_ack_after_commit_is_deduplicated(
        self, tenants, make_projector, events, publish, queries, monkeypatch
    ):
        await publish(events.created("c-1"))
        projector = make_projector()

        async def failing_ack(self, delivery):
            raise BrokerUnavailableError("channel closed")

        with monkeypatch.context() as patch:
            patch.setattr(InMemorySubscription, "ack", failing_ack)
            result = await projector.run_once()

        assert result.applied == 1
        assert projector.health.last_error.startswith("BrokerUnavailableError")

        result = await projector.run_once()

        assert (result.applied, result.duplicates) == (0, 1)
        assert (await _stats(queries))[0].total_complaints == 1

    async def test_deactivated_tenant_stops_partition(self, tenants, router, make_projector, events, publish):
        projector = make_projector()
        await publish(events.created("c-1"))
        await router.deactivate("acme")

        await projector.run()

        assert projector.state is PartitionState.STOPPED
        assert projector.health.stop_reason == "isolation_violation"

    async def test_lost_lease_stops_partition(self, stores, tenants, make_projector):
        now = [BASE_TIME]
        leases = LeaseManager(stores.write, ttl=30, clock=lambda: now[0])
        lease = await leases.claim("acme", CONSUMER, "worker-a")
        now[0] += timedelta(seconds=31)
        await leases.claim("acme", CONSUMER, "worker-b")

        projector = make_projector(leases=leases, lease=lease, lease_renew_interval=0)

        with pytest.raises(PartitionStopped) as exc_info:
            await projector.run_once()
        assert exc_info.value.reason == "lease_lost"

    async def test_request_stop_ends_run(self, tenants, make_projector):
        projector = make_projector()
        projector.request_stop()

        await projector.run()

        assert projector.health.stop_reason == "shutdown"
