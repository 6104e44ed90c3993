"""Integration tests for draining broker dead letters into quarantine."""

from __future__ import annotations

import pytest

from complaint_projections.infra.messaging import event_topic, partition_pattern
from complaint_projections.projections import (
    DeadLetterManager,
    DeadLetterReason,
    DeadLetterStatus,
    DeadLetterTopicDrain,
)
from tests.conftest import CONSUMER


@pytest.fixture
async def drain(broker, dead_letter_store) -> DeadLetterTopicDrain:
    drain = DeadLetterTopicDrain(
        broker,
        dead_letter_store,
        default_consumer=CONSUMER,
        fetch_timeout=0.05,
        idle_poll_interval=0,
    )
    # Declares the dead-letter queue
    assert await drain.drain_once() == 0
    return drain


@pytest.mark.integration
class TestDeadLetterTopicDrain:
    async def test_rejected_message_is_quarantined(self, drain, broker, events, publish, dead_letter_store):
        envelope = events.created("c-1")
        await publish(envelope)
        subscription = await broker.subscribe(partition_pattern("acme"), CONSUMER)
        [delivery] = await subscription.fetch(10, timeout=0.05)
        await subscription.nack(delivery, requeue=False)

        assert await drain.drain_once() == 1

        [entry], _ = await dead_letter_store.list()
        assert entry.reason == DeadLetterReason.MAX_REDELIVERIES_EXCEEDED
        assert entry.topic == event_topic("acme", "ComplaintCreated")
        assert entry.consumer == CONSUMER
        assert entry.tenant_id == "acme"
        assert entry.event_id == envelope.event_id
        assert "rejected" in entry.last_error

    async def test_delivery_limit_then_replay(self, drain, broker, events, publish, dead_letter_store):
        await publish(events.created("c-1"))
        subscription = await broker.subscribe(partition_pattern("acme"), CONSUMER)
        for _ in range(broker.max_redeliveries + 1):
            [delivery] = await subscription.fetch(10, timeout=0.05)
            await subscription.nack(delivery, requeue=True)

        assert await subscription.fetch(10, timeout=0.05) == []
        assert await drain.drain_once() == 1
        [entry], _ = await dead_letter_store.list()
        assert entry.failure_count == broker.max_redeliveries + 1

        await DeadLetterManager(dead_letter_store, broker).replay(entry.id)

        [redelivered] = await subscription.fetch(10, timeout=0.05)
        assert redelivered.body == entry.body
        assert (await dead_letter_store.get(entry.id)).status == DeadLetterStatus.REPLAYED

    async def test_malformed_dead_letter_keeps_topic_tenant(self, drain, broker, dead_letter_store):
        subscription = await broker.subscribe(partition_pattern("acme"), CONSUMER)
        await broker.publish_raw(event_topic("acme", "ComplaintCreated"), b"\x00garbage")
        [delivery] = await subscription.fetch(10, timeout=0.05)
        await subscription.nack(delivery, requeue=False)

        await drain.drain_once()

        [entry], _ = await dead_letter_store.list(tenant_id="acme")
        assert entry.event_id is None
        assert entry.dedup_key.startswith("sha256:")
