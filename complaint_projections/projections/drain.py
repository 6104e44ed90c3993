"""Broker dead-letter drain.

Messages the broker gave up on after ``max_redeliveries`` land on
``dlq.{original topic}``. The drain consumes ``dlq.#`` and records each of
them in the quarantine store with reason ``max_redeliveries_exceeded``, so
operators can inspect and replay them like any other dead letter.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING

from complaint_projections.core.events.envelope import EventEnvelope
from complaint_projections.core.exceptions import MalformedEnvelopeError
from complaint_projections.infra.messaging.conventions import (
    DLQ_PATTERN,
    HEADER_CONSUMER_GROUP,
    HEADER_DEATH_REASON,
    HEADER_DELIVERY_COUNT,
    HEADER_ORIGINAL_TOPIC,
    original_topic,
    tenant_from_topic,
)

from .dead_letters import DeadLetter, DeadLetterReason

if TYPE_CHECKING:
    from complaint_projections.infra.messaging.broker import Delivery, MessageBroker, Subscription

    from .dead_letters import DeadLetterStore

logger = logging.getLogger(__name__)

DRAIN_GROUP = "dead-letter-drain"


class DeadLetterTopicDrain:
    """Move broker dead letters into the quarantine store.

    Args:
        broker: Broker to consume ``dlq.#`` from.
        store: Quarantine store.
        default_consumer: Consumer recorded when the message carries no
            consumer-group header.
        batch_size: Deliveries per fetch.
        fetch_timeout: Seconds a fetch waits for the first message.
        idle_poll_interval: Pause after an empty fetch.
    """

    def __init__(
        self,
        broker: MessageBroker,
        store: DeadLetterStore,
        *,
        default_consumer: str,
        batch_size: int = 100,
        fetch_timeout: float = 1.0,
        idle_poll_interval: float = 1.0,
    ) -> None:
        self.default_consumer = default_consumer
        self.batch_size = batch_size
        self.fetch_timeout = fetch_timeout
        self.idle_poll_interval = idle_poll_interval
        self._broker = broker
        self._store = store
        self._subscription: Subscription | None = None
        self._stopping = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    def to_dead_letter(self, delivery: Delivery) -> DeadLetter:
        """Describe a broker dead letter as a quarantine entry."""
        headers = dict(delivery.headers)
        topic = str(headers.get(HEADER_ORIGINAL_TOPIC) or original_topic(delivery.topic))
        consumer = str(headers.get(HEADER_CONSUMER_GROUP) or self.default_consumer)
        failure_count = int(headers.get(HEADER_DELIVERY_COUNT) or delivery.delivery_count)
        death_reason = headers.get(HEADER_DEATH_REASON) or "delivery_limit"

        tenant_id = tenant_from_topic(topic)
        event_id = event_type = aggregate_id = None
        try:
            envelope = EventEnvelope.from_wire(delivery.body)
        except MalformedEnvelopeError as exc:
            tenant_id = exc.tenant_id or tenant_id
            event_id = exc.event_id
        else:
            tenant_id = envelope.tenant_id
            event_id = envelope.event_id
            event_type = envelope.event_type.value
            aggregate_id = envelope.aggregate_id

        return DeadLetter(
            consumer=consumer,
            topic=topic,
            body=delivery.body,
            reason=DeadLetterReason.MAX_REDELIVERIES_EXCEEDED,
            error=f"Broker dead-lettered the message after {failure_count} deliveries ({death_reason})",
            failure_count=failure_count,
            tenant_id=tenant_id,
            event_id=event_id,
            event_type=event_type,
            aggregate_id=aggregate_id,
            headers=headers,
        )

    async def drain_once(self) -> int:
        """Quarantine one batch of broker dead letters.

        The batch is acknowledged only after the quarantine store committed.

        Returns:
            Number of messages quarantined.
        """
        if self._subscription is None:
            self._subscription = await self._broker.subscribe(DLQ_PATTERN, DRAIN_GROUP)
        deliveries = await self._subscription.fetch(self.batch_size, self.fetch_timeout)
        if not deliveries:
            return 0

        try:
            await self._store.quarantine_many([self.to_dead_letter(d) for d in deliveries])
        except Exception:
            for delivery in deliveries:
                await self._subscription.nack(delivery, requeue=True)
            raise
        for delivery in deliveries:
            await self._subscription.ack(delivery)
        return len(deliveries)

    async def start(self) -> None:
        if self._task is not None:
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self.run(), name="dead-letter-drain")
        logger.info("Dead-letter drain started", extra={"pattern": DLQ_PATTERN})

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stopping.set()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        if self._subscription is not None:
            await self._subscription.close()
            self._subscription = None
        logger.info("Dead-letter drain stopped")

    async def run(self) -> None:
        while not self._stopping.is_set():
            try:
                drained = await self.drain_once()
            except Exception:
                logger.exception("Error draining broker dead letters")
                drained = 0
            if not drained:
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(self._stopping.wait(), timeout=self.idle_poll_interval)


__all__ = ["DRAIN_GROUP", "DeadLetterTopicDrain"]
