"""In-process broker used by tests and single-node development.

Behaves like a topic exchange feeding durable queues: each (group, pattern)
pair owns one queue that keeps receiving matching messages whether or not a
consumer is attached. Unacknowledged deliveries come back after the
visibility timeout; a message returned more than ``max_redeliveries`` times
is re-published to its dead-letter topic instead of being requeued. A
consumer can hold a delivery past the timeout with ``extend``, and closing a
subscription requeues what it still holds without counting a return.

Requeued messages keep their original position, so a nacked batch is
redelivered in the order it was first published.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .broker import BrokerUnavailableError, Delivery
from .conventions import (
    DLQ_TOPIC_PREFIX,
    HEADER_CONSUMER_GROUP,
    HEADER_DEATH_REASON,
    HEADER_DELIVERY_COUNT,
    HEADER_ORIGINAL_TOPIC,
    dead_letter_topic,
    topic_matches,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from complaint_projections.core.events.envelope import EventEnvelope

logger = logging.getLogger(__name__)


@dataclass(order=True, slots=True)
class _Message:
    position: int
    topic: str = field(compare=False)
    body: bytes = field(compare=False)
    message_id: str | None = field(compare=False, default=None)
    headers: dict[str, Any] = field(compare=False, default_factory=dict)
    delivery_count: int = field(compare=False, default=0)


@dataclass(slots=True)
class _Queue:
    group: str
    pattern: str
    ready: list[_Message] = field(default_factory=list)
    in_flight: dict[str, tuple[_Message, float]] = field(default_factory=dict)

    @property
    def is_dead_letter_queue(self) -> bool:
        return self.pattern.split(".", 1)[0] == DLQ_TOPIC_PREFIX


class InMemorySubscription:
    """Pull handle on one in-memory queue."""

    def __init__(self, broker: InMemoryBroker, queue: _Queue) -> None:
        self._broker = broker
        self._queue = queue
        self.pattern = queue.pattern
        self.group = queue.group
        self._closed = False

    async def fetch(self, max_messages: int, timeout: float) -> list[Delivery]:
        if self._closed:
            msg = f"Subscription {self.group}/{self.pattern} is closed"
            raise BrokerUnavailableError(msg)
        if not self._broker.available:
            msg = f"Broker unavailable, cannot fetch from {self.pattern}"
            raise BrokerUnavailableError(msg)
        return await self._broker._fetch(self._queue, max_messages, timeout)

    async def ack(self, delivery: Delivery) -> None:
        await self._broker._settle(self._queue, delivery, ack=True)

    async def nack(self, delivery: Delivery, *, requeue: bool = True) -> None:
        await self._broker._settle(self._queue, delivery, ack=False, requeue=requeue)

    async def extend(self, delivery: Delivery, seconds: float) -> None:
        await self._broker._extend(self._queue, delivery, seconds)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._broker._release(self._queue)

    def __repr__(self) -> str:
        return f"InMemorySubscription(group={self.group!r}, pattern={self.pattern!r})"


class InMemoryBroker:
    """Broker held entirely in process memory.

    Args:
        max_redeliveries: Returns allowed before a message is dead-lettered.
        visibility_timeout: Seconds an unacknowledged delivery stays invisible.
        clock: Monotonic clock, injectable for tests.

    Example:
        broker = InMemoryBroker(max_redeliveries=2)
        sub = await broker.subscribe("complaints.acme.*", "stats")
        await broker.publish("complaints.acme.ComplaintCreated", envelope)
        [delivery] = await sub.fetch(10, timeout=0.1)
        await sub.ack(delivery)
    """

    def __init__(
        self,
        *,
        max_redeliveries: int = 5,
        visibility_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_redeliveries = max_redeliveries
        self.visibility_timeout = visibility_timeout
        self._clock = clock
        self._queues: dict[tuple[str, str], _Queue] = {}
        self._positions = itertools.count(1)
        self._tags = itertools.count(1)
        self._condition = asyncio.Condition()
        self.available = True
        self.published: list[Delivery] = []

    @property
    def is_connected(self) -> bool:
        return self.available

    async def connect(self) -> None:
        logger.debug("In-memory broker ready")

    async def close(self) -> None:
        async with self._condition:
            for queue in self._queues.values():
                self._requeue_all(queue)
            self._condition.notify_all()

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    async def publish(self, topic: str, envelope: EventEnvelope) -> None:
        await self.publish_raw(topic, envelope.to_wire(), message_id=envelope.event_id)

    async def publish_raw(
        self,
        topic: str,
        body: bytes,
        *,
        message_id: str | None = None,
        headers: Mapping[str, Any] | None = None,
    ) -> None:
        if not self.available:
            msg = f"Broker unavailable, cannot publish to {topic}"
            raise BrokerUnavailableError(msg)
        async with self._condition:
            self._route(topic, body, message_id, dict(headers or {}))
            self._condition.notify_all()

    def _route(self, topic: str, body: bytes, message_id: str | None, headers: dict[str, Any]) -> int:
        self.published.append(Delivery(body=body, topic=topic, delivery_tag="", message_id=message_id, headers=headers))
        is_dead_letter = topic.split(".", 1)[0] == DLQ_TOPIC_PREFIX
        routed = 0
        for queue in self._queues.values():
            if queue.is_dead_letter_queue is not is_dead_letter:
                continue
            if topic_matches(queue.pattern, topic):
                position = next(self._positions)
                heapq.heappush(queue.ready, _Message(position, topic, body, message_id, dict(headers)))
                routed += 1
        if routed == 0:
            logger.debug("Message routed to no queue", extra={"topic": topic})
        return routed

    # ------------------------------------------------------------------
    # Consuming
    # ------------------------------------------------------------------

    async def subscribe(self, pattern: str, group: str) -> InMemorySubscription:
        async with self._condition:
            queue = self._queues.get((group, pattern))
            if queue is None:
                queue = _Queue(group=group, pattern=pattern)
                self._queues[(group, pattern)] = queue
                logger.debug("Queue declared", extra={"group": group, "pattern": pattern})
        return InMemorySubscription(self, queue)

    async def _fetch(self, queue: _Queue, max_messages: int, timeout: float) -> list[Delivery]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        async with self._condition:
            while True:
                self._reclaim_expired(queue)
                if queue.ready:
                    break
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return []
                next_expiry = self._next_expiry(queue)
                if next_expiry is not None:
                    remaining = min(remaining, max(next_expiry, 0.001))
                try:
                    await asyncio.wait_for(self._condition.wait(), remaining)
                except TimeoutError:
                    pass

            deliveries = []
            now = self._clock()
            while queue.ready and len(deliveries) < max_messages:
                message = heapq.heappop(queue.ready)
                message.delivery_count += 1
                tag = str(next(self._tags))
                queue.in_flight[tag] = (message, now + self.visibility_timeout)
                deliveries.append(
                    Delivery(
                        body=message.body,
                        topic=message.topic,
                        delivery_tag=tag,
                        delivery_count=message.delivery_count,
                        message_id=message.message_id,
                        headers=dict(message.headers),
                    )
                )
            return deliveries

    async def _settle(self, queue: _Queue, delivery: Delivery, *, ack: bool, requeue: bool = True) -> None:
        async with self._condition:
            entry = queue.in_flight.pop(delivery.delivery_tag, None)
            if entry is None:
                # Visibility expired and the message was already returned
                logger.debug(
                    "Settled unknown delivery tag",
                    extra={"group": queue.group, "delivery_tag": delivery.delivery_tag},
                )
                return
            message, _ = entry
            if ack:
                return
            if requeue:
                self._return(queue, message)
            else:
                self._dead_letter(queue, message, reason="rejected")
            self._condition.notify_all()

    async def _extend(self, queue: _Queue, delivery: Delivery, seconds: float) -> None:
        async with self._condition:
            entry = queue.in_flight.get(delivery.delivery_tag)
            if entry is None:
                logger.debug(
                    "Extended unknown delivery tag",
                    extra={"group": queue.group, "delivery_tag": delivery.delivery_tag},
                )
                return
            message, deadline = entry
            queue.in_flight[delivery.delivery_tag] = (
                message,
                max(deadline, self._clock() + seconds + self.visibility_timeout),
            )

    async def _release(self, queue: _Queue) -> None:
        async with self._condition:
            self._requeue_all(queue)
            self._condition.notify_all()

    def _requeue_all(self, queue: _Queue) -> None:
        for message, _ in queue.in_flight.values():
            heapq.heappush(queue.ready, message)
        queue.in_flight.clear()

    def _return(self, queue: _Queue, message: _Message) -> None:
        if message.delivery_count > self.max_redeliveries:
            self._dead_letter(queue, message, reason="delivery_limit")
        else:
            heapq.heappush(queue.ready, message)

    def _dead_letter(self, queue: _Queue, message: _Message, *, reason: str) -> None:
        if queue.is_dead_letter_queue:
            logger.warning(
                "Dropping message rejected from a dead-letter queue",
                extra={"topic": message.topic, "group": queue.group, "reason": reason},
            )
            return
        headers = {
            **message.headers,
            HEADER_ORIGINAL_TOPIC: message.topic,
            HEADER_CONSUMER_GROUP: queue.group,
            HEADER_DELIVERY_COUNT: message.delivery_count,
            HEADER_DEATH_REASON: reason,
        }
        logger.warning(
            "Message dead-lettered by broker",
            extra={
                "topic": message.topic,
                "group": queue.group,
                "message_id": message.message_id,
                "delivery_count": message.delivery_count,
                "reason": reason,
            },
        )
        self._route(dead_letter_topic(message.topic), message.body, message.message_id, headers)

    def _reclaim_expired(self, queue: _Queue) -> None:
        now = self._clock()
        expired = [tag for tag, (_, deadline) in queue.in_flight.items() if deadline <= now]
        for tag in expired:
            message, _ = queue.in_flight.pop(tag)
            self._return(queue, message)

    def _next_expiry(self, queue: _Queue) -> float | None:
        if not queue.in_flight:
            return None
        return min(deadline for _, deadline in queue.in_flight.values()) - self._clock()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def pending_count(self, pattern: str, group: str) -> int:
        """Messages waiting in, or in flight from, one queue."""
        queue = self._queues.get((group, pattern))
        if queue is None:
            return 0
        return len(queue.ready) + len(queue.in_flight)

    def published_to(self, pattern: str) -> list[Delivery]:
        """Every message ever published to a topic matching ``pattern``."""
        return [delivery for delivery in self.published if topic_matches(pattern, delivery.topic)]


__all__ = ["InMemoryBroker", "InMemorySubscription"]
