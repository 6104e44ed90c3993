"""RabbitMQ adapter over aio-pika.

Topology:

- One durable topic exchange (``RabbitSettings.exchange``) receives every
  domain event under its ``{prefix}.{tenant}.{event_type}`` routing key.
- One durable topic exchange (``RabbitSettings.dlq_exchange``) receives
  messages dead-lettered by the queues, under their original routing key.
- Each (consumer group, pattern) pair owns a durable quorum queue named
  ``{group}.{pattern}``. Quorum queues count deliveries and dead-letter a
  message once ``x-delivery-limit`` is exceeded, which gives the redelivery
  bound without any consumer-side bookkeeping.

Patterns beginning with ``dlq.`` bind to the dead-letter exchange with the
remainder of the pattern, and deliveries from those queues report their
topic as ``dlq.{routing key}`` so both brokers look the same to consumers.

Consumption uses ``basic.get`` polling so a partition worker controls
exactly how many messages it holds un-acked at a time.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

import aio_pika
from aio_pika.exceptions import AMQPException
from aiormq.exceptions import AMQPError

from complaint_projections.utils.retry import RetryError, retry

from .broker import BrokerUnavailableError, Delivery
from .conventions import (
    DLQ_TOPIC_PREFIX,
    HEADER_CONSUMER_GROUP,
    HEADER_DEATH_REASON,
    HEADER_DELIVERY_COUNT,
    HEADER_ORIGINAL_TOPIC,
    original_topic,
)

if TYPE_CHECKING:
    from collections.abc import Mapping

    from aio_pika.abc import (
        AbstractChannel,
        AbstractExchange,
        AbstractIncomingMessage,
        AbstractQueue,
        AbstractRobustConnection,
    )

    from complaint_projections.core.events.envelope import EventEnvelope
    from complaint_projections.core.settings.rabbit import RabbitSettings

logger = logging.getLogger(__name__)

_BROKER_ERRORS = (AMQPException, AMQPError, ConnectionError, OSError, asyncio.TimeoutError)


def _queue_name(group: str, pattern: str) -> str:
    return f"{group}.{pattern}"


class RabbitSubscription:
    """Pull handle on one quorum queue."""

    def __init__(
        self,
        queue: AbstractQueue,
        channel: AbstractChannel,
        *,
        group: str,
        pattern: str,
        poll_interval: float,
    ) -> None:
        self._queue = queue
        self._channel = channel
        self.group = group
        self.pattern = pattern
        self._poll_interval = poll_interval
        self._dead_letter_queue = pattern.split(".", 1)[0] == DLQ_TOPIC_PREFIX
        self._unsettled: dict[str, AbstractIncomingMessage] = {}

    async def fetch(self, max_messages: int, timeout: float) -> list[Delivery]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        deliveries: list[Delivery] = []
        try:
            while len(deliveries) < max_messages:
                message = await self._queue.get(no_ack=False, fail=False)
                if message is None:
                    # Return what we have once the queue is drained
                    if deliveries or loop.time() >= deadline:
                        break
                    await asyncio.sleep(min(self._poll_interval, max(deadline - loop.time(), 0)))
                    continue
                deliveries.append(self._to_delivery(message))
        except _BROKER_ERRORS as exc:
            msg = f"Fetch from queue {self._queue.name} failed"
            raise BrokerUnavailableError(msg, details={"queue": self._queue.name}) from exc
        return deliveries

    def _to_delivery(self, message: AbstractIncomingMessage) -> Delivery:
        tag = str(message.delivery_tag)
        self._unsettled[tag] = message
        headers = dict(message.headers or {})
        routing_key = message.routing_key or ""
        topic = f"{DLQ_TOPIC_PREFIX}.{routing_key}" if self._dead_letter_queue else routing_key

        # Quorum queues report prior deliveries in x-delivery-count
        prior = headers.get("x-delivery-count")
        if isinstance(prior, int):
            delivery_count = prior + 1
        else:
            delivery_count = 2 if message.redelivered else 1

        if self._dead_letter_queue:
            headers.setdefault(HEADER_ORIGINAL_TOPIC, routing_key)
            headers.setdefault(HEADER_DEATH_REASON, headers.get("x-first-death-reason", "delivery_limit"))
            queue_name = headers.get("x-first-death-queue")
            if isinstance(queue_name, str) and "." in queue_name:
                headers.setdefault(HEADER_CONSUMER_GROUP, queue_name.split(".", 1)[0])
            headers.setdefault(HEADER_DELIVERY_COUNT, prior if isinstance(prior, int) else None)

        return Delivery(
            body=message.body,
            topic=topic,
            delivery_tag=tag,
            delivery_count=delivery_count,
            message_id=message.message_id,
            headers=headers,
        )

    async def ack(self, delivery: Delivery) -> None:
        message = self._unsettled.pop(delivery.delivery_tag, None)
        if message is None:
            return
        try:
            await message.ack()
        except _BROKER_ERRORS as exc:
            raise BrokerUnavailableError("Ack failed") from exc

    async def nack(self, delivery: Delivery, *, requeue: bool = True) -> None:
        message = self._unsettled.pop(delivery.delivery_tag, None)
        if message is None:
            return
        try:
            await message.nack(requeue=requeue)
        except _BROKER_ERRORS as exc:
            raise BrokerUnavailableError("Nack failed") from exc

    async def extend(self, delivery: Delivery, seconds: float) -> None:
        # Un-acked messages stay with this channel until settled or closed;
        # only the broker's consumer_timeout bounds how long they are held
        if delivery.delivery_tag not in self._unsettled:
            logger.debug("Extended unknown delivery tag", extra={"delivery_tag": delivery.delivery_tag})

    async def close(self) -> None:
        self._unsettled.clear()
        if not self._channel.is_closed:
            # Closing the channel returns every unacked message to the queue
            await self._channel.close()

    def __repr__(self) -> str:
        return f"RabbitSubscription(queue={self._queue.name!r})"


class RabbitBroker:
    """Message broker backed by RabbitMQ.

    Args:
        settings: Connection and topology settings.

    Example:
        broker = RabbitBroker(get_rabbit_settings())
        await broker.connect()
        await broker.publish(event_topic("acme", "ComplaintCreated"), envelope)
        await broker.close()
    """

    def __init__(self, settings: RabbitSettings) -> None:
        self._settings = settings
        self._connection: AbstractRobustConnection | None = None
        self._channel: AbstractChannel | None = None
        self._exchange: AbstractExchange | None = None
        self._dlq_exchange: AbstractExchange | None = None

    @property
    def is_connected(self) -> bool:
        return self._connection is not None and not self._connection.is_closed

    async def connect(self) -> None:
        if self.is_connected:
            return

        connect_with_retry = retry(
            max_attempts=self._settings.connect_retry_attempts,
            initial_delay=self._settings.connect_retry_delay,
            max_delay=30.0,
            exceptions=_BROKER_ERRORS,
        )(self._open)
        try:
            await connect_with_retry()
        except RetryError as exc:
            msg = "Could not connect to RabbitMQ"
            raise BrokerUnavailableError(msg, details={"attempts": exc.attempts}) from exc
        logger.info(
            "RabbitMQ connected",
            extra={"exchange": self._settings.exchange, "dlq_exchange": self._settings.dlq_exchange},
        )

    async def _open(self) -> None:
        self._connection = await aio_pika.connect_robust(
            self._settings.url.get_secret_value(),
            client_properties={"connection_name": self._settings.connection_name},
            heartbeat=self._settings.heartbeat,
        )
        self._channel = await self._connection.channel(publisher_confirms=True)
        self._exchange, self._dlq_exchange = await self._declare_exchanges(self._channel)

    async def _declare_exchanges(self, channel: AbstractChannel) -> tuple[AbstractExchange, AbstractExchange]:
        exchange = await channel.declare_exchange(self._settings.exchange, aio_pika.ExchangeType.TOPIC, durable=True)
        dlq_exchange = await channel.declare_exchange(
            self._settings.dlq_exchange, aio_pika.ExchangeType.TOPIC, durable=True
        )
        return exchange, dlq_exchange

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
        self._connection = None
        self._channel = None
        self._exchange = None
        self._dlq_exchange = None
        logger.info("RabbitMQ connection closed")

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
        if self._exchange is None or self._dlq_exchange is None:
            msg = "RabbitMQ broker is not connected"
            raise BrokerUnavailableError(msg)

        exchange, routing_key = self._exchange, topic
        if topic.split(".", 1)[0] == DLQ_TOPIC_PREFIX:
            exchange, routing_key = self._dlq_exchange, original_topic(topic)

        message = aio_pika.Message(
            body=body,
            message_id=message_id,
            headers=dict(headers or {}),
            content_type="application/json",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
        )
        try:
            await exchange.publish(message, routing_key=routing_key)
        except _BROKER_ERRORS as exc:
            msg = f"Publish to {topic} failed"
            raise BrokerUnavailableError(msg, details={"topic": topic}) from exc

    async def subscribe(self, pattern: str, group: str) -> RabbitSubscription:
        if self._connection is None:
            msg = "RabbitMQ broker is not connected"
            raise BrokerUnavailableError(msg)

        try:
            # One channel per subscription keeps delivery tags independent
            channel = await self._connection.channel()
            exchange, dlq_exchange = await self._declare_exchanges(channel)

            arguments: dict[str, Any] = {"x-dead-letter-exchange": self._settings.dlq_exchange}
            if self._settings.quorum_queues:
                arguments["x-queue-type"] = "quorum"
                arguments["x-delivery-limit"] = self._settings.max_redeliveries

            source, binding = exchange, pattern
            if pattern.split(".", 1)[0] == DLQ_TOPIC_PREFIX:
                # Dead-letter queues never dead-letter again
                arguments = {"x-queue-type": "quorum"} if self._settings.quorum_queues else {}
                source, binding = dlq_exchange, pattern.split(".", 1)[1] if "." in pattern else "#"

            queue = await channel.declare_queue(_queue_name(group, pattern), durable=True, arguments=arguments)
            await queue.bind(source, routing_key=binding)
        except _BROKER_ERRORS as exc:
            msg = f"Subscribing {group} to {pattern} failed"
            raise BrokerUnavailableError(msg, details={"group": group, "pattern": pattern}) from exc

        logger.info("Queue bound", extra={"queue": queue.name, "binding": binding, "exchange": source.name})
        return RabbitSubscription(
            queue,
            channel,
            group=group,
            pattern=pattern,
            poll_interval=self._settings.fetch_poll_interval,
        )


__all__ = ["RabbitBroker", "RabbitSubscription"]
