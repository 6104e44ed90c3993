"""Broker contract.

The engine needs four guarantees from its broker: durable storage of
accepted messages until every subscribed group acknowledges them, wildcard
topic routing, redelivery of unacknowledged messages after a visibility
timeout, and dead-letter routing beyond a maximum redelivery count.
Ordering is only promised within one subscription (one tenant partition).

Consumers pull: ``subscribe`` returns a ``Subscription`` whose ``fetch``
returns a batch of ``Delivery`` objects that must each be acked or nacked.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from complaint_projections.core.exceptions import TransientInfrastructureError

if TYPE_CHECKING:
    from collections.abc import Mapping

    from complaint_projections.core.events.envelope import EventEnvelope


class BrokerUnavailableError(TransientInfrastructureError):
    """The broker refused or could not accept an operation."""


@dataclass(frozen=True, slots=True)
class Delivery:
    """One delivery of a message to a consumer group.

    Attributes:
        body: Raw message body.
        topic: Routing key the message was published with.
        delivery_tag: Opaque handle used to ack or nack this delivery.
        delivery_count: 1 on first delivery, incremented on every redelivery.
        message_id: Producer-assigned id (the event id for domain events).
        headers: Broker headers.
    """

    body: bytes
    topic: str
    delivery_tag: str
    delivery_count: int = 1
    message_id: str | None = None
    headers: Mapping[str, Any] = field(default_factory=dict)

    @property
    def redelivered(self) -> bool:
        return self.delivery_count > 1


@runtime_checkable
class Subscription(Protocol):
    """A consumer group's pull handle on one topic pattern."""

    pattern: str
    group: str

    async def fetch(self, max_messages: int, timeout: float) -> list[Delivery]:
        """Return up to ``max_messages`` deliveries in order.

        Waits at most ``timeout`` seconds for the first message and returns
        an empty list if none arrives.
        """
        ...

    async def ack(self, delivery: Delivery) -> None:
        """Acknowledge; the message is never delivered to this group again."""
        ...

    async def nack(self, delivery: Delivery, *, requeue: bool = True) -> None:
        """Reject; requeue for redelivery in original order, or dead-letter it."""
        ...

    async def extend(self, delivery: Delivery, seconds: float) -> None:
        """Keep ``delivery`` unsettled for ``seconds`` more without counting a redelivery."""
        ...

    async def close(self) -> None:
        """Release the subscription; unacknowledged deliveries are requeued."""
        ...


@runtime_checkable
class MessageBroker(Protocol):
    """Publish/subscribe substrate."""

    @property
    def is_connected(self) -> bool: ...

    async def connect(self) -> None: ...

    async def close(self) -> None: ...

    async def publish(self, topic: str, envelope: EventEnvelope) -> None:
        """Publish a domain event envelope to ``topic``."""
        ...

    async def publish_raw(
        self,
        topic: str,
        body: bytes,
        *,
        message_id: str | None = None,
        headers: Mapping[str, Any] | None = None,
    ) -> None:
        """Publish an already-serialized body (dead-letter replay)."""
        ...

    async def subscribe(self, pattern: str, group: str) -> Subscription:
        """Attach ``group`` to every topic matching ``pattern``."""
        ...


__all__ = ["BrokerUnavailableError", "Delivery", "MessageBroker", "Subscription"]
