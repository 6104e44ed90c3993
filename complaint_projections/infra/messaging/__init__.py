"""Broker abstraction, topic conventions and broker implementations."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .broker import BrokerUnavailableError, Delivery, MessageBroker, Subscription
from .conventions import (
    DEFAULT_TOPIC_PREFIX,
    DLQ_PATTERN,
    dead_letter_topic,
    event_topic,
    original_topic,
    partition_pattern,
    tenant_from_topic,
    topic_matches,
)
from .memory import InMemoryBroker

if TYPE_CHECKING:
    from complaint_projections.core.settings.rabbit import RabbitSettings

logger = logging.getLogger(__name__)


def create_broker(settings: RabbitSettings) -> MessageBroker:
    """Build the broker selected by ``RABBIT_ENABLED``."""
    if settings.enabled:
        from .rabbit import RabbitBroker

        return RabbitBroker(settings)

    logger.warning("RabbitMQ disabled, using the in-process broker")
    return InMemoryBroker(
        max_redeliveries=settings.max_redeliveries,
        visibility_timeout=settings.visibility_timeout,
    )


__all__ = [
    "DEFAULT_TOPIC_PREFIX",
    "DLQ_PATTERN",
    "BrokerUnavailableError",
    "Delivery",
    "InMemoryBroker",
    "MessageBroker",
    "Subscription",
    "create_broker",
    "dead_letter_topic",
    "event_topic",
    "original_topic",
    "partition_pattern",
    "tenant_from_topic",
    "topic_matches",
]
