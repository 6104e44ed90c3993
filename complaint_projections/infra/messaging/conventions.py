"""Topic naming and wildcard matching for domain events.

Topics are dot-separated words:

    {prefix}.{tenant_id}.{event_type}      e.g. complaints.acme.ComplaintCreated

A tenant partition subscribes to ``{prefix}.{tenant_id}.*``. Messages over
the redelivery limit are re-published under ``dlq.{original topic}``.

Wildcards follow AMQP topic-exchange semantics: ``*`` matches exactly one
word and ``#`` matches zero or more words.
"""

from __future__ import annotations

from functools import lru_cache

from complaint_projections.infra.tenancy.router import validate_tenant_id

DEFAULT_TOPIC_PREFIX = "complaints"

# ──────────────────────────────────────────────────────────────────────────────
# Dead-letter topics
# ──────────────────────────────────────────────────────────────────────────────

DLQ_TOPIC_PREFIX = "dlq"
"""First word of every dead-letter topic."""

DLQ_PATTERN = f"{DLQ_TOPIC_PREFIX}.#"
"""Pattern matching every dead-letter topic."""

# ──────────────────────────────────────────────────────────────────────────────
# Message headers
# ──────────────────────────────────────────────────────────────────────────────

HEADER_ORIGINAL_TOPIC = "x-original-topic"
HEADER_CONSUMER_GROUP = "x-consumer-group"
HEADER_DELIVERY_COUNT = "x-delivery-count"
HEADER_DEATH_REASON = "x-death-reason"


def event_topic(tenant_id: str, event_type: str, prefix: str = DEFAULT_TOPIC_PREFIX) -> str:
    """Topic an event of ``event_type`` for ``tenant_id`` is published to.

    Example:
        >>> event_topic("acme", "ComplaintCreated")
        'complaints.acme.ComplaintCreated'
    """
    return f"{prefix}.{validate_tenant_id(tenant_id)}.{event_type}"


def partition_pattern(tenant_id: str, prefix: str = DEFAULT_TOPIC_PREFIX) -> str:
    """Subscription pattern covering every event of one tenant."""
    return f"{prefix}.{validate_tenant_id(tenant_id)}.*"


def dead_letter_topic(topic: str) -> str:
    """Dead-letter topic for messages originally published to ``topic``."""
    return f"{DLQ_TOPIC_PREFIX}.{topic}"


def original_topic(dead_letter: str) -> str:
    """Inverse of ``dead_letter_topic``."""
    head, _, rest = dead_letter.partition(".")
    if head != DLQ_TOPIC_PREFIX or not rest:
        msg = f"{dead_letter!r} is not a dead-letter topic"
        raise ValueError(msg)
    return rest


def tenant_from_topic(topic: str) -> str | None:
    """Extract the tenant word from an event topic, if present."""
    words = topic.split(".")
    if words and words[0] == DLQ_TOPIC_PREFIX:
        words = words[1:]
    if len(words) != 3:
        return None
    return words[1]


def topic_matches(pattern: str, topic: str) -> bool:
    """Return True if ``topic`` matches the AMQP-style ``pattern``.

    Example:
        >>> topic_matches("complaints.*.ComplaintCreated", "complaints.acme.ComplaintCreated")
        True
        >>> topic_matches("complaints.#", "complaints")
        True
        >>> topic_matches("complaints.*", "complaints.acme.ComplaintCreated")
        False
    """
    return _match(tuple(pattern.split(".")), tuple(topic.split(".")))


@lru_cache(maxsize=4096)
def _match(pattern: tuple[str, ...], words: tuple[str, ...]) -> bool:
    if not pattern:
        return not words
    head, rest = pattern[0], pattern[1:]
    if head == "#":
        return any(_match(rest, words[i:]) for i in range(len(words) + 1))
    if not words:
        return False
    if head in ("*", words[0]):
        return _match(rest, words[1:])
    return False


__all__ = [
    "DEFAULT_TOPIC_PREFIX",
    "DLQ_PATTERN",
    "DLQ_TOPIC_PREFIX",
    "HEADER_CONSUMER_GROUP",
    "HEADER_DEATH_REASON",
    "HEADER_DELIVERY_COUNT",
    "HEADER_ORIGINAL_TOPIC",
    "dead_letter_topic",
    "event_topic",
    "original_topic",
    "partition_pattern",
    "tenant_from_topic",
    "topic_matches",
]
