"""Unit tests for topic naming and wildcard matching."""

from __future__ import annotations

import pytest

from complaint_projections.core.exceptions import MissingTenantError, UnknownTenantError
from complaint_projections.infra.messaging.conventions import (
    dead_letter_topic,
    event_topic,
    original_topic,
    partition_pattern,
    tenant_from_topic,
    topic_matches,
)


@pytest.mark.unit
class TestTopicNames:
    def test_event_topic(self):
        assert event_topic("acme", "ComplaintCreated") == "complaints.acme.ComplaintCreated"

    def test_event_topic_with_prefix(self):
        assert event_topic("acme", "ComplaintCreated", prefix="events") == "events.acme.ComplaintCreated"

    def test_partition_pattern(self):
        assert partition_pattern("acme") == "complaints.acme.*"

    @pytest.mark.parametrize("tenant_id", ["acme.globex", "*", "#", "acme globex"])
    def test_tenant_cannot_inject_routing_syntax(self, tenant_id):
        with pytest.raises(UnknownTenantError):
            partition_pattern(tenant_id)

    def test_blank_tenant_is_missing(self):
        with pytest.raises(MissingTenantError):
            event_topic("  ", "ComplaintCreated")

    def test_dead_letter_topic_round_trip(self):
        topic = "complaints.acme.ComplaintCreated"

        assert dead_letter_topic(topic) == "dlq.complaints.acme.ComplaintCreated"
        assert original_topic(dead_letter_topic(topic)) == topic

    def test_original_topic_rejects_event_topics(self):
        with pytest.raises(ValueError, match="not a dead-letter topic"):
            original_topic("complaints.acme.ComplaintCreated")

    @pytest.mark.parametrize(
        ("topic", "tenant_id"),
        [
            ("complaints.acme.ComplaintCreated", "acme"),
            ("dlq.complaints.globex.ComplaintAssigned", "globex"),
            ("complaints.acme", None),
            ("unrelated", None),
        ],
    )
    def test_tenant_from_topic(self, topic, tenant_id):
        assert tenant_from_topic(topic) == tenant_id


@pytest.mark.unit
class TestTopicMatches:
    @pytest.mark.parametrize(
        ("pattern", "topic", "expected"),
        [
            ("complaints.acme.*", "complaints.acme.ComplaintCreated", True),
            ("complaints.acme.*", "complaints.globex.ComplaintCreated", False),
            ("complaints.acme.*", "complaints.acme", False),
            ("complaints.*.ComplaintCreated", "complaints.acme.ComplaintCreated", True),
            ("complaints.#", "complaints", True),
            ("complaints.#", "complaints.acme.ComplaintCreated", True),
            ("dlq.#", "dlq.complaints.acme.ComplaintCreated", True),
            ("dlq.#", "complaints.acme.ComplaintCreated", False),
            ("#.ComplaintCreated", "complaints.acme.ComplaintCreated", True),
            ("complaints.acme.ComplaintCreated", "complaints.acme.ComplaintCreated", True),
        ],
    )
    def test_amqp_semantics(self, pattern, topic, expected):
        assert topic_matches(pattern, topic) is expected
