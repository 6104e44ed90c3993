"""Prometheus metrics for the projection engine."""

from __future__ import annotations

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram

# Custom registry so tests and multiple app instances never collide with
# the process-global default registry
REGISTRY = CollectorRegistry()

# Batch latencies from 1ms to 30s
BATCH_LATENCY_BUCKETS = (
    0.001,
    0.005,
    0.01,
    0.025,
    0.05,
    0.1,
    0.25,
    0.5,
    1.0,
    2.5,
    5.0,
    10.0,
    30.0,
)

# ============================================================================
# Projector
# ============================================================================

projection_events_total = Counter(
    "projection_events_total",
    "Envelopes disposed of by the projector, by outcome (applied, duplicate, dead_lettered)",
    ["tenant", "consumer", "outcome"],
    registry=REGISTRY,
)

projection_batches_total = Counter(
    "projection_batches_total",
    "Projector batches by result (committed, retried, paused)",
    ["tenant", "consumer", "result"],
    registry=REGISTRY,
)

projection_batch_duration_seconds = Histogram(
    "projection_batch_duration_seconds",
    "Time to apply and checkpoint one batch",
    ["consumer"],
    buckets=BATCH_LATENCY_BUCKETS,
    registry=REGISTRY,
)

projection_partitions_active = Gauge(
    "projection_partitions_active",
    "Partitions currently owned by this process",
    ["consumer"],
    registry=REGISTRY,
)

projection_partition_stops_total = Counter(
    "projection_partition_stops_total",
    "Partitions that entered the Stopped state, by reason",
    ["tenant", "consumer", "reason"],
    registry=REGISTRY,
)

projection_isolation_violations_total = Counter(
    "projection_isolation_violations_total",
    "Envelopes or requests that crossed a tenant boundary and were refused",
    ["tenant", "consumer"],
    registry=REGISTRY,
)

projection_lag_seconds = Gauge(
    "projection_lag_seconds",
    "Seconds since the partition checkpoint last advanced or was refreshed",
    ["tenant", "consumer"],
    registry=REGISTRY,
)

projection_lag_alerting = Gauge(
    "projection_lag_alerting",
    "1 when the partition's lag exceeds the alert threshold",
    ["tenant", "consumer"],
    registry=REGISTRY,
)

# ============================================================================
# Dead letters
# ============================================================================

dead_letters_total = Counter(
    "dead_letters_total",
    "Entries written to the quarantine store, by reason",
    ["consumer", "reason"],
    registry=REGISTRY,
)

dead_letter_actions_total = Counter(
    "dead_letter_actions_total",
    "Operator actions on dead-letter entries",
    ["action"],
    registry=REGISTRY,
)

# ============================================================================
# Outbox
# ============================================================================

outbox_dispatched_total = Counter(
    "outbox_dispatched_total",
    "Outbox records accepted by the broker",
    ["tenant"],
    registry=REGISTRY,
)

outbox_publish_failures_total = Counter(
    "outbox_publish_failures_total",
    "Outbox publish attempts that failed and were rescheduled",
    ["tenant"],
    registry=REGISTRY,
)

outbox_records_failed_total = Counter(
    "outbox_records_failed_total",
    "Outbox records marked Failed because their payload could not be published",
    ["tenant"],
    registry=REGISTRY,
)

# ============================================================================
# Retries
# ============================================================================

retry_attempts_total = Counter(
    "retry_attempts_total",
    "Retry attempts made by the retry decorator",
    ["function"],
    registry=REGISTRY,
)

retry_exhausted_total = Counter(
    "retry_exhausted_total",
    "Operations that failed after exhausting their retry budget",
    ["function"],
    registry=REGISTRY,
)
