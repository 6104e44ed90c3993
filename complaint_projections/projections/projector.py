"""Partition projector: the read-model builder for one tenant.

One ``PartitionProjector`` owns one (tenant, consumer) partition and runs a
strictly sequential pull loop::

    Idle -> Fetching -> Applying -> Checkpointing -> Idle
                \\-> Paused (whole-batch transient failure) -> Applying
    any -> Stopped (shutdown, lost ownership, isolation failure)

Each batch is applied in one read-store transaction that also records the
applied events and advances the checkpoint. Broker acknowledgements are sent
only after that transaction commits, so a crash at any point leads to
redelivery, which dedup turns into a no-op.

A paused batch stays unsettled on the subscription and is retried in place
on the next cycle, so an outage of any length never spends the broker's
redelivery budget. Broker failures while fetching or acknowledging drop the
subscription and back off; the partition keeps running.

Per delivery, in order:

1. Parse the envelope. Malformed bodies are quarantined at once.
2. Assert the envelope's tenant against the partition. A mismatch is a
   security event: logged, counted and quarantined, never applied.
3. Skip events already applied (dedup). An event at or below the
   aggregate's watermark that was never applied arrived out of order and
   is quarantined for an operator.
4. Compute the view delta under the retry manager. Permanent failures are
   quarantined at once, retryable ones after ``max_attempts``.
5. Upsert the views and the aggregate snapshot.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from complaint_projections.core.database.base import utcnow
from complaint_projections.core.events.envelope import EventEnvelope
from complaint_projections.core.exceptions import (
    CheckpointConflictError,
    IsolationViolationError,
    LeaseLostError,
    MalformedEnvelopeError,
)
from complaint_projections.infra.database.session import StoreKind
from complaint_projections.infra.messaging.conventions import (
    DEFAULT_TOPIC_PREFIX,
    partition_pattern,
    tenant_from_topic,
)
from complaint_projections.infra.metrics.prometheus import (
    projection_batch_duration_seconds,
    projection_batches_total,
    projection_events_total,
    projection_isolation_violations_total,
    projection_partition_stops_total,
)

from .dead_letters import DeadLetter, DeadLetterReason
from .deltas import compute_projection
from .retry import FailureKind, RetriesExhaustedError, RetryManager, classify

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence

    from complaint_projections.infra.messaging.broker import Delivery, MessageBroker, Subscription
    from complaint_projections.infra.tenancy.router import TenantRouter, TenantScope

    from .checkpoints import CheckpointStore
    from .dead_letters import DeadLetterStore
    from .deltas import AggregateSnapshot
    from .leases import Lease, LeaseManager
    from .views import ViewWriter

logger = logging.getLogger(__name__)
tracer = trace.get_tracer("complaint_projections.projector")


class PartitionState(StrEnum):
    IDLE = "idle"
    FETCHING = "fetching"
    APPLYING = "applying"
    CHECKPOINTING = "checkpointing"
    PAUSED = "paused"
    STOPPED = "stopped"


class Outcome(StrEnum):
    """How one delivery was disposed of."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    DEAD_LETTERED = "dead_lettered"


@dataclass(slots=True)
class BatchResult:
    """Counts of one committed batch."""

    position: int
    applied: int = 0
    duplicates: int = 0
    dead_lettered: int = 0

    def count(self, outcome: Outcome) -> None:
        match outcome:
            case Outcome.APPLIED:
                self.applied += 1
            case Outcome.DUPLICATE:
                self.duplicates += 1
            case Outcome.DEAD_LETTERED:
                self.dead_lettered += 1


@dataclass(slots=True)
class PartitionHealth:
    """Liveness snapshot of one partition worker."""

    tenant_id: str
    consumer: str
    state: PartitionState = PartitionState.IDLE
    owner_id: str | None = None
    fencing_token: int | None = None
    position: int | None = None
    batches: int = 0
    applied: int = 0
    skipped: int = 0
    dead_lettered: int = 0
    pauses: int = 0
    last_batch_at: datetime | None = None
    last_error: str | None = None
    stop_reason: str | None = None
    started_at: datetime = field(default_factory=utcnow)


class PartitionStopped(Exception):
    """Internal signal that the partition must be abandoned."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


def _stop_reason(exc: BaseException) -> str:
    if isinstance(exc, LeaseLostError):
        return "lease_lost"
    if isinstance(exc, CheckpointConflictError):
        return "checkpoint_conflict"
    return "isolation_violation"


@dataclass(slots=True)
class _BatchContext:
    scope: TenantScope
    result: BatchResult
    last_event_id: str | None
    applied_ids: set[str]
    snapshots: dict[str, AggregateSnapshot | None] = field(default_factory=dict)
    dead_letters: list[DeadLetter] = field(default_factory=list)


class PartitionProjector:
    """Pull loop of one (tenant, consumer) partition.

    Args:
        tenant_id: Tenant the partition belongs to.
        router: Tenant router; every batch runs inside ``within(tenant_id)``.
        broker: Broker to pull from.
        checkpoints: Checkpoint store.
        views: View writer of ``consumer``.
        dead_letters: Quarantine store.
        retry: Backoff policy for events and batches.
        consumer: Consumer group name.
        batch_size: Maximum deliveries per batch.
        fetch_timeout: Seconds a fetch waits for the first message.
        idle_poll_interval: Pause between empty fetches.
        pause_seconds: Time spent Paused after a batch exhausts its retries.
        topic_prefix: First word of event topics.
        leases: Lease manager, when running under a supervisor.
        lease: Lease held on the partition.
        lease_renew_interval: Seconds between lease renewals.
        sleep: Awaitable sleep, injectable for tests.
    """

    def __init__(
        self,
        tenant_id: str,
        *,
        router: TenantRouter,
        broker: MessageBroker,
        checkpoints: CheckpointStore,
        views: ViewWriter,
        dead_letters: DeadLetterStore,
        retry: RetryManager,
        consumer: str,
        batch_size: int = 100,
        fetch_timeout: float = 1.0,
        idle_poll_interval: float = 0.25,
        pause_seconds: float = 5.0,
        topic_prefix: str = DEFAULT_TOPIC_PREFIX,
        leases: LeaseManager | None = None,
        lease: Lease | None = None,
        lease_renew_interval: float = 10.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.tenant_id = tenant_id
        self.consumer = consumer
        self.batch_size = batch_size
        self.fetch_timeout = fetch_timeout
        self.idle_poll_interval = idle_poll_interval
        self.pause_seconds = pause_seconds
        self.pattern = partition_pattern(tenant_id, topic_prefix)

        self._router = router
        self._broker = broker
        self._checkpoints = checkpoints
        self._views = views
        self._dead_letters = dead_letters
        self._retry = retry
        self._leases = leases
        self._lease = lease
        self._lease_renew_interval = lease_renew_interval
        self._last_renewal = time.monotonic()
        self._sleep = sleep
        self._subscription: Subscription | None = None
        self._held: Sequence[Delivery] = ()
        self._broker_failures = 0
        self._stop_requested = asyncio.Event()

        self.health = PartitionHealth(
            tenant_id=tenant_id,
            consumer=consumer,
            owner_id=lease.owner_id if lease else None,
            fencing_token=lease.fencing_token if lease else None,
        )

    @property
    def state(self) -> PartitionState:
        return self.health.state

    @property
    def lease(self) -> Lease | None:
        return self._lease

    def _set_state(self, state: PartitionState) -> None:
        self.health.state = state

    def request_stop(self) -> None:
        """Ask the loop to stop once the in-flight batch is checkpointed."""
        self._stop_requested.set()

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Run until stopped; never raises for partition-level failures."""
        logger.info(
            "Partition started",
            extra={"tenant_id": self.tenant_id, "consumer": self.consumer, "pattern": self.pattern},
        )
        try:
            while not self._stop_requested.is_set():
                await self.run_once()
        except PartitionStopped as stop:
            self._stop(stop.reason)
        except asyncio.CancelledError:
            self._stop("cancelled")
            raise
        else:
            self._stop("shutdown")
        finally:
            await self.close()

    async def run_once(self) -> BatchResult | None:
        """One Fetching -> Applying -> Checkpointing cycle.

        A batch left Paused by the previous cycle is retried before anything
        new is fetched.

        Returns:
            The committed batch, or None when the fetch was empty, the broker
            was unreachable or the batch ended Paused.

        Raises:
            PartitionStopped: Ownership was lost or the tenant failed closed.
        """
        await self._renew_lease()
        try:
            subscription = await self._ensure_subscription()
            if self._held:
                deliveries = self._held
            else:
                self._set_state(PartitionState.FETCHING)
                deliveries = await subscription.fetch(self.batch_size, self.fetch_timeout)
        except Exception as exc:
            if classify(exc) is not FailureKind.TRANSIENT:
                raise
            await self._on_broker_failure("fetch", exc)
            return None

        self._broker_failures = 0
        if not deliveries:
            await self._on_idle()
            return None
        return await self._handle_batch(subscription, deliveries)

    async def close(self) -> None:
        self._held = ()
        if self._subscription is not None:
            try:
                await self._subscription.close()
            except Exception:
                logger.exception("Error closing subscription", extra={"tenant_id": self.tenant_id})
            self._subscription = None

    async def _on_broker_failure(self, operation: str, exc: Exception) -> None:
        """Drop the subscription and back off; held deliveries return to the queue."""
        self._broker_failures += 1
        self.health.last_error = f"{type(exc).__name__}: {exc}"
        delay = self._retry.delay_for(self._broker_failures)
        logger.warning(
            "Broker operation failed, resubscribing",
            extra={
                "operation": operation,
                "tenant_id": self.tenant_id,
                "consumer": self.consumer,
                "attempt": self._broker_failures,
                "delay": delay,
                "error": str(exc),
            },
        )
        await self.close()
        self._set_state(PartitionState.IDLE)
        await self._sleep(delay)

    async def _ensure_subscription(self) -> Subscription:
        if self._subscription is None:
            self._subscription = await self._broker.subscribe(self.pattern, self.consumer)
        return self._subscription

    async def _on_idle(self) -> None:
        self._set_state(PartitionState.IDLE)
        try:
            async with self._router.within(self.tenant_id, StoreKind.READ) as scope:
                if await self._checkpoints.touch(scope, self.consumer):
                    await scope.commit()
        except IsolationViolationError as exc:
            raise PartitionStopped("isolation_violation") from exc
        except Exception as exc:
            if classify(exc) is not FailureKind.TRANSIENT:
                raise
            logger.warning("Checkpoint refresh failed", extra={"tenant_id": self.tenant_id, "error": str(exc)})
        if self.idle_poll_interval > 0:
            await self._wait_or_stop(self.idle_poll_interval)

    async def _wait_or_stop(self, seconds: float) -> None:
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._stop_requested.wait(), timeout=seconds)

    async def _renew_lease(self) -> None:
        if self._leases is None or self._lease is None:
            return
        if time.monotonic() - self._last_renewal < self._lease_renew_interval:
            return
        try:
            self._lease = await self._leases.renew(self._lease)
        except Exception as exc:
            if classify(exc) is FailureKind.FATAL:
                raise PartitionStopped("lease_lost") from exc
            raise
        self._last_renewal = time.monotonic()

    def _stop(self, reason: str) -> None:
        self._set_state(PartitionState.STOPPED)
        self.health.stop_reason = reason
        projection_partition_stops_total.labels(tenant=self.tenant_id, consumer=self.consumer, reason=reason).inc()
        log = logger.info if reason in ("shutdown", "cancelled") else logger.error
        log(
            "Partition stopped",
            extra={"tenant_id": self.tenant_id, "consumer": self.consumer, "reason": reason},
        )

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    async def _handle_batch(self, subscription: Subscription, deliveries: Sequence[Delivery]) -> BatchResult | None:
        """Apply a batch, retrying it as a unit on transient failure."""
        attempt = 0
        while True:
            attempt += 1
            started = time.perf_counter()
            try:
                result = await self.apply_batch(deliveries)
            except Exception as exc:
                kind = classify(exc)
                self.health.last_error = f"{type(exc).__name__}: {exc}"
                if kind in (FailureKind.FATAL, FailureKind.ISOLATION):
                    self._held = ()
                    await self._nack_all(subscription, deliveries)
                    raise PartitionStopped(_stop_reason(exc)) from exc

                if attempt < self._retry.max_attempts:
                    projection_batches_total.labels(
                        tenant=self.tenant_id, consumer=self.consumer, result="retried"
                    ).inc()
                    delay = self._retry.delay_for(attempt)
                    logger.warning(
                        "Batch failed, retrying",
                        extra={
                            "tenant_id": self.tenant_id,
                            "consumer": self.consumer,
                            "attempt": attempt,
                            "delay": delay,
                            "error": str(exc),
                        },
                    )
                    await self._hold(subscription, deliveries, delay)
                    await self._sleep(delay)
                    continue

                await self._pause(subscription, deliveries, exc)
                return None

            self._held = ()
            projection_batch_duration_seconds.labels(consumer=self.consumer).observe(time.perf_counter() - started)
            projection_batches_total.labels(tenant=self.tenant_id, consumer=self.consumer, result="committed").inc()
            self._record(result)
            self._set_state(PartitionState.IDLE)
            try:
                for delivery in deliveries:
                    await subscription.ack(delivery)
            except Exception as exc:
                if classify(exc) is not FailureKind.TRANSIENT:
                    raise
                # Committed; redelivered copies are deduplicated
                await self._on_broker_failure("ack", exc)
            return result

    async def _pause(self, subscription: Subscription, deliveries: Sequence[Delivery], exc: Exception) -> None:
        """Hold the batch unsettled for ``pause_seconds``; the next cycle retries it."""
        self._set_state(PartitionState.PAUSED)
        self.health.pauses += 1
        projection_batches_total.labels(tenant=self.tenant_id, consumer=self.consumer, result="paused").inc()
        logger.error(
            "Batch retries exhausted, pausing partition",
            extra={
                "tenant_id": self.tenant_id,
                "consumer": self.consumer,
                "batch_size": len(deliveries),
                "pause_seconds": self.pause_seconds,
                "pauses": self.health.pauses,
                "error": str(exc),
            },
        )
        self._held = deliveries
        await self._hold(subscription, deliveries, self.pause_seconds)
        await self._wait_or_stop(self.pause_seconds)

    async def _hold(self, subscription: Subscription, deliveries: Sequence[Delivery], seconds: float) -> None:
        try:
            for delivery in deliveries:
                await subscription.extend(delivery, seconds)
        except Exception as exc:
            if classify(exc) is not FailureKind.TRANSIENT:
                raise
            # Deliveries that expire are redelivered and deduplicated
            logger.warning(
                "Could not extend held deliveries",
                extra={"tenant_id": self.tenant_id, "consumer": self.consumer, "error": str(exc)},
            )

    async def _nack_all(self, subscription: Subscription, deliveries: Sequence[Delivery]) -> None:
        for delivery in deliveries:
            try:
                await subscription.nack(delivery, requeue=True)
            except Exception:
                # Unsettled deliveries come back after the visibility timeout
                logger.warning(
                    "Nack failed",
                    extra={"tenant_id": self.tenant_id, "delivery_tag": delivery.delivery_tag},
                    exc_info=True,
                )

    def _record(self, result: BatchResult) -> None:
        self.health.batches += 1
        self.health.position = result.position
        self.health.applied += result.applied
        self.health.skipped += result.duplicates
        self.health.dead_lettered += result.dead_lettered
        self.health.last_batch_at = utcnow()
        self.health.last_error = None

    async def apply_batch(self, deliveries: Sequence[Delivery]) -> BatchResult:
        """Apply ``deliveries`` and advance the checkpoint in one transaction.

        Raises:
            CheckpointConflictError: Another worker advanced the partition.
            IsolationViolationError: The tenant failed closed.
            TransientInfrastructureError: A store is unreachable.
        """
        with tracer.start_as_current_span(
            "projector.batch",
            kind=trace.SpanKind.CONSUMER,
            attributes={"tenant.id": self.tenant_id, "consumer": self.consumer, "batch.size": len(deliveries)},
        ) as span:
            try:
                result = await self._apply_batch(deliveries)
            except Exception as e:
                span.set_status(Status(StatusCode.ERROR, str(e)))
                span.record_exception(e)
                raise
            span.set_attribute("batch.applied", result.applied)
            span.set_attribute("batch.dead_lettered", result.dead_lettered)
            return result

    async def _apply_batch(self, deliveries: Sequence[Delivery]) -> BatchResult:
        self._set_state(PartitionState.APPLYING)
        async with self._router.within(self.tenant_id, StoreKind.READ) as scope:
            checkpoint = await self._checkpoints.load(scope, self.consumer)
            position = checkpoint.last_sequence if checkpoint else 0
            envelopes = [self._parse(delivery) for delivery in deliveries]
            applied_ids = await self._views.applied_event_ids(
                scope, [envelope.event_id for envelope in envelopes if isinstance(envelope, EventEnvelope)]
            )
            ctx = _BatchContext(
                scope=scope,
                result=BatchResult(position=position),
                last_event_id=checkpoint.last_event_id if checkpoint else None,
                applied_ids=applied_ids,
            )

            for delivery, parsed in zip(deliveries, envelopes, strict=True):
                outcome = await self._dispose(ctx, delivery, parsed)
                ctx.result.position += 1
                ctx.result.count(outcome)
                projection_events_total.labels(
                    tenant=self.tenant_id, consumer=self.consumer, outcome=outcome.value
                ).inc()

            self._set_state(PartitionState.CHECKPOINTING)
            if ctx.dead_letters:
                await self._dead_letters.quarantine_many(ctx.dead_letters)
            await self._checkpoints.advance(scope, self.consumer, ctx.last_event_id, ctx.result.position)
            await scope.commit()

        logger.debug(
            "Batch committed",
            extra={
                "tenant_id": self.tenant_id,
                "consumer": self.consumer,
                "position": ctx.result.position,
                "applied": ctx.result.applied,
                "duplicates": ctx.result.duplicates,
                "dead_lettered": ctx.result.dead_lettered,
            },
        )
        return ctx.result

    def _parse(self, delivery: Delivery) -> EventEnvelope | MalformedEnvelopeError:
        try:
            return EventEnvelope.from_wire(delivery.body)
        except MalformedEnvelopeError as exc:
            return exc

    async def _dispose(
        self,
        ctx: _BatchContext,
        delivery: Delivery,
        parsed: EventEnvelope | MalformedEnvelopeError,
    ) -> Outcome:
        if isinstance(parsed, MalformedEnvelopeError):
            ctx.last_event_id = parsed.event_id or ctx.last_event_id
            self._quarantine(
                ctx,
                delivery,
                DeadLetterReason.POISON,
                parsed.message,
                tenant_id=parsed.tenant_id or tenant_from_topic(delivery.topic),
                event_id=parsed.event_id,
            )
            return Outcome.DEAD_LETTERED

        envelope = parsed
        ctx.last_event_id = envelope.event_id
        try:
            ctx.scope.assert_tenant(envelope.tenant_id, event_id=envelope.event_id)
        except IsolationViolationError as exc:
            projection_isolation_violations_total.labels(tenant=self.tenant_id, consumer=self.consumer).inc()
            self._quarantine(ctx, delivery, DeadLetterReason.ISOLATION_VIOLATION, exc.message, envelope=envelope)
            return Outcome.DEAD_LETTERED

        if envelope.event_id in ctx.applied_ids:
            return Outcome.DUPLICATE

        if envelope.aggregate_id in ctx.snapshots:
            state = ctx.snapshots[envelope.aggregate_id]
        else:
            state = await self._views.load_snapshot(ctx.scope, envelope.aggregate_id)
            ctx.snapshots[envelope.aggregate_id] = state
        if state is not None and envelope.sequence <= state.last_sequence:
            logger.warning(
                "Event arrived behind its aggregate's watermark",
                extra={
                    "tenant_id": self.tenant_id,
                    "consumer": self.consumer,
                    "event_id": envelope.event_id,
                    "aggregate_id": envelope.aggregate_id,
                    "sequence": envelope.sequence,
                    "watermark": state.last_sequence,
                },
            )
            self._quarantine(
                ctx,
                delivery,
                DeadLetterReason.OUT_OF_ORDER,
                f"Sequence {envelope.sequence} arrived after sequence {state.last_sequence} was applied",
                envelope=envelope,
            )
            return Outcome.DEAD_LETTERED

        try:
            projection = await self._retry.call(lambda: compute_projection(envelope, state), name="compute_projection")
        except RetriesExhaustedError as exc:
            self._quarantine(
                ctx,
                delivery,
                DeadLetterReason.RETRIES_EXHAUSTED,
                exc.message,
                envelope=envelope,
                failure_count=exc.attempts,
            )
            return Outcome.DEAD_LETTERED
        except Exception as exc:
            if classify(exc) is not FailureKind.PERMANENT:
                raise
            self._quarantine(ctx, delivery, DeadLetterReason.POISON, str(exc), envelope=envelope)
            return Outcome.DEAD_LETTERED

        await self._views.apply(ctx.scope, envelope, projection)
        ctx.snapshots[envelope.aggregate_id] = projection.snapshot
        ctx.applied_ids.add(envelope.event_id)
        return Outcome.APPLIED

    def _quarantine(
        self,
        ctx: _BatchContext,
        delivery: Delivery,
        reason: DeadLetterReason,
        error: str,
        *,
        envelope: EventEnvelope | None = None,
        tenant_id: str | None = None,
        event_id: str | None = None,
        failure_count: int = 1,
    ) -> None:
        ctx.dead_letters.append(
            DeadLetter(
                consumer=self.consumer,
                topic=delivery.topic,
                body=delivery.body,
                reason=reason,
                error=error,
                failure_count=failure_count,
                tenant_id=envelope.tenant_id if envelope else tenant_id,
                event_id=envelope.event_id if envelope else event_id,
                event_type=envelope.event_type.value if envelope else None,
                aggregate_id=envelope.aggregate_id if envelope else None,
                headers=dict(delivery.headers),
            )
        )


__all__ = [
    "BatchResult",
    "Outcome",
    "PartitionHealth",
    "PartitionProjector",
    "PartitionState",
    "PartitionStopped",
]
