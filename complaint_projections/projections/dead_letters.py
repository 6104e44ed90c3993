"""Dead-letter store and operator actions.

Dead letters live in the quarantine database, which is not partitioned by
tenant: entries must stay inspectable even when the originating tenant's
namespace is degraded, and some entries (malformed bodies) have no
recoverable tenant at all.

One entry exists per (consumer, dedup key). The dedup key is the event id,
or a SHA-256 of the raw body when no event id can be recovered, so repeated
failures of the same message update one entry instead of piling up rows.
Entries are never expired; they leave QUARANTINED only through an explicit
replay or discard.
"""

from __future__ import annotations

import hashlib
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from sqlalchemy import JSON, Integer, LargeBinary, String, Text, UniqueConstraint, Uuid, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, mapped_column

from complaint_projections.core.database.base import (
    QuarantineBase,
    TimestampMixin,
    UTCDateTime,
    generate_uuid7,
    utcnow,
)
from complaint_projections.core.exceptions import DeadLetterNotFoundError, DeadLetterStateError
from complaint_projections.infra.metrics.prometheus import dead_letter_actions_total, dead_letters_total

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from sqlalchemy.ext.asyncio import AsyncSession

    from complaint_projections.infra.database.session import Database
    from complaint_projections.infra.messaging.broker import MessageBroker

logger = logging.getLogger(__name__)


class DeadLetterStatus(StrEnum):
    QUARANTINED = "quarantined"
    REPLAYED = "replayed"
    DISCARDED = "discarded"


class DeadLetterReason(StrEnum):
    """Why a message was quarantined."""

    POISON = "poison"
    RETRIES_EXHAUSTED = "retries_exhausted"
    ISOLATION_VIOLATION = "isolation_violation"
    MAX_REDELIVERIES_EXCEEDED = "max_redeliveries_exceeded"
    OUT_OF_ORDER = "out_of_order"


def dedup_key_for(event_id: str | None, body: bytes) -> str:
    """Event id, or a digest of the body when the event id is unknown."""
    if event_id:
        return event_id
    return f"sha256:{hashlib.sha256(body).hexdigest()}"


class DeadLetterEntry(QuarantineBase, TimestampMixin):
    """A quarantined message.

    Attributes:
        id: UUID v7 primary key.
        consumer: Consumer group that failed to apply the message.
        dedup_key: Event id, or ``sha256:<digest>`` of the body.
        tenant_id: Tenant recovered from the envelope or topic, if any.
        event_id: Envelope event id, if recoverable.
        event_type: Envelope event type, if recoverable.
        aggregate_id: Envelope aggregate id, if recoverable.
        topic: Topic the message was originally published to.
        body: Original raw message body, replayed verbatim.
        headers: Broker headers at quarantine time.
        reason: DeadLetterReason value.
        failure_count: Failed application attempts.
        last_error: Last failure description.
        first_failed_at: First quarantine time.
        last_failed_at: Most recent quarantine time.
        status: DeadLetterStatus value.
        replay_count: Times an operator replayed the entry.
        resolved_at: Time of the last operator action.
        resolved_by: Operator that took the last action.
        resolution_note: Operator note.
    """

    __tablename__ = "dead_letters"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=generate_uuid7)
    consumer: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    dedup_key: Mapped[str] = mapped_column(String(100), nullable=False)
    tenant_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    event_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    event_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    aggregate_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    topic: Mapped[str] = mapped_column(String(300), nullable=False)
    body: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    headers: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    reason: Mapped[str] = mapped_column(String(50), nullable=False)
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    last_error: Mapped[str] = mapped_column(Text, nullable=False, default="")
    first_failed_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    last_failed_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=DeadLetterStatus.QUARANTINED.value,
        index=True,
    )
    replay_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(200), nullable=True)
    resolution_note: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (UniqueConstraint("consumer", "dedup_key", name="uq_dead_letters_consumer_dedup_key"),)

    def __repr__(self) -> str:
        return (
            f"DeadLetterEntry(id={self.id}, consumer={self.consumer!r}, dedup_key={self.dedup_key!r}, "
            f"status={self.status}, failures={self.failure_count})"
        )


@dataclass(frozen=True, slots=True)
class DeadLetter:
    """A message to quarantine, as assembled by the projector or drain."""

    consumer: str
    topic: str
    body: bytes
    reason: DeadLetterReason
    error: str
    failure_count: int = 1
    tenant_id: str | None = None
    event_id: str | None = None
    event_type: str | None = None
    aggregate_id: str | None = None
    headers: dict[str, Any] = field(default_factory=dict)
    failed_at: datetime = field(default_factory=utcnow)

    @property
    def dedup_key(self) -> str:
        return dedup_key_for(self.event_id, self.body)


def _json_safe(headers: dict[str, Any]) -> dict[str, Any]:
    safe: dict[str, Any] = {}
    for key, value in headers.items():
        if isinstance(value, str | int | float | bool) or value is None:
            safe[key] = value
        elif isinstance(value, bytes):
            safe[key] = value.decode("utf-8", errors="replace")
        else:
            safe[key] = str(value)
    return safe


class DeadLetterStore:
    """Persistence of dead-letter entries in the quarantine database.

    Args:
        database: The quarantine store.
        clock: UTC clock, injectable for tests.
    """

    def __init__(self, database: Database, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._database = database
        self._clock = clock

    async def quarantine(self, letter: DeadLetter) -> DeadLetterEntry:
        [entry] = await self.quarantine_many([letter])
        return entry

    async def quarantine_many(self, letters: Sequence[DeadLetter]) -> list[DeadLetterEntry]:
        """Record ``letters`` in one transaction.

        A letter whose (consumer, dedup key) already exists updates that
        entry: while QUARANTINED the failure count keeps its maximum, after a
        REPLAYED entry fails again the counts add up and the entry returns to
        QUARANTINED. DISCARDED entries stay discarded.
        """
        if not letters:
            return []
        try:
            return await self._quarantine_many(letters)
        except IntegrityError:
            # A concurrent writer inserted one of the keys; it now exists
            return await self._quarantine_many(letters)

    async def _quarantine_many(self, letters: Sequence[DeadLetter]) -> list[DeadLetterEntry]:
        entries: list[DeadLetterEntry] = []
        async with self._database.session() as session:
            for letter in letters:
                entries.append(await self._upsert(session, letter))
            await session.commit()

        for letter in letters:
            dead_letters_total.labels(consumer=letter.consumer, reason=letter.reason.value).inc()
            logger.warning(
                "Message quarantined",
                extra={
                    "consumer": letter.consumer,
                    "tenant_id": letter.tenant_id,
                    "event_id": letter.event_id,
                    "topic": letter.topic,
                    "reason": letter.reason.value,
                    "failure_count": letter.failure_count,
                    "error": letter.error,
                },
            )
        return entries

    async def _upsert(self, session: AsyncSession, letter: DeadLetter) -> DeadLetterEntry:
        result = await session.execute(
            select(DeadLetterEntry).where(
                DeadLetterEntry.consumer == letter.consumer,
                DeadLetterEntry.dedup_key == letter.dedup_key,
            )
        )
        entry = result.scalar_one_or_none()
        if entry is None:
            entry = DeadLetterEntry(
                id=generate_uuid7(),
                consumer=letter.consumer,
                dedup_key=letter.dedup_key,
                tenant_id=letter.tenant_id,
                event_id=letter.event_id,
                event_type=letter.event_type,
                aggregate_id=letter.aggregate_id,
                topic=letter.topic,
                body=letter.body,
                headers=_json_safe(letter.headers),
                reason=letter.reason.value,
                failure_count=letter.failure_count,
                last_error=letter.error,
                first_failed_at=letter.failed_at,
                last_failed_at=letter.failed_at,
                status=DeadLetterStatus.QUARANTINED.value,
            )
            session.add(entry)
            await session.flush()
            return entry

        if entry.status == DeadLetterStatus.REPLAYED:
            entry.failure_count += letter.failure_count
            entry.status = DeadLetterStatus.QUARANTINED.value
        elif entry.status == DeadLetterStatus.QUARANTINED:
            entry.failure_count = max(entry.failure_count, letter.failure_count)
        entry.reason = letter.reason.value
        entry.last_error = letter.error
        entry.last_failed_at = letter.failed_at
        await session.flush()
        return entry

    async def get(self, entry_id: uuid.UUID) -> DeadLetterEntry | None:
        async with self._database.session() as session:
            return await session.get(DeadLetterEntry, entry_id)

    async def find(self, consumer: str, dedup_key: str) -> DeadLetterEntry | None:
        async with self._database.session() as session:
            result = await session.execute(
                select(DeadLetterEntry).where(
                    DeadLetterEntry.consumer == consumer,
                    DeadLetterEntry.dedup_key == dedup_key,
                )
            )
            return result.scalar_one_or_none()

    async def list(
        self,
        *,
        tenant_id: str | None = None,
        consumer: str | None = None,
        status: DeadLetterStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[DeadLetterEntry], int]:
        """Filtered page of entries (most recent failure first) and total count."""
        filters = []
        if tenant_id is not None:
            filters.append(DeadLetterEntry.tenant_id == tenant_id)
        if consumer is not None:
            filters.append(DeadLetterEntry.consumer == consumer)
        if status is not None:
            filters.append(DeadLetterEntry.status == status.value)

        async with self._database.session() as session:
            total = await session.scalar(select(func.count()).select_from(DeadLetterEntry).where(*filters))
            result = await session.execute(
                select(DeadLetterEntry)
                .where(*filters)
                .order_by(DeadLetterEntry.last_failed_at.desc(), DeadLetterEntry.id.desc())
                .limit(limit)
                .offset(offset)
            )
            return list(result.scalars().all()), int(total or 0)

    async def transition(
        self,
        entry_id: uuid.UUID,
        status: DeadLetterStatus,
        *,
        operator: str | None = None,
        note: str | None = None,
    ) -> DeadLetterEntry:
        """Move a QUARANTINED entry to REPLAYED or DISCARDED.

        Raises:
            DeadLetterNotFoundError: No such entry.
            DeadLetterStateError: The entry is not QUARANTINED.
        """
        async with self._database.session() as session:
            entry = await session.get(DeadLetterEntry, entry_id)
            if entry is None:
                raise DeadLetterNotFoundError(f"Dead letter {entry_id} not found", details={"entry_id": str(entry_id)})
            if entry.status != DeadLetterStatus.QUARANTINED:
                msg = f"Dead letter {entry_id} is {entry.status}, only quarantined entries can be {status}"
                raise DeadLetterStateError(
                    msg,
                    tenant_id=entry.tenant_id,
                    event_id=entry.event_id,
                    details={"entry_id": str(entry_id), "status": entry.status},
                )
            entry.status = status.value
            entry.resolved_at = self._clock()
            entry.resolved_by = operator
            entry.resolution_note = note
            if status is DeadLetterStatus.REPLAYED:
                entry.replay_count += 1
            await session.commit()
            return entry


class DeadLetterManager:
    """Operator actions on dead letters.

    Args:
        store: Dead-letter persistence.
        broker: Broker used to re-submit replayed messages.
    """

    def __init__(self, store: DeadLetterStore, broker: MessageBroker) -> None:
        self.store = store
        self._broker = broker

    async def replay(self, entry_id: uuid.UUID, *, operator: str | None = None) -> DeadLetterEntry:
        """Re-publish the original body to its original topic.

        Redelivery is subject to the usual dedup and per-aggregate ordering:
        an event older than what its aggregate already reflects is skipped.

        Raises:
            DeadLetterNotFoundError: No such entry.
            DeadLetterStateError: The entry is not QUARANTINED.
        """
        entry = await self.store.get(entry_id)
        if entry is None:
            raise DeadLetterNotFoundError(f"Dead letter {entry_id} not found", details={"entry_id": str(entry_id)})
        if entry.status != DeadLetterStatus.QUARANTINED:
            msg = f"Dead letter {entry_id} is {entry.status} and cannot be replayed"
            raise DeadLetterStateError(msg, details={"entry_id": str(entry_id), "status": entry.status})

        await self._broker.publish_raw(entry.topic, entry.body, message_id=entry.event_id)
        entry = await self.store.transition(entry_id, DeadLetterStatus.REPLAYED, operator=operator)
        dead_letter_actions_total.labels(action="replay").inc()
        logger.info(
            "Dead letter replayed",
            extra={"entry_id": str(entry_id), "topic": entry.topic, "tenant_id": entry.tenant_id, "operator": operator},
        )
        return entry

    async def discard(
        self,
        entry_id: uuid.UUID,
        *,
        operator: str | None = None,
        note: str | None = None,
    ) -> DeadLetterEntry:
        """Mark an entry as deliberately dropped."""
        entry = await self.store.transition(entry_id, DeadLetterStatus.DISCARDED, operator=operator, note=note)
        dead_letter_actions_total.labels(action="discard").inc()
        logger.info(
            "Dead letter discarded",
            extra={"entry_id": str(entry_id), "tenant_id": entry.tenant_id, "operator": operator, "note": note},
        )
        return entry


__all__ = [
    "DeadLetter",
    "DeadLetterEntry",
    "DeadLetterManager",
    "DeadLetterReason",
    "DeadLetterStatus",
    "DeadLetterStore",
    "dedup_key_for",
]
