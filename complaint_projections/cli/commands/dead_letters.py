"""Dead-letter operator commands."""

from __future__ import annotations

import sys
import uuid

import click

from complaint_projections.cli.utils import (
    coro,
    error,
    header,
    open_runtime,
    print_json,
    print_table,
    success,
    warning,
)
from complaint_projections.core.exceptions import DeadLetterNotFoundError, DeadLetterStateError
from complaint_projections.projections import DeadLetterStatus


@click.group(name="dlq")
def dlq() -> None:
    """Inspect, replay and discard dead letters."""


@dlq.command(name="list")
@click.option("--tenant", "tenant_id", default=None, help="Only entries of this tenant")
@click.option("--consumer", default=None, help="Only entries of this consumer group")
@click.option(
    "--status",
    type=click.Choice([s.value for s in DeadLetterStatus]),
    default=DeadLetterStatus.QUARANTINED.value,
    show_default=True,
)
@click.option("--limit", type=click.IntRange(1, 500), default=50, show_default=True)
@click.option("--format", "output_format", type=click.Choice(["table", "json"]), default="table")
@coro
async def list_dead_letters(
    tenant_id: str | None,
    consumer: str | None,
    status: str,
    limit: int,
    output_format: str,
) -> None:
    """List dead letters, most recent failure first."""
    try:
        async with open_runtime() as runtime:
            entries, total = await runtime.dead_letters.list(
                tenant_id=tenant_id,
                consumer=consumer,
                status=DeadLetterStatus(status),
                limit=limit,
            )
    except Exception as e:
        error(f"Failed to list dead letters: {e}")
        sys.exit(1)

    rows = [
        {
            "id": entry.id,
            "tenant_id": entry.tenant_id,
            "consumer": entry.consumer,
            "event_type": entry.event_type,
            "reason": entry.reason,
            "failures": entry.failure_count,
            "last_failed_at": entry.last_failed_at,
        }
        for entry in entries
    ]
    if output_format == "json":
        print_json({"items": rows, "total": total})
        return
    if not rows:
        warning("No dead letters")
        return
    print_table(rows, ["id", "tenant_id", "consumer", "event_type", "reason", "failures", "last_failed_at"])
    click.echo(f"\n{len(rows)} of {total}")


@dlq.command(name="show")
@click.argument("entry_id", type=click.UUID)
@coro
async def show(entry_id: uuid.UUID) -> None:
    """Show one dead letter including its body."""
    async with open_runtime() as runtime:
        entry = await runtime.dead_letters.get(entry_id)
    if entry is None:
        error(f"Dead letter {entry_id} not found")
        sys.exit(1)

    header(f"Dead letter {entry.id}")
    print_json(
        {
            "tenant_id": entry.tenant_id,
            "consumer": entry.consumer,
            "topic": entry.topic,
            "event_id": entry.event_id,
            "event_type": entry.event_type,
            "aggregate_id": entry.aggregate_id,
            "reason": entry.reason,
            "error": entry.last_error,
            "failure_count": entry.failure_count,
            "status": entry.status,
            "first_failed_at": entry.first_failed_at,
            "last_failed_at": entry.last_failed_at,
            "body": entry.body,
        }
    )


@dlq.command(name="replay")
@click.argument("entry_id", type=click.UUID)
@click.option("--operator", default=None, help="Recorded as the resolver")
@coro
async def replay(entry_id: uuid.UUID, operator: str | None) -> None:
    """Re-publish a quarantined entry to its original topic."""
    try:
        async with open_runtime(connect_broker=True) as runtime:
            entry = await runtime.dead_letter_manager.replay(entry_id, operator=operator)
    except (DeadLetterNotFoundError, DeadLetterStateError) as e:
        error(e.message)
        sys.exit(1)
    success(f"Replayed {entry.id} to {entry.topic}")


@dlq.command(name="discard")
@click.argument("entry_id", type=click.UUID)
@click.option("--operator", default=None, help="Recorded as the resolver")
@click.option("--note", default=None, help="Why the entry is dropped")
@coro
async def discard(entry_id: uuid.UUID, operator: str | None, note: str | None) -> None:
    """Mark a quarantined entry as deliberately dropped."""
    try:
        async with open_runtime() as runtime:
            entry = await runtime.dead_letter_manager.discard(entry_id, operator=operator, note=note)
    except (DeadLetterNotFoundError, DeadLetterStateError) as e:
        error(e.message)
        sys.exit(1)
    success(f"Discarded {entry.id}")
