"""Outbox maintenance commands."""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING

import click

from complaint_projections.cli.utils import coro, error, open_runtime, print_json, print_table, success

if TYPE_CHECKING:
    from complaint_projections.runtime import Runtime


async def _tenant_ids(runtime: Runtime, tenant_id: str | None) -> list[str]:
    if tenant_id is not None:
        return [tenant_id]
    return [t.tenant_id for t in await runtime.router.list_tenants(active_only=True)]


@click.group(name="outbox")
def outbox() -> None:
    """Inspect and maintain tenant outboxes."""


@outbox.command(name="status")
@click.option("--tenant", "tenant_id", default=None, help="Only this tenant")
@click.option("--format", "output_format", type=click.Choice(["table", "json"]), default="table")
@coro
async def status(tenant_id: str | None, output_format: str) -> None:
    """Count outbox records per state."""
    try:
        async with open_runtime() as runtime:
            rows = []
            for tid in await _tenant_ids(runtime, tenant_id):
                counts = await runtime.dispatcher.counts(tid)
                rows.append({"tenant_id": tid, **counts})
    except Exception as e:
        error(f"Failed to read outbox: {e}")
        sys.exit(1)

    if output_format == "json":
        print_json(rows)
        return
    columns = ["tenant_id", *sorted({key for row in rows for key in row} - {"tenant_id"})]
    print_table(rows, columns)


@outbox.command(name="compact")
@click.option("--tenant", "tenant_id", default=None, help="Only this tenant")
@click.option("--retention-days", type=click.IntRange(min=0), default=None, help="Defaults to OUTBOX_RETENTION_DAYS")
@coro
async def compact(tenant_id: str | None, retention_days: int | None) -> None:
    """Delete Dispatched records past the retention window."""
    try:
        async with open_runtime() as runtime:
            days = runtime.outbox_settings.retention_days if retention_days is None else retention_days
            total = 0
            for tid in await _tenant_ids(runtime, tenant_id):
                total += await runtime.dispatcher.compact(tid, retention_days=days)
    except Exception as e:
        error(f"Compaction failed: {e}")
        sys.exit(1)
    success(f"Deleted {total} dispatched records older than {days} days")


@outbox.command(name="retry-failed")
@click.option("--tenant", "tenant_id", default=None, help="Only this tenant")
@coro
async def retry_failed(tenant_id: str | None) -> None:
    """Return Failed records to Pending."""
    try:
        async with open_runtime() as runtime:
            total = 0
            for tid in await _tenant_ids(runtime, tenant_id):
                total += await runtime.dispatcher.reset_failed(tid)
    except Exception as e:
        error(f"Reset failed: {e}")
        sys.exit(1)
    success(f"Reset {total} failed records to pending")
