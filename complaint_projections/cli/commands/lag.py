"""Projection lag commands."""

from __future__ import annotations

import sys

import click

from complaint_projections.cli.utils import coro, error, open_runtime, print_json, print_table, warning
from complaint_projections.core.exceptions import ProjectionError
from complaint_projections.projections import LagStatus


@click.group(name="lag")
def lag() -> None:
    """Projection staleness commands."""


@lag.command(name="show")
@click.option("--tenant", "tenant_id", default=None, help="Only this tenant")
@click.option("--consumer", default=None, help="Consumer group (defaults to PROJECTOR_CONSUMER_GROUP)")
@click.option("--format", "output_format", type=click.Choice(["table", "json"]), default="table")
@coro
async def show(tenant_id: str | None, consumer: str | None, output_format: str) -> None:
    """Show per-tenant lag; exits 2 if any partition is alerting."""
    try:
        async with open_runtime() as runtime:
            consumer = consumer or runtime.consumer
            if tenant_id is not None:
                reports = [await runtime.lag.report(tenant_id, consumer)]
            else:
                reports = await runtime.lag.report_all(consumer)
    except ProjectionError as e:
        error(e.message)
        sys.exit(1)

    rows = [
        {
            "tenant_id": r.tenant_id,
            "consumer": r.consumer,
            "status": r.status.value,
            "lag_seconds": r.lag_seconds,
            "data_as_of": r.data_as_of,
            "position": r.position,
            "error": r.error,
        }
        for r in reports
    ]
    if output_format == "json":
        print_json(rows)
    elif not rows:
        warning("No active tenants")
    else:
        print_table(rows, ["tenant_id", "consumer", "status", "lag_seconds", "data_as_of", "position", "error"])

    if any(r.status is LagStatus.ALERTING for r in reports):
        sys.exit(2)
