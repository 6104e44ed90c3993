"""Read-store maintenance commands."""

from __future__ import annotations

import sys

import click

from complaint_projections.cli.utils import coro, error, info, open_runtime, success
from complaint_projections.infra.database.session import StoreKind
from complaint_projections.projections import ViewWriter


@click.group(name="maintenance")
def maintenance() -> None:
    """Housekeeping for projection state."""


@maintenance.command(name="purge-applied")
@click.option("--tenant", "tenant_id", default=None, help="Only this tenant")
@click.option(
    "--older-than-days",
    type=click.IntRange(min=1),
    default=None,
    help="Defaults to PROJECTOR_APPLIED_EVENT_RETENTION_DAYS",
)
@coro
async def purge_applied(tenant_id: str | None, older_than_days: int | None) -> None:
    """Delete old applied-event markers.

    Aggregate watermarks keep rejecting redeliveries of purged events.
    """
    try:
        async with open_runtime() as runtime:
            days = older_than_days or runtime.projector_settings.applied_event_retention_days
            views = ViewWriter(runtime.consumer)
            if tenant_id is not None:
                tenants = [tenant_id]
            else:
                tenants = [t.tenant_id for t in await runtime.router.list_tenants(active_only=True)]
            total = 0
            for tid in tenants:
                async with runtime.router.within(tid, StoreKind.READ) as scope:
                    purged = await views.purge_applied(scope, older_than_days=days)
                    await scope.commit()
                info(f"{tid}: {purged}")
                total += purged
    except Exception as e:
        error(f"Purge failed: {e}")
        sys.exit(1)
    success(f"Purged {total} applied-event markers older than {days} days")
