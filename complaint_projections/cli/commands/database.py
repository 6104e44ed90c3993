"""Store management commands."""

from __future__ import annotations

import sys

import click

from complaint_projections.cli.utils import coro, error, header, info, open_runtime, success


@click.group(name="db")
def db() -> None:
    """Database store commands."""


@db.command(name="init")
@coro
async def init_db() -> None:
    """Create the shared registry, lease and quarantine tables."""
    info("Creating shared tables...")
    try:
        async with open_runtime(create_tables=True):
            pass
    except Exception as e:
        error(f"Failed to initialize stores: {e}")
        sys.exit(1)
    success("Shared tables are in place")


@db.command(name="ping")
@coro
async def ping() -> None:
    """Check that the write, read and quarantine stores answer."""
    try:
        async with open_runtime() as runtime:
            readiness = await runtime.stores.readiness()
    except Exception as e:
        error(f"Failed to reach stores: {e}")
        sys.exit(1)

    header("Store readiness")
    for store, ready in readiness.items():
        if ready:
            success(store)
        else:
            error(store)
    if not all(readiness.values()):
        sys.exit(1)
