"""Tenant registry commands."""

from __future__ import annotations

import sys

import click

from complaint_projections.cli.utils import coro, error, info, open_runtime, print_json, print_table, success, warning
from complaint_projections.infra.tenancy.models import IsolationStrategy


@click.group(name="tenants")
def tenants() -> None:
    """Provision, list and deactivate tenants."""


@tenants.command(name="provision")
@click.argument("tenant_id")
@click.option(
    "--strategy",
    type=click.Choice([s.value for s in IsolationStrategy]),
    default=None,
    help="Isolation strategy (defaults to TENANCY_DEFAULT_STRATEGY)",
)
@coro
async def provision(tenant_id: str, strategy: str | None) -> None:
    """Register TENANT_ID and create its namespaces."""
    try:
        async with open_runtime(create_tables=True) as runtime:
            handle = await runtime.router.provision(tenant_id, strategy)
    except ValueError as e:
        error(str(e))
        sys.exit(1)
    except Exception as e:
        error(f"Provisioning failed: {e}")
        sys.exit(1)
    success(f"Tenant {handle.tenant_id} provisioned ({handle.strategy})")
    if handle.read_schema:
        info(f"Schema: {handle.read_schema}")


@tenants.command(name="list")
@click.option("--all", "include_inactive", is_flag=True, help="Include deactivated tenants")
@click.option("--format", "output_format", type=click.Choice(["table", "json"]), default="table")
@coro
async def list_tenants(include_inactive: bool, output_format: str) -> None:
    """List registered tenants."""
    try:
        async with open_runtime() as runtime:
            rows = await runtime.router.list_tenants(active_only=not include_inactive)
    except Exception as e:
        error(f"Failed to list tenants: {e}")
        sys.exit(1)

    data = [
        {
            "tenant_id": row.tenant_id,
            "strategy": row.strategy,
            "schema": row.read_schema,
            "active": row.is_active,
            "created_at": row.created_at,
        }
        for row in rows
    ]
    if output_format == "json":
        print_json(data)
    elif not data:
        warning("No tenants registered")
    else:
        print_table(data, ["tenant_id", "strategy", "schema", "active", "created_at"])


@tenants.command(name="deactivate")
@click.argument("tenant_id")
@click.confirmation_option(prompt="Deactivated tenants can no longer be read or projected. Continue?")
@coro
async def deactivate(tenant_id: str) -> None:
    """Deactivate TENANT_ID; its data stays in place."""
    try:
        async with open_runtime() as runtime:
            found = await runtime.router.deactivate(tenant_id)
    except Exception as e:
        error(f"Deactivation failed: {e}")
        sys.exit(1)
    if not found:
        error(f"Tenant {tenant_id} is not registered")
        sys.exit(1)
    success(f"Tenant {tenant_id} deactivated")
