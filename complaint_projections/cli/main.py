"""Main CLI entry point for complaint-projections.

Provides tenant provisioning, worker, dead-letter, lag and outbox commands.
"""

from __future__ import annotations

import click

from complaint_projections.cli.commands.database import db
from complaint_projections.cli.commands.dead_letters import dlq
from complaint_projections.cli.commands.lag import lag
from complaint_projections.cli.commands.maintenance import maintenance
from complaint_projections.cli.commands.outbox import outbox
from complaint_projections.cli.commands.server import serve
from complaint_projections.cli.commands.tenants import tenants
from complaint_projections.cli.commands.worker import worker
from complaint_projections.infra.logging.config import setup_logging


@click.group()
@click.version_option(package_name="complaint-projections", prog_name="complaint-projections")
@click.pass_context
def cli(ctx: click.Context) -> None:
    """Complaint projections: multi-tenant read models over complaint events."""
    ctx.ensure_object(dict)


cli.add_command(db)
cli.add_command(tenants)
cli.add_command(worker)
cli.add_command(dlq)
cli.add_command(lag)
cli.add_command(outbox)
cli.add_command(maintenance)
cli.add_command(serve)


def main() -> None:
    """Main entry point for the CLI."""
    setup_logging()
    cli(obj={})


if __name__ == "__main__":
    main()
