"""Background worker commands."""

from __future__ import annotations

import asyncio
import signal
import sys

import click

from complaint_projections.cli.utils import coro, error, info, success
from complaint_projections.runtime import Runtime


@click.group(name="worker")
def worker() -> None:
    """Projection worker commands."""


@worker.command(name="run")
@click.option("--owner-id", default=None, help="Lease owner identity (defaults to hostname:pid)")
@coro
async def run(owner_id: str | None) -> None:
    """Run the projector, outbox dispatcher, dead-letter drain and lag sampler.

    Stops on SIGINT or SIGTERM after in-flight batches finish.
    """
    runtime = Runtime.from_settings(owner_id=owner_id)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    try:
        await runtime.open()
        await runtime.start_workers()
        success(f"Workers running as {runtime.supervisor.owner_id} (consumer {runtime.consumer})")
        await stop.wait()
        info("Shutting down...")
    except Exception as e:
        error(f"Worker failed: {e}")
        sys.exit(1)
    finally:
        await runtime.close()
    success("Workers stopped")


@worker.command(name="dispatch-once")
@coro
async def dispatch_once() -> None:
    """Run a single outbox dispatch pass over every tenant."""
    runtime = Runtime.from_settings()
    try:
        await runtime.open()
        reports = await runtime.dispatcher.dispatch_once()
    except Exception as e:
        error(f"Dispatch failed: {e}")
        sys.exit(1)
    finally:
        await runtime.close()
    for report in reports:
        info(f"{report.tenant_id}: {report.published} published, {report.deferred} deferred, {report.failed} failed")
