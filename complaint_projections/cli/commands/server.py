"""API server command."""

from __future__ import annotations

import click
import uvicorn

from complaint_projections.core.settings import get_app_settings


@click.command(name="serve")
@click.option("--host", default=None, help="Defaults to APP_HOST")
@click.option("--port", type=int, default=None, help="Defaults to APP_PORT")
@click.option("--reload", is_flag=True, help="Reload on code changes (development only)")
def serve(host: str | None, port: int | None, reload: bool) -> None:
    """Serve the read-model and operator API."""
    settings = get_app_settings()
    uvicorn.run(
        "complaint_projections.app.main:create_app",
        factory=True,
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
        log_config=None,
    )
