"""FastAPI application factory."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import FastAPI

from complaint_projections.app.exception_handlers import configure_exception_handlers
from complaint_projections.app.lifespan import lifespan
from complaint_projections.app.router import setup_routers
from complaint_projections.core.settings import get_app_settings

if TYPE_CHECKING:
    from complaint_projections.runtime import Runtime


def create_app(runtime: Runtime | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        runtime: Pre-built runtime to serve from. When omitted the lifespan
            builds one from settings.

    Returns:
        Configured FastAPI application instance.
    """
    app_settings = get_app_settings()

    app = FastAPI(
        title=app_settings.title,
        version=app_settings.version,
        debug=app_settings.debug,
        lifespan=lifespan,
    )
    app.state.runtime = runtime

    configure_exception_handlers(app)
    setup_routers(app, app_settings)
    return app
