"""Router registry and setup."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from complaint_projections.core.settings import get_app_settings
from complaint_projections.features.health.router import router as health_router
from complaint_projections.features.metrics.router import router as metrics_router
from complaint_projections.features.ops.router import router as ops_router
from complaint_projections.features.stats.router import router as stats_router

if TYPE_CHECKING:
    from fastapi import FastAPI

    from complaint_projections.core.settings.app import AppSettings

logger = logging.getLogger(__name__)


def setup_routers(app: FastAPI, app_settings: AppSettings | None = None) -> None:
    """Register every feature router with the application."""
    app_settings = app_settings or get_app_settings()
    api_prefix = app_settings.api_prefix

    # Metrics stay at /metrics for scrapers
    app.include_router(metrics_router)

    app.include_router(stats_router, prefix=api_prefix)
    app.include_router(ops_router, prefix=api_prefix)
    app.include_router(health_router, prefix=api_prefix)
    logger.debug("Routers registered", extra={"api_prefix": api_prefix})
