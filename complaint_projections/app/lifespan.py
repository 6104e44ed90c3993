"""Application lifespan management.

Startup:
1. Logging
2. Runtime (stores, shared tables, broker), unless one was injected
3. Embedded workers, when ``APP_EMBEDDED_WORKERS`` is set

Shutdown runs in reverse. An injected runtime is left for its owner to close.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import TYPE_CHECKING

from complaint_projections.core.settings import get_app_settings, get_logging_settings
from complaint_projections.infra.logging.config import setup_logging
from complaint_projections.runtime import Runtime

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from fastapi import FastAPI

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    app_settings = get_app_settings()
    setup_logging(get_logging_settings())
    logger.info(
        "Application starting",
        extra={"service": app_settings.service_name, "environment": app_settings.environment},
    )

    runtime: Runtime | None = getattr(app.state, "runtime", None)
    owned = runtime is None
    if runtime is None:
        runtime = Runtime.from_settings()
        await runtime.open()
        app.state.runtime = runtime

    if app_settings.embedded_workers:
        await runtime.start_workers()

    logger.info(
        "Application startup complete",
        extra={
            "service": app_settings.service_name,
            "consumer": runtime.consumer,
            "embedded_workers": app_settings.embedded_workers,
        },
    )

    yield

    logger.info("Application shutting down", extra={"service": app_settings.service_name})
    await runtime.stop_workers()
    if owned:
        await runtime.close()
        app.state.runtime = None
    logger.info("Application shutdown complete")


__all__ = ["lifespan"]
