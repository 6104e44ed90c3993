"""Health check endpoints.

- Liveness: /health/live - the process answers
- Readiness: /health/ready - every store is reachable and the broker connected
"""

from __future__ import annotations

from fastapi import APIRouter, Response, status

from complaint_projections.app.dependencies import RuntimeDep  # noqa: TC001
from complaint_projections.core.database.base import utcnow
from complaint_projections.core.settings import get_app_settings

from .schemas import LivenessResponse, ReadinessResponse

router = APIRouter(prefix="/health", tags=["health"])


@router.get("/live", response_model=LivenessResponse, summary="Liveness probe")
async def liveness_check() -> LivenessResponse:
    return LivenessResponse(timestamp=utcnow(), service=get_app_settings().service_name)


@router.get(
    "/ready",
    response_model=ReadinessResponse,
    responses={503: {"description": "A store or the broker is unreachable"}},
    summary="Readiness probe",
)
async def readiness_check(response: Response, runtime: RuntimeDep) -> ReadinessResponse:
    checks = await runtime.stores.readiness()
    checks["broker"] = runtime.broker.is_connected

    ready = all(checks.values())
    if not ready:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return ReadinessResponse(ready=ready, timestamp=utcnow(), checks=checks)
