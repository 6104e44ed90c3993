"""Health check response schemas."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class LivenessResponse(BaseModel):
    status: str = Field(default="alive")
    timestamp: datetime
    service: str


class ReadinessResponse(BaseModel):
    """Readiness of the service.

    Example:
        ```json
        {
            "ready": true,
            "timestamp": "2026-01-01T00:00:00Z",
            "checks": {"write": true, "read": true, "quarantine": true, "broker": true}
        }
        ```
    """

    ready: bool
    timestamp: datetime
    checks: dict[str, bool] = Field(default_factory=dict, description="Per-dependency reachability")
