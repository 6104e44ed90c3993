"""Operator endpoints.

Authorization of operators is enforced by the gateway in front of the
service; these routes are not tenant-scoped and must not be exposed to
tenant callers.
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Body, Query

from complaint_projections.app.dependencies import OperatorDep, RuntimeDep  # noqa: TC001
from complaint_projections.core.exceptions import DeadLetterNotFoundError
from complaint_projections.core.schemas.base import PaginatedResponse
from complaint_projections.infra.tenancy.router import validate_tenant_id
from complaint_projections.projections.dead_letters import DeadLetterStatus

from .schemas import (
    DeadLetterDetail,
    DeadLetterSummary,
    DiscardRequest,
    LagReportResponse,
    LeaseResponse,
    PartitionHealthResponse,
    PartitionsResponse,
)

router = APIRouter(prefix="/ops", tags=["operations"])


# =============================================================================
# Lag
# =============================================================================


@router.get("/lag", response_model=list[LagReportResponse], summary="Lag of every active tenant")
async def list_lag(
    runtime: RuntimeDep,
    consumer: str | None = Query(default=None, description="Consumer group (defaults to this service's)"),
) -> list[LagReportResponse]:
    reports = await runtime.lag.report_all(consumer or runtime.consumer)
    return [LagReportResponse.model_validate(report) for report in reports]


@router.get("/lag/{tenant_id}", response_model=LagReportResponse, summary="Lag of one tenant")
async def tenant_lag(
    tenant_id: str,
    runtime: RuntimeDep,
    consumer: str | None = Query(default=None),
) -> LagReportResponse:
    report = await runtime.lag.report(validate_tenant_id(tenant_id), consumer or runtime.consumer)
    return LagReportResponse.model_validate(report)


# =============================================================================
# Partitions
# =============================================================================


@router.get("/partitions", response_model=PartitionsResponse, summary="Partition health and leases")
async def partitions(runtime: RuntimeDep) -> PartitionsResponse:
    supervisor = runtime.supervisor
    leases = await runtime.leases.list(runtime.consumer)
    return PartitionsResponse(
        consumer=supervisor.consumer,
        owner_id=supervisor.owner_id,
        supervisor_running=supervisor.running,
        partitions=[PartitionHealthResponse.model_validate(health) for health in supervisor.health()],
        leases=[LeaseResponse.model_validate(lease) for lease in leases],
    )


# =============================================================================
# Dead letters
# =============================================================================


@router.get(
    "/dead-letters",
    response_model=PaginatedResponse[DeadLetterSummary],
    summary="List dead letters",
)
async def list_dead_letters(
    runtime: RuntimeDep,
    tenant_id: str | None = Query(default=None, max_length=64),
    consumer: str | None = Query(default=None, max_length=100),
    status: DeadLetterStatus | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> PaginatedResponse[DeadLetterSummary]:
    entries, total = await runtime.dead_letters.list(
        tenant_id=tenant_id,
        consumer=consumer,
        status=status,
        limit=limit,
        offset=offset,
    )
    return PaginatedResponse[DeadLetterSummary].create(
        [DeadLetterSummary.model_validate(entry) for entry in entries],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/dead-letters/{entry_id}", response_model=DeadLetterDetail, summary="Get one dead letter")
async def get_dead_letter(entry_id: uuid.UUID, runtime: RuntimeDep) -> DeadLetterDetail:
    entry = await runtime.dead_letters.get(entry_id)
    if entry is None:
        raise DeadLetterNotFoundError(f"Dead letter {entry_id} not found", details={"entry_id": str(entry_id)})
    return DeadLetterDetail.model_validate(entry)


@router.post(
    "/dead-letters/{entry_id}/replay",
    response_model=DeadLetterSummary,
    summary="Replay a dead letter",
    description="Re-publishes the original message to its original topic",
)
async def replay_dead_letter(entry_id: uuid.UUID, runtime: RuntimeDep, operator: OperatorDep) -> DeadLetterSummary:
    entry = await runtime.dead_letter_manager.replay(entry_id, operator=operator)
    return DeadLetterSummary.model_validate(entry)


@router.post(
    "/dead-letters/{entry_id}/discard",
    response_model=DeadLetterSummary,
    summary="Discard a dead letter",
)
async def discard_dead_letter(
    entry_id: uuid.UUID,
    runtime: RuntimeDep,
    operator: OperatorDep,
    request: DiscardRequest | None = Body(default=None),
) -> DeadLetterSummary:
    entry = await runtime.dead_letter_manager.discard(
        entry_id,
        operator=operator,
        note=request.note if request else None,
    )
    return DeadLetterSummary.model_validate(entry)
