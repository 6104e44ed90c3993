"""FastAPI dependencies.

The caller's tenant comes from the header set by the authenticating gateway
(``X-Tenant-ID`` by default). Read-model routes take the tenant only from
there, never from a path or query parameter, so a caller cannot address
another tenant's views.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Header, Request

from complaint_projections.core.exceptions import MissingTenantError
from complaint_projections.core.settings import get_app_settings
from complaint_projections.infra.tenancy.router import validate_tenant_id
from complaint_projections.runtime import Runtime


def get_runtime(request: Request) -> Runtime:
    """Return the runtime built by the application lifespan."""
    return request.app.state.runtime


RuntimeDep = Annotated[Runtime, Depends(get_runtime)]


def get_tenant_id(request: Request) -> str:
    """Authenticated tenant of the caller.

    Raises:
        MissingTenantError: The tenant header is absent.
        UnknownTenantError: The header value is not a valid tenant id.
    """
    header = get_app_settings().tenant_header
    tenant_id = request.headers.get(header)
    if not tenant_id:
        raise MissingTenantError(f"Missing {header} header")
    return validate_tenant_id(tenant_id)


TenantIdDep = Annotated[str, Depends(get_tenant_id)]


def get_operator(x_operator: Annotated[str | None, Header()] = None) -> str | None:
    """Operator identity recorded on dead-letter actions."""
    return x_operator


OperatorDep = Annotated[str | None, Depends(get_operator)]

__all__ = [
    "OperatorDep",
    "RuntimeDep",
    "TenantIdDep",
    "get_operator",
    "get_runtime",
    "get_tenant_id",
]
