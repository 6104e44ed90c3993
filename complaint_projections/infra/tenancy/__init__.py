"""Tenant registry and namespace routing."""

from __future__ import annotations

from .models import IsolationStrategy, TenantNamespace
from .router import NamespaceHandle, TenantRouter, TenantScope, validate_tenant_id

__all__ = [
    "IsolationStrategy",
    "NamespaceHandle",
    "TenantNamespace",
    "TenantRouter",
    "TenantScope",
    "validate_tenant_id",
]
