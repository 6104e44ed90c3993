"""Tenant registry model.

The registry is the one deliberately cross-tenant table: it must be readable
without a tenant scope so namespaces can be resolved at all.
"""

from __future__ import annotations

from enum import StrEnum

from sqlalchemy import Boolean, String
from sqlalchemy.orm import Mapped, mapped_column

from complaint_projections.core.database.base import ControlBase, TimestampMixin


class IsolationStrategy(StrEnum):
    """How a tenant's rows are physically separated.

    - SHARED: tenant tables live in the store's default schema; every
      statement is filtered by ``tenant_id``.
    - SCHEMA: each tenant owns a dedicated schema per store (PostgreSQL).
    """

    SHARED = "shared"
    SCHEMA = "schema"


class TenantNamespace(ControlBase, TimestampMixin):
    """Maps a tenant to its write-side and read-side namespaces.

    Attributes:
        tenant_id: Logical tenant identifier.
        strategy: IsolationStrategy value.
        write_schema: Schema on the write store (None means default schema).
        read_schema: Schema on the read store (None means default schema).
        is_active: Inactive tenants fail every resolution.
    """

    __tablename__ = "tenant_namespaces"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True, comment="Tenant identifier")
    strategy: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=IsolationStrategy.SHARED.value,
        comment="Isolation strategy",
    )
    write_schema: Mapped[str | None] = mapped_column(
        String(63),
        nullable=True,
        comment="Write-store schema (NULL = default schema)",
    )
    read_schema: Mapped[str | None] = mapped_column(
        String(63),
        nullable=True,
        comment="Read-store schema (NULL = default schema)",
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        index=True,
        comment="Whether the tenant may be resolved",
    )

    def __repr__(self) -> str:
        return (
            f"TenantNamespace(tenant_id={self.tenant_id!r}, strategy={self.strategy!r}, "
            f"active={self.is_active})"
        )


__all__ = ["IsolationStrategy", "TenantNamespace"]
