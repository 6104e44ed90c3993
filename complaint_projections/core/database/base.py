"""Declarative bases and column helpers for the three stores.

Each store owns its own ``MetaData`` so tables are created only where they
belong:

- ``ControlBase``: shared, cross-tenant records on the write store (tenant
  registry, partition leases)
- ``TenantWriteBase``: tenant-owned write-side tables (outbox)
- ``TenantReadBase``: tenant-owned read-side tables (checkpoints, views)
- ``QuarantineBase``: the non tenant-partitioned dead-letter store

Tenant-owned tables are declared in the placeholder schema ``tenant``. No
such schema exists in any database, so a statement against a tenant table
only executes on a connection whose ``schema_translate_map`` rewrites the
placeholder to a resolved tenant namespace (see ``infra.tenancy``).
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import BigInteger, DateTime, Integer, MetaData
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator
from uuid_utils import uuid7

# Consistent naming convention for database constraints
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

# Placeholder schema of every tenant-owned table
TENANT_SCHEMA = "tenant"

# Autoincrementing 64-bit key that also works on SQLite
BigIntegerPK = BigInteger().with_variant(Integer(), "sqlite")


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(UTC)


def generate_uuid7() -> uuid.UUID:
    """Generate a UUID v7 (time-ordered) identifier as a stdlib UUID."""
    return uuid.UUID(str(uuid7()))


class UTCDateTime(TypeDecorator[datetime]):
    """Timezone-aware datetime that always round-trips as UTC.

    SQLite drops offsets on storage; this type normalises on the way in and
    re-attaches UTC on the way out so comparisons never mix naive and aware
    values.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class ControlBase(DeclarativeBase):
    """Shared registry tables on the write store."""

    metadata = MetaData(naming_convention=NAMING_CONVENTION)


class TenantWriteBase(DeclarativeBase):
    """Tenant-owned tables on the write store."""

    metadata = MetaData(naming_convention=NAMING_CONVENTION, schema=TENANT_SCHEMA)


class TenantReadBase(DeclarativeBase):
    """Tenant-owned tables on the read store."""

    metadata = MetaData(naming_convention=NAMING_CONVENTION, schema=TENANT_SCHEMA)


class QuarantineBase(DeclarativeBase):
    """Dead-letter tables on the quarantine store."""

    metadata = MetaData(naming_convention=NAMING_CONVENTION)


class TimestampMixin:
    """Creation and modification timestamps (UTC)."""

    __allow_unmapped__ = True

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utcnow,
        nullable=False,
        comment="Timestamp of record creation",
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
        comment="Timestamp of last update",
    )


__all__ = [
    "NAMING_CONVENTION",
    "TENANT_SCHEMA",
    "BigIntegerPK",
    "ControlBase",
    "QuarantineBase",
    "TenantReadBase",
    "TenantWriteBase",
    "TimestampMixin",
    "UTCDateTime",
    "generate_uuid7",
    "utcnow",
]
