"""Database model foundations."""

from __future__ import annotations

from .base import (
    TENANT_SCHEMA,
    BigIntegerPK,
    ControlBase,
    QuarantineBase,
    TenantReadBase,
    TenantWriteBase,
    TimestampMixin,
    UTCDateTime,
    generate_uuid7,
    utcnow,
)

__all__ = [
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
