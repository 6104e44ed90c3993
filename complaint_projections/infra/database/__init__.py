"""Database engines and sessions."""

from __future__ import annotations

from .session import Database, StoreKind, StoreRegistry

__all__ = ["Database", "StoreKind", "StoreRegistry"]
