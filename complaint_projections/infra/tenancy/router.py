"""Tenant schema router.

Resolves a tenant identifier to its namespace on the write and read stores
and hands out sessions bound to that namespace. Binding is done with
SQLAlchemy's ``schema_translate_map``: tenant tables are declared in the
placeholder schema ``tenant`` which exists nowhere, so any statement issued
on a session that did not come from ``within`` fails instead of silently
reading or writing a default namespace.

Example:
    router = TenantRouter(stores)
    async with router.within("acme", StoreKind.READ) as scope:
        rows = await scope.session.execute(
            select(ComplaintStatusCount).where(ComplaintStatusCount.tenant_id == scope.tenant_id)
        )
"""

from __future__ import annotations

import logging
import re
import time
from collections import OrderedDict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING

from sqlalchemy import select, update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.schema import CreateSchema

from complaint_projections.core.database.base import TENANT_SCHEMA, TenantReadBase, TenantWriteBase
from complaint_projections.core.events.envelope import TENANT_ID_PATTERN
from complaint_projections.core.exceptions import (
    MissingTenantError,
    NamespaceUnavailableError,
    TenantMismatchError,
    UnknownTenantError,
)
from complaint_projections.infra.database.session import StoreKind
from complaint_projections.infra.logging.config import get_security_logger

from .models import IsolationStrategy, TenantNamespace

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Callable

    from complaint_projections.infra.database.session import StoreRegistry

logger = logging.getLogger(__name__)
security_logger = get_security_logger()

_TENANT_ID_RE = re.compile(TENANT_ID_PATTERN)

# PostgreSQL identifier limit
_MAX_SCHEMA_LENGTH = 63


def validate_tenant_id(tenant_id: str | None) -> str:
    """Return ``tenant_id`` if it is present and well formed.

    Raises:
        MissingTenantError: Absent or blank.
        UnknownTenantError: Contains characters outside ``[A-Za-z0-9_-]``.
    """
    if tenant_id is None or not tenant_id.strip():
        raise MissingTenantError("Tenant identifier is required")
    if not _TENANT_ID_RE.match(tenant_id):
        raise UnknownTenantError("Tenant identifier is malformed", tenant_id=tenant_id[:64])
    return tenant_id


@dataclass(frozen=True, slots=True)
class NamespaceHandle:
    """Resolved physical namespaces of one tenant."""

    tenant_id: str
    strategy: IsolationStrategy
    write_schema: str | None
    read_schema: str | None

    def schema_for(self, store: StoreKind) -> str | None:
        if store is StoreKind.WRITE:
            return self.write_schema
        if store is StoreKind.READ:
            return self.read_schema
        msg = f"Store {store} is not tenant-partitioned"
        raise ValueError(msg)

    def translate_map(self, store: StoreKind) -> dict[str, str | None]:
        return {TENANT_SCHEMA: self.schema_for(store)}

    @classmethod
    def from_model(cls, row: TenantNamespace) -> NamespaceHandle:
        return cls(
            tenant_id=row.tenant_id,
            strategy=IsolationStrategy(row.strategy),
            write_schema=row.write_schema,
            read_schema=row.read_schema,
        )


class TenantScope:
    """A session bound to exactly one tenant's namespace.

    Every repository in the engine takes a scope rather than a bare session
    and filters by ``scope.tenant_id``; the translated engine behind the
    session confines it to the tenant's namespace as well.
    """

    __slots__ = ("dialect_name", "handle", "session", "store")

    def __init__(
        self,
        handle: NamespaceHandle,
        store: StoreKind,
        session: AsyncSession,
        dialect_name: str,
    ) -> None:
        self.handle = handle
        self.store = store
        self.session = session
        self.dialect_name = dialect_name

    @property
    def tenant_id(self) -> str:
        return self.handle.tenant_id

    def assert_tenant(self, actual: str | None, *, event_id: str | None = None) -> None:
        """Refuse data that carries another tenant's identifier."""
        TenantRouter.assert_tenant(self.tenant_id, actual, event_id=event_id)

    async def commit(self) -> None:
        await self.session.commit()

    async def rollback(self) -> None:
        await self.session.rollback()

    def __repr__(self) -> str:
        return f"TenantScope(tenant_id={self.tenant_id!r}, store={self.store.value!r})"


class TenantRouter:
    """Resolve tenants to namespaces and open tenant-bound sessions.

    Args:
        stores: Store registry; the write store hosts the tenant registry.
        cache_ttl: Seconds a resolved mapping is reused (0 disables caching).
        cache_max_entries: Bound on cached mappings (least recently used evicted).
        schema_prefix: Prefix of per-tenant schemas for the schema strategy.
        default_strategy: Strategy used by ``provision`` when none is given.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        stores: StoreRegistry,
        *,
        cache_ttl: float = 60.0,
        cache_max_entries: int = 10_000,
        schema_prefix: str = "tenant_",
        default_strategy: IsolationStrategy | str = IsolationStrategy.SHARED,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._stores = stores
        self._cache_ttl = cache_ttl
        self._cache_max_entries = cache_max_entries
        self._schema_prefix = schema_prefix
        self._default_strategy = IsolationStrategy(default_strategy)
        self._clock = clock
        self._cache: OrderedDict[str, tuple[NamespaceHandle, float]] = OrderedDict()

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def resolve(self, tenant_id: str | None) -> NamespaceHandle:
        """Resolve ``tenant_id`` to its namespace handle.

        Raises:
            MissingTenantError: No tenant given.
            UnknownTenantError: Malformed, unregistered or inactive tenant.
            NamespaceUnavailableError: The registry could not be read.
        """
        handle, _ = await self._resolve(tenant_id)
        return handle

    async def _resolve(self, tenant_id: str | None) -> tuple[NamespaceHandle, bool]:
        """Return the handle and whether it was just read from the registry."""
        try:
            tenant_id = validate_tenant_id(tenant_id)
        except (MissingTenantError, UnknownTenantError) as exc:
            security_logger.warning("Tenant resolution refused", extra=exc.to_log_extra())
            raise

        cached = self._cache_get(tenant_id)
        if cached is not None:
            return cached, False

        row = await self._load(tenant_id)
        if row is None or not row.is_active:
            self.invalidate(tenant_id)
            security_logger.warning(
                "Tenant resolution refused",
                extra={"tenant_id": tenant_id, "reason": "unknown" if row is None else "inactive"},
            )
            raise UnknownTenantError(f"Tenant {tenant_id!r} is not registered or inactive", tenant_id=tenant_id)

        handle = NamespaceHandle.from_model(row)
        self._cache_put(handle)
        return handle, True

    async def _load(self, tenant_id: str) -> TenantNamespace | None:
        try:
            async with self._stores.write.session() as session:
                return await session.get(TenantNamespace, tenant_id)
        except (OSError, DBAPIError) as exc:
            msg = f"Tenant registry unavailable while resolving {tenant_id!r}"
            raise NamespaceUnavailableError(msg, tenant_id=tenant_id) from exc

    async def _is_active(self, tenant_id: str) -> bool:
        try:
            async with self._stores.write.session() as session:
                active = await session.scalar(
                    select(TenantNamespace.is_active).where(TenantNamespace.tenant_id == tenant_id)
                )
        except (OSError, DBAPIError) as exc:
            msg = f"Tenant registry unavailable while validating {tenant_id!r}"
            raise NamespaceUnavailableError(msg, tenant_id=tenant_id) from exc
        return bool(active)

    def _cache_get(self, tenant_id: str) -> NamespaceHandle | None:
        if self._cache_ttl <= 0:
            return None
        entry = self._cache.get(tenant_id)
        if entry is None:
            return None
        handle, expires_at = entry
        if self._clock() >= expires_at:
            del self._cache[tenant_id]
            return None
        self._cache.move_to_end(tenant_id)
        return handle

    def _cache_put(self, handle: NamespaceHandle) -> None:
        if self._cache_ttl <= 0:
            return
        self._cache[handle.tenant_id] = (handle, self._clock() + self._cache_ttl)
        self._cache.move_to_end(handle.tenant_id)
        while len(self._cache) > self._cache_max_entries:
            self._cache.popitem(last=False)

    def invalidate(self, tenant_id: str | None = None) -> None:
        """Forget one cached mapping, or all of them."""
        if tenant_id is None:
            self._cache.clear()
        else:
            self._cache.pop(tenant_id, None)

    # ------------------------------------------------------------------
    # Scoped sessions
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def within(
        self,
        tenant_id: str | None,
        store: StoreKind = StoreKind.READ,
    ) -> AsyncGenerator[TenantScope]:
        """Open a session bound to ``tenant_id``'s namespace on ``store``.

        The tenant's registration is re-validated on every call, even when
        the namespace mapping comes from cache. The session is rolled back on
        error and always closed; callers commit explicitly.

        Raises:
            MissingTenantError, UnknownTenantError: Fails closed before any
                session exists.
            NamespaceUnavailableError: The namespace could not be reached.
        """
        if store is StoreKind.QUARANTINE:
            msg = "The quarantine store is not tenant-partitioned"
            raise ValueError(msg)

        handle, fresh = await self._resolve(tenant_id)
        if not fresh and not await self._is_active(handle.tenant_id):
            self.invalidate(handle.tenant_id)
            security_logger.warning(
                "Tenant resolution refused",
                extra={"tenant_id": handle.tenant_id, "reason": "deactivated"},
            )
            raise UnknownTenantError(f"Tenant {handle.tenant_id!r} is no longer active", tenant_id=handle.tenant_id)
        self.assert_tenant(handle.tenant_id, tenant_id)

        database = self._stores.get(store)
        engine = database.translated_engine(handle.translate_map(store))
        session = AsyncSession(bind=engine, expire_on_commit=False, autoflush=False)
        try:
            try:
                await session.connection()
            except (OSError, DBAPIError) as exc:
                msg = f"Namespace of tenant {handle.tenant_id!r} on the {store} store is unreachable"
                raise NamespaceUnavailableError(msg, tenant_id=handle.tenant_id) from exc
            yield TenantScope(handle, store, session, database.dialect_name)
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    @staticmethod
    def assert_tenant(expected: str, actual: str | None, *, event_id: str | None = None) -> None:
        """Defense-in-depth check that data belongs to the scope's tenant.

        Raises:
            MissingTenantError: ``actual`` is absent.
            TenantMismatchError: ``actual`` differs from ``expected``.
        """
        if not actual:
            security_logger.error(
                "Isolation violation: data without tenant identifier",
                extra={"expected_tenant": expected, "event_id": event_id},
            )
            raise MissingTenantError("Data carries no tenant identifier", tenant_id=expected, event_id=event_id)
        if actual != expected:
            error = TenantMismatchError(expected, actual, event_id=event_id)
            security_logger.error("Isolation violation: tenant mismatch", extra=error.to_log_extra())
            raise error

    # ------------------------------------------------------------------
    # Registry management
    # ------------------------------------------------------------------

    async def provision(
        self,
        tenant_id: str,
        strategy: IsolationStrategy | str | None = None,
    ) -> NamespaceHandle:
        """Register a tenant and create its namespaces and tables.

        Idempotent: provisioning an existing tenant re-ensures its tables and
        reactivates it. The registry row is committed only after the
        namespaces exist, so a resolvable tenant always has its tables.

        Raises:
            ValueError: Strategy unsupported by a store, or a tenant
                re-provisioned with a different strategy.
        """
        tenant_id = validate_tenant_id(tenant_id)
        chosen = IsolationStrategy(strategy) if strategy is not None else self._default_strategy
        _load_tenant_models()

        async with self._stores.write.session() as session:
            existing = await session.get(TenantNamespace, tenant_id)
        if existing is not None and IsolationStrategy(existing.strategy) is not chosen:
            msg = f"Tenant {tenant_id!r} already uses the {existing.strategy} strategy"
            raise ValueError(msg)

        if existing is not None:
            handle = NamespaceHandle.from_model(existing)
        else:
            schema = self._schema_name(tenant_id) if chosen is IsolationStrategy.SCHEMA else None
            handle = NamespaceHandle(
                tenant_id=tenant_id,
                strategy=chosen,
                write_schema=schema,
                read_schema=schema,
            )

        await self._create_namespace(handle, StoreKind.WRITE)
        await self._create_namespace(handle, StoreKind.READ)

        async with self._stores.write.session() as session:
            row = await session.get(TenantNamespace, tenant_id)
            if row is None:
                session.add(
                    TenantNamespace(
                        tenant_id=tenant_id,
                        strategy=chosen.value,
                        write_schema=handle.write_schema,
                        read_schema=handle.read_schema,
                        is_active=True,
                    )
                )
            else:
                row.is_active = True
            await session.commit()

        self.invalidate(tenant_id)
        logger.info(
            "Tenant provisioned",
            extra={"tenant_id": tenant_id, "strategy": chosen.value, "schema": handle.read_schema},
        )
        return handle

    async def _create_namespace(self, handle: NamespaceHandle, store: StoreKind) -> None:
        database = self._stores.get(store)
        schema = handle.schema_for(store)
        if schema is not None and not database.supports_schemas:
            msg = f"The {store} store ({database.dialect_name}) cannot host per-tenant schemas"
            raise ValueError(msg)

        metadata = TenantWriteBase.metadata if store is StoreKind.WRITE else TenantReadBase.metadata
        engine = database.translated_engine(handle.translate_map(store))
        async with engine.begin() as conn:
            if schema is not None:
                await conn.execute(CreateSchema(schema, if_not_exists=True))
            await conn.run_sync(metadata.create_all)

    def _schema_name(self, tenant_id: str) -> str:
        schema = f"{self._schema_prefix}{tenant_id.lower()}"
        if len(schema) > _MAX_SCHEMA_LENGTH:
            msg = f"Tenant id {tenant_id!r} is too long for a dedicated schema"
            raise ValueError(msg)
        return schema

    async def deactivate(self, tenant_id: str) -> bool:
        """Mark a tenant inactive; every later resolution fails closed.

        Returns:
            True if the tenant existed.
        """
        tenant_id = validate_tenant_id(tenant_id)
        async with self._stores.write.session() as session:
            result = await session.execute(
                update(TenantNamespace)
                .where(TenantNamespace.tenant_id == tenant_id)
                .values(is_active=False)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        self.invalidate(tenant_id)
        found = result.rowcount > 0
        logger.info("Tenant deactivated", extra={"tenant_id": tenant_id, "found": found})
        return found

    async def list_tenants(self, *, active_only: bool = True) -> list[TenantNamespace]:
        """List registered tenants ordered by id."""
        stmt = select(TenantNamespace).order_by(TenantNamespace.tenant_id)
        if active_only:
            stmt = stmt.where(TenantNamespace.is_active.is_(True))
        try:
            async with self._stores.write.session() as session:
                result = await session.execute(stmt)
                return list(result.scalars().all())
        except (OSError, DBAPIError) as exc:
            raise NamespaceUnavailableError("Tenant registry unavailable") from exc


def _load_tenant_models() -> None:
    """Import every tenant-owned model so its table is on the metadata."""
    from complaint_projections.infra.events.outbox import models as _outbox  # noqa: F401
    from complaint_projections.projections import models as _projections  # noqa: F401


__all__ = [
    "NamespaceHandle",
    "TenantRouter",
    "TenantScope",
    "validate_tenant_id",
]
