"""Database engines and sessions for the write, read and quarantine stores.

Each store is a ``Database``: one async engine, one session factory and a
small cache of schema-translated engines used by the tenant router. Engines
for the same URL are never shared between stores so that pool sizing and
metrics stay per store.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from sqlalchemy import event, text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from complaint_projections.core.database.base import ControlBase, QuarantineBase

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from complaint_projections.core.settings.database import DatabaseSettings

logger = logging.getLogger(__name__)

SUPPORTED_DIALECTS = ("postgresql", "sqlite")


class StoreKind(StrEnum):
    """Logical stores the engine persists to."""

    WRITE = "write"
    READ = "read"
    QUARANTINE = "quarantine"


class Database:
    """One logical store: engine, session factory and translated engines.

    Args:
        url: Async SQLAlchemy URL.
        name: Store name used in logs.
        pool_size: Pool size (ignored by SQLite).
        max_overflow: Pool overflow (ignored by SQLite).
        pool_timeout: Seconds to wait for a pooled connection.
        pool_recycle: Recycle connections after N seconds.
        pool_pre_ping: Validate connections on checkout.
        echo: Log emitted SQL.
        sqlite_busy_timeout: Seconds a SQLite writer waits for the lock.

    Raises:
        ValueError: The URL names a backend the views cannot upsert into.

    Example:
        db = Database("sqlite+aiosqlite:///./read.db", name="read")
        async with db.session() as session:
            await session.execute(text("SELECT 1"))
        await db.dispose()
    """

    def __init__(
        self,
        url: str,
        *,
        name: str,
        pool_size: int = 10,
        max_overflow: int = 10,
        pool_timeout: float = 30.0,
        pool_recycle: int = 1800,
        pool_pre_ping: bool = True,
        echo: bool = False,
        sqlite_busy_timeout: float = 30.0,
    ) -> None:
        self.name = name
        self.url = make_url(url)
        self.dialect_name = self.url.get_backend_name()
        if self.dialect_name not in SUPPORTED_DIALECTS:
            msg = f"The {name} store uses {self.dialect_name}; supported backends are {', '.join(SUPPORTED_DIALECTS)}"
            raise ValueError(msg)

        engine_kwargs: dict[str, Any] = {"echo": echo, "pool_pre_ping": pool_pre_ping}
        if self.is_sqlite:
            engine_kwargs["connect_args"] = {"timeout": sqlite_busy_timeout}
        else:
            engine_kwargs.update(
                pool_size=pool_size,
                max_overflow=max_overflow,
                pool_timeout=pool_timeout,
                pool_recycle=pool_recycle,
            )

        self.engine: AsyncEngine = create_async_engine(self.url, **engine_kwargs)
        if self.is_sqlite:
            _install_sqlite_write_locking(self.engine)

        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        self._translated: dict[tuple[tuple[str, str | None], ...], AsyncEngine] = {}

    @property
    def is_sqlite(self) -> bool:
        return self.dialect_name == "sqlite"

    @property
    def supports_schemas(self) -> bool:
        """True when the backend can host one schema per tenant."""
        return self.dialect_name == "postgresql"

    def translated_engine(self, schema_map: dict[str, str | None]) -> AsyncEngine:
        """Return an engine view whose statements rewrite schemas per ``schema_map``.

        Views share this store's pool; they are cached per mapping.
        """
        key = tuple(sorted(schema_map.items()))
        engine = self._translated.get(key)
        if engine is None:
            engine = self.engine.execution_options(schema_translate_map=dict(schema_map))
            self._translated[key] = engine
        return engine

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession]:
        """Open a session on the untranslated engine.

        Untranslated sessions can only address shared tables (tenant registry,
        leases, dead letters); tenant tables require ``TenantRouter.within``.

        Yields:
            Database session that is rolled back on error and always closed.
        """
        async with self.session_factory() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    async def ping(self) -> None:
        """Run ``SELECT 1``; connection errors propagate."""
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

    async def is_reachable(self) -> bool:
        """Single-shot connectivity probe for readiness checks."""
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except (OSError, DBAPIError):
            logger.warning("Store unreachable", extra={"store": self.name}, exc_info=True)
            return False
        return True

    async def dispose(self) -> None:
        """Close every pooled connection."""
        self._translated.clear()
        await self.engine.dispose()

    def __repr__(self) -> str:
        return f"Database(name={self.name!r}, url={self.url.render_as_string(hide_password=True)!r})"


def _install_sqlite_write_locking(engine: AsyncEngine) -> None:
    """Take the SQLite write lock at BEGIN.

    Deferred transactions that read and then write fail immediately with
    SQLITE_BUSY when another writer holds the lock; BEGIN IMMEDIATE makes
    them wait on the busy timeout instead.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
        _ = connection_record
        # Let SQLAlchemy emit BEGIN itself
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


@dataclass(slots=True)
class StoreRegistry:
    """The three stores the engine persists to."""

    write: Database
    read: Database
    quarantine: Database

    @classmethod
    def from_settings(cls, settings: DatabaseSettings) -> StoreRegistry:
        common: dict[str, Any] = {
            "pool_size": settings.pool_size,
            "max_overflow": settings.max_overflow,
            "pool_timeout": settings.pool_timeout,
            "pool_recycle": settings.pool_recycle,
            "pool_pre_ping": settings.pool_pre_ping,
            "echo": settings.echo,
            "sqlite_busy_timeout": settings.sqlite_busy_timeout,
        }
        return cls(
            write=Database(settings.write_url.get_secret_value(), name=StoreKind.WRITE, **common),
            read=Database(settings.read_url.get_secret_value(), name=StoreKind.READ, **common),
            quarantine=Database(
                settings.quarantine_url.get_secret_value(), name=StoreKind.QUARANTINE, **common
            ),
        )

    def get(self, kind: StoreKind) -> Database:
        return {
            StoreKind.WRITE: self.write,
            StoreKind.READ: self.read,
            StoreKind.QUARANTINE: self.quarantine,
        }[kind]

    async def init_shared_tables(self) -> None:
        """Create the shared (non tenant-owned) tables if missing.

        Tenant tables are created per namespace by ``TenantRouter.provision``.
        """
        # Register every shared model on its metadata
        from complaint_projections.infra.tenancy import models as _tenancy_models  # noqa: F401
        from complaint_projections.projections import dead_letters as _dead_letters  # noqa: F401
        from complaint_projections.projections import leases as _leases  # noqa: F401

        async with self.write.engine.begin() as conn:
            await conn.run_sync(ControlBase.metadata.create_all)
        async with self.quarantine.engine.begin() as conn:
            await conn.run_sync(QuarantineBase.metadata.create_all)
        logger.info("Shared tables ensured", extra={"stores": ["write", "quarantine"]})

    async def ping_all(self) -> None:
        for database in (self.write, self.read, self.quarantine):
            await database.ping()

    async def readiness(self) -> dict[str, bool]:
        return {
            StoreKind.WRITE.value: await self.write.is_reachable(),
            StoreKind.READ.value: await self.read.is_reachable(),
            StoreKind.QUARANTINE.value: await self.quarantine.is_reachable(),
        }

    async def dispose(self) -> None:
        for database in (self.write, self.read, self.quarantine):
            try:
                await database.dispose()
            except Exception:
                logger.exception("Error closing store", extra={"store": database.name})


__all__ = ["SUPPORTED_DIALECTS", "Database", "StoreKind", "StoreRegistry"]
