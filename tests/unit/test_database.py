"""Unit tests for store construction."""

from __future__ import annotations

import pytest

from complaint_projections.infra.database.session import SUPPORTED_DIALECTS, Database, StoreKind
from complaint_projections.projections import views


@pytest.mark.unit
class TestDatabase:
    def test_unsupported_backend_is_refused_at_construction(self):
        with pytest.raises(ValueError, match="mysql"):
            Database("mysql+aiomysql://user@localhost/stats", name=StoreKind.READ)

    async def test_sqlite_store_is_accepted(self, tmp_path):
        database = Database(f"sqlite+aiosqlite:///{tmp_path / 'read.db'}", name=StoreKind.READ)

        assert database.dialect_name == "sqlite"
        await database.dispose()

    def test_every_supported_backend_has_an_upsert(self):
        assert set(views._INSERTS) == set(SUPPORTED_DIALECTS)
