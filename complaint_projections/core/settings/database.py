"""Database settings for the write, read and quarantine stores.

The engine keeps three logical stores:

- write: transactional store holding outbox records and the shared tenant
  registry (the control tables)
- read: analytical store holding checkpoints and materialized views
- quarantine: non tenant-partitioned store holding dead-letter entries

Each store may point at its own database or all three at the same one.
"""

from __future__ import annotations

from pydantic import Field, SecretStr, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """SQLAlchemy async connection settings.

    Environment variables use DB_ prefix.
    Example: DB_WRITE_URL=postgresql+psycopg://app:secret@db/complaints
    """

    # ─────────────────────────────────────────────────────
    # Store URLs
    # ─────────────────────────────────────────────────────
    write_url: SecretStr = Field(
        default=SecretStr("sqlite+aiosqlite:///./complaints_write.db"),
        description="Async SQLAlchemy URL of the write store (outbox + tenant registry).",
    )
    read_url: SecretStr = Field(
        default=SecretStr("sqlite+aiosqlite:///./complaints_read.db"),
        description="Async SQLAlchemy URL of the read store (checkpoints + views).",
    )
    quarantine_url: SecretStr = Field(
        default=SecretStr("sqlite+aiosqlite:///./complaints_quarantine.db"),
        description="Async SQLAlchemy URL of the dead-letter quarantine store.",
    )

    # ─────────────────────────────────────────────────────
    # Pooling
    # ─────────────────────────────────────────────────────
    pool_size: int = Field(default=10, ge=1, le=200, description="Connection pool size per store.")
    max_overflow: int = Field(default=10, ge=0, le=200, description="Overflow connections per store.")
    pool_timeout: float = Field(default=30.0, gt=0, le=300, description="Seconds to wait for a pooled connection.")
    pool_recycle: int = Field(default=1800, ge=-1, description="Recycle connections after N seconds (-1 disables).")
    pool_pre_ping: bool = Field(default=True, description="Validate connections on checkout.")
    echo: bool = Field(default=False, description="Log emitted SQL.")

    # ─────────────────────────────────────────────────────
    # SQLite specifics (local development and tests)
    # ─────────────────────────────────────────────────────
    sqlite_busy_timeout: float = Field(
        default=30.0,
        gt=0,
        le=600,
        description="Seconds a SQLite writer waits for the database lock.",
    )

    # ─────────────────────────────────────────────────────
    # Startup
    # ─────────────────────────────────────────────────────
    startup_retry_attempts: int = Field(default=5, ge=1, le=50, description="Connection attempts at startup.")
    startup_retry_delay: float = Field(default=1.0, ge=0, le=60, description="Initial delay between startup attempts.")

    @computed_field  # type: ignore[prop-decorator]
    @property
    def shares_single_database(self) -> bool:
        """True when all three stores point at the same database."""
        urls = {
            self.write_url.get_secret_value(),
            self.read_url.get_secret_value(),
            self.quarantine_url.get_secret_value(),
        }
        return len(urls) == 1

    model_config = SettingsConfigDict(
        env_prefix="DB_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        frozen=True,
        extra="ignore",
        env_ignore_empty=True,
    )
