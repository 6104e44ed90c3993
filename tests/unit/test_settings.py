"""Unit tests for the modular settings."""

from __future__ import annotations

from pydantic import ValidationError
import pytest

from complaint_projections.core.settings import (
    clear_settings_cache,
    get_db_settings,
    get_projector_settings,
    get_tenancy_settings,
)
from complaint_projections.core.settings.app import AppSettings
from complaint_projections.core.settings.database import DatabaseSettings
from complaint_projections.core.settings.lag import LagSettings
from complaint_projections.core.settings.logs import LoggingSettings
from complaint_projections.core.settings.outbox import OutboxSettings
from complaint_projections.core.settings.projector import ProjectorSettings
from complaint_projections.core.settings.retry import RetrySettings
from complaint_projections.core.settings.tenancy import TenancySettings


@pytest.mark.unit
class TestProjectorSettings:
    def test_defaults(self):
        settings = ProjectorSettings()

        assert settings.consumer_group == "complaint_stats"
        assert settings.batch_size == 100
        assert settings.lease_ttl > settings.fetch_timeout

    def test_reads_prefixed_environment(self, monkeypatch):
        monkeypatch.setenv("PROJECTOR_BATCH_SIZE", "250")
        monkeypatch.setenv("PROJECTOR_CONSUMER_GROUP", "stats_v2")
        clear_settings_cache()

        settings = get_projector_settings()

        assert settings.batch_size == 250
        assert settings.consumer_group == "stats_v2"

    def test_loader_caches_instance(self):
        assert get_projector_settings() is get_projector_settings()

    def test_lease_must_outlive_fetch(self):
        with pytest.raises(ValidationError, match="lease_ttl"):
            ProjectorSettings(lease_ttl=1.0, fetch_timeout=2.0)

    @pytest.mark.parametrize("group", ["has space", "dots.not.allowed", ""])
    def test_consumer_group_charset(self, group):
        with pytest.raises(ValidationError):
            ProjectorSettings(consumer_group=group)

    def test_frozen(self):
        settings = ProjectorSettings()

        with pytest.raises(ValidationError):
            settings.batch_size = 5


@pytest.mark.unit
class TestDatabaseSettings:
    def test_separate_stores_by_default(self):
        assert DatabaseSettings().shares_single_database is False

    def test_single_database(self):
        url = "postgresql+psycopg://app:secret@db/complaints"

        settings = DatabaseSettings(write_url=url, read_url=url, quarantine_url=url)

        assert settings.shares_single_database is True
        assert "secret" not in repr(settings)

    def test_reads_urls_from_environment(self, monkeypatch):
        monkeypatch.setenv("DB_READ_URL", "sqlite+aiosqlite:///./other.db")
        clear_settings_cache()

        assert get_db_settings().read_url.get_secret_value() == "sqlite+aiosqlite:///./other.db"


@pytest.mark.unit
class TestPolicySettings:
    def test_retry_cap_not_below_base(self):
        with pytest.raises(ValidationError, match="max_delay_ms"):
            RetrySettings(initial_delay_ms=500, max_delay_ms=100)

    def test_lag_alert_not_below_sla(self):
        with pytest.raises(ValidationError):
            LagSettings(staleness_sla_seconds=10, alert_threshold_seconds=5)

    def test_outbox_backoff_cap_not_below_initial(self):
        with pytest.raises(ValidationError):
            OutboxSettings(initial_backoff_seconds=10, max_backoff_seconds=1)

    def test_tenancy_strategy_is_closed_set(self):
        with pytest.raises(ValidationError):
            TenancySettings(default_strategy="database")

    def test_tenancy_environment(self, monkeypatch):
        monkeypatch.setenv("TENANCY_DEFAULT_STRATEGY", "schema")
        clear_settings_cache()

        assert get_tenancy_settings().default_strategy == "schema"


@pytest.mark.unit
class TestAppSettings:
    def test_defaults(self):
        settings = AppSettings()

        assert settings.api_prefix == "/api/v1"
        assert settings.tenant_header == "X-Tenant-ID"
        assert settings.embedded_workers is False

    def test_api_prefix_must_be_a_path(self):
        with pytest.raises(ValidationError):
            AppSettings(api_prefix="api")


@pytest.mark.unit
class TestLoggingSettings:
    def test_reads_prefixed_environment(self, monkeypatch):
        monkeypatch.setenv("LOG_JSON_LOGS", "false")
        monkeypatch.setenv("LOG_LEVEL", "DEBUG")
        monkeypatch.setenv("LOG_SQLALCHEMY_LEVEL", "INFO")

        settings = LoggingSettings()

        assert settings.json_logs is False
        assert settings.level == "DEBUG"
        assert settings.library_levels()["sqlalchemy.engine"] == "INFO"

    def test_logging_kwargs_carry_library_levels(self):
        kwargs = LoggingSettings(broker_level="ERROR").to_logging_kwargs()

        assert kwargs["library_levels"]["aio_pika"] == "ERROR"
        assert kwargs["library_levels"]["aiormq"] == "ERROR"
        assert kwargs["security_level"] == "WARNING"
