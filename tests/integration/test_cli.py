"""Tests for the command line interface against SQLite stores."""

from __future__ import annotations

import json
import uuid

from click.testing import CliRunner
import pytest

from complaint_projections.cli.main import cli
from complaint_projections.core.settings import clear_settings_cache


@pytest.fixture
def runner(sqlite_urls, monkeypatch) -> CliRunner:
    monkeypatch.setenv("DB_WRITE_URL", sqlite_urls["write"])
    monkeypatch.setenv("DB_READ_URL", sqlite_urls["read"])
    monkeypatch.setenv("DB_QUARANTINE_URL", sqlite_urls["quarantine"])
    monkeypatch.setenv("RABBIT_ENABLED", "false")
    clear_settings_cache()
    runner = CliRunner()
    result = runner.invoke(cli, ["db", "init"])
    assert result.exit_code == 0, result.output
    return runner


def _json(result) -> object:
    return json.loads(result.stdout)


@pytest.mark.integration
class TestCli:
    def test_version(self):
        result = CliRunner().invoke(cli, ["--version"])

        assert result.exit_code == 0
        assert "complaint-projections" in result.output

    def test_db_ping(self, runner):
        result = runner.invoke(cli, ["db", "ping"])

        assert result.exit_code == 0
        for store in ("write", "read", "quarantine"):
            assert store in result.output

    def test_provision_and_list(self, runner):
        result = runner.invoke(cli, ["tenants", "provision", "acme"])
        assert result.exit_code == 0, result.output
        assert "Tenant acme provisioned" in result.output

        result = runner.invoke(cli, ["tenants", "list", "--format", "json"])

        assert result.exit_code == 0
        [tenant] = _json(result)
        assert tenant["tenant_id"] == "acme"
        assert tenant["strategy"] == "shared"
        assert tenant["active"] is True

    def test_schema_strategy_rejected_on_sqlite(self, runner):
        result = runner.invoke(cli, ["tenants", "provision", "acme", "--strategy", "schema"])

        assert result.exit_code == 1
        assert "cannot host per-tenant schemas" in result.output

    def test_deactivate(self, runner):
        runner.invoke(cli, ["tenants", "provision", "acme"])

        result = runner.invoke(cli, ["tenants", "deactivate", "acme", "--yes"])
        assert result.exit_code == 0, result.output

        active = runner.invoke(cli, ["tenants", "list", "--format", "json"])
        everything = runner.invoke(cli, ["tenants", "list", "--all", "--format", "json"])
        assert _json(active) == []
        assert [t["active"] for t in _json(everything)] == [False]

    def test_deactivate_unknown_tenant(self, runner):
        result = runner.invoke(cli, ["tenants", "deactivate", "initech", "--yes"])

        assert result.exit_code == 1

    def test_lag_before_any_batch(self, runner):
        runner.invoke(cli, ["tenants", "provision", "acme"])

        result = runner.invoke(cli, ["lag", "show", "--format", "json"])

        assert result.exit_code == 0, result.output
        [report] = _json(result)
        assert report["tenant_id"] == "acme"
        assert report["status"] == "unknown"

    def test_outbox_status(self, runner):
        runner.invoke(cli, ["tenants", "provision", "acme"])

        result = runner.invoke(cli, ["outbox", "status", "--format", "json"])

        assert result.exit_code == 0, result.output
        assert _json(result) == [{"tenant_id": "acme", "pending": 0, "dispatched": 0, "failed": 0}]

    def test_dead_letters_empty(self, runner):
        result = runner.invoke(cli, ["dlq", "list", "--format", "json"])

        assert result.exit_code == 0, result.output
        assert _json(result) == {"items": [], "total": 0}

    def test_replay_unknown_dead_letter(self, runner):
        result = runner.invoke(cli, ["dlq", "replay", str(uuid.uuid4())])

        assert result.exit_code == 1
        assert "not found" in result.output

    def test_purge_applied(self, runner):
        runner.invoke(cli, ["tenants", "provision", "acme"])

        result = runner.invoke(cli, ["maintenance", "purge-applied", "--older-than-days", "1"])

        assert result.exit_code == 0, result.output
        assert "Purged 0 applied-event markers" in result.output
