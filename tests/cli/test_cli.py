"""Tests for the CLI commands."""

import pytest
from click.testing import CliRunner

import famcal.core.logging as famcal_logging
import famcal.migrations as famcal_migrations
from famcal.cli import cli
from famcal.db import Database

pytestmark = pytest.mark.unit

MINIMAL_TOML = """\
[famcal]
name = "rivera-home"
port = 8401

[famcal.db]
name = "famcal_cli"

[google]
client_id = "client"
client_secret = "secret"
"""


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def config_dir(tmp_path):
    (tmp_path / "famcal.toml").write_text(MINIMAL_TOML)
    return tmp_path


class TestVersion:
    def test_version_flag(self, runner):
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output


class TestServe:
    def test_runs_uvicorn_with_config(self, runner, config_dir, monkeypatch):
        import uvicorn

        calls = []
        logging_calls = []
        monkeypatch.delenv("OTEL_EXPORTER_OTLP_ENDPOINT", raising=False)
        monkeypatch.setattr(uvicorn, "run", lambda app, **kw: calls.append((app, kw)))
        monkeypatch.setattr(
            famcal_logging, "configure_logging", lambda **kw: logging_calls.append(kw)
        )

        result = runner.invoke(cli, ["serve", "--config", str(config_dir)])

        assert result.exit_code == 0, result.output
        assert "rivera-home listening on 127.0.0.1:8401" in result.output
        (app, kwargs) = calls[0]
        assert app.title == "famcal API"
        assert kwargs == {"host": "127.0.0.1", "port": 8401, "log_config": None}
        assert logging_calls[0]["service_name"] == "rivera-home"

    def test_port_override(self, runner, config_dir, monkeypatch):
        import uvicorn

        calls = []
        monkeypatch.setattr(uvicorn, "run", lambda app, **kw: calls.append(kw))
        monkeypatch.setattr(famcal_logging, "configure_logging", lambda **kw: None)

        result = runner.invoke(
            cli, ["serve", "--config", str(config_dir), "--host", "0.0.0.0", "--port", "9100"]
        )

        assert result.exit_code == 0, result.output
        assert calls[0]["host"] == "0.0.0.0"
        assert calls[0]["port"] == 9100

    def test_missing_config_file(self, runner, tmp_path):
        result = runner.invoke(cli, ["serve", "--config", str(tmp_path)])

        assert result.exit_code == 1
        assert "Configuration error" in result.output

    def test_invalid_config_value(self, runner, tmp_path):
        (tmp_path / "famcal.toml").write_text('[famcal]\nport = "eighty"\n')

        result = runner.invoke(cli, ["serve", "--config", str(tmp_path)])

        assert result.exit_code == 1
        assert "famcal.port" in result.output


class TestMigrate:
    def test_provisions_and_migrates(self, runner, config_dir, monkeypatch):
        provisioned = []
        migrated = []

        async def fake_provision(self):
            provisioned.append(self.db_name)

        async def fake_run_migrations(db_url, revision="head"):
            migrated.append((db_url, revision))

        monkeypatch.setattr(Database, "provision", fake_provision)
        monkeypatch.setattr(famcal_migrations, "run_migrations", fake_run_migrations)

        result = runner.invoke(cli, ["migrate", "--config", str(config_dir)])

        assert result.exit_code == 0, result.output
        assert provisioned == ["famcal_cli"]
        assert migrated[0][0].endswith("/famcal_cli")
        assert migrated[0][1] == "head"
        assert "famcal_cli migrated to head" in result.output
