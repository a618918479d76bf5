"""Tests for the CLI module.

Covers:
- CLI help and version output
- Database commands (init, status)
- Commands that need a Discord token
- Configuration validation and checking
- Global options (log-level, log-json, config-file)
"""

from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest
import yaml
from click.testing import CliRunner

from timerboard import __version__
from timerboard.cli import cli
from timerboard.sync import GuildSyncReport


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "config.yaml"
    with open(path, "w") as f:
        yaml.dump({"data_dir": str(tmp_path / "data"), "log_json": False}, f)
    return path


class TestCliHelp:
    """Tests for help and basic command availability."""

    def test_cli_help(self, cli_runner: CliRunner) -> None:
        result = cli_runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        assert "Timerboard - fleet timers" in result.output
        assert "Database management commands" in result.output
        assert "Guild state synchronization commands" in result.output
        assert "Fleet notification commands" in result.output

    def test_sync_group_help(self, cli_runner: CliRunner) -> None:
        result = cli_runner.invoke(cli, ["sync", "--help"])
        assert result.exit_code == 0
        assert "sweep" in result.output
        assert "guild" in result.output

    def test_fleet_notify_stages(self, cli_runner: CliRunner) -> None:
        result = cli_runner.invoke(cli, ["fleet", "notify", "--help"])
        assert result.exit_code == 0
        assert "creation|reminder|formup|update|cancel" in result.output


class TestVersion:
    """Tests for version command."""

    def test_cli_version(self, cli_runner: CliRunner) -> None:
        result = cli_runner.invoke(cli, ["version"])
        assert result.exit_code == 0
        assert f"timerboard {__version__}" in result.output

    def test_version_with_global_options(self, cli_runner: CliRunner) -> None:
        result = cli_runner.invoke(cli, ["--log-level", "debug", "--no-log-json", "version"])
        assert result.exit_code == 0

    def test_invalid_log_level(self, cli_runner: CliRunner) -> None:
        result = cli_runner.invoke(cli, ["--log-level", "LOUD", "version"])
        assert result.exit_code != 0


class TestDatabaseCommands:
    """Tests for db init and status."""

    def test_db_init(self, cli_runner: CliRunner, config_file: Path, tmp_path: Path) -> None:
        result = cli_runner.invoke(cli, ["-c", str(config_file), "db", "init"])

        assert result.exit_code == 0
        assert "Database ready" in result.output
        assert (tmp_path / "data" / "timerboard.db").exists()

    def test_db_status(self, cli_runner: CliRunner, config_file: Path) -> None:
        result = cli_runner.invoke(cli, ["-c", str(config_file), "db", "status"])

        assert result.exit_code == 0
        assert "Guilds: 0" in result.output
        assert "Stale guilds: 0" in result.output


class TestTokenRequired:
    """Commands talking to Discord need DISCORD_TOKEN."""

    @pytest.mark.parametrize(
        "args",
        [["serve"], ["sync", "sweep"], ["sync", "guild", "1"], ["fleet", "dispatch"]],
    )
    def test_missing_token(
        self, cli_runner: CliRunner, config_file: Path, monkeypatch, args
    ) -> None:
        monkeypatch.delenv("DISCORD_TOKEN", raising=False)

        result = cli_runner.invoke(cli, ["-c", str(config_file), *args])

        assert result.exit_code == 1
        assert "DISCORD_TOKEN" in result.output


class TestSyncCommands:
    """Tests for the sync commands with the engine patched out."""

    def test_sync_guild_reports_steps(
        self, cli_runner: CliRunner, config_file: Path, monkeypatch
    ) -> None:
        monkeypatch.setenv("DISCORD_TOKEN", "token")
        report = GuildSyncReport(
            guild_id="1", metadata_ok=True, roles_ok=True, channels_ok=True,
            members_ok=False, stamped=False,
        )

        with patch(
            "timerboard.sync.GuildSyncEngine.sync_guild", new=AsyncMock(return_value=report)
        ):
            result = cli_runner.invoke(cli, ["-c", str(config_file), "sync", "guild", "1"])

        assert result.exit_code == 1
        assert "members: failed" in result.output
        assert "stamped: no" in result.output

    def test_sync_sweep_with_no_guilds(
        self, cli_runner: CliRunner, config_file: Path, monkeypatch
    ) -> None:
        monkeypatch.setenv("DISCORD_TOKEN", "token")

        result = cli_runner.invoke(cli, ["-c", str(config_file), "sync", "sweep"])

        assert result.exit_code == 0
        assert "Selected 0 guild(s)" in result.output

    def test_fleet_notify_unknown_fleet(
        self, cli_runner: CliRunner, config_file: Path, monkeypatch
    ) -> None:
        monkeypatch.setenv("DISCORD_TOKEN", "token")

        result = cli_runner.invoke(
            cli, ["-c", str(config_file), "fleet", "notify", "42", "creation"]
        )

        assert result.exit_code == 1
        assert "fleet 42 not found" in result.output


class TestConfigCheck:
    """Tests for config check."""

    def test_config_check_valid(self, cli_runner: CliRunner, config_file: Path) -> None:
        result = cli_runner.invoke(cli, ["config", "check", "-c", str(config_file)])

        assert result.exit_code == 0
        assert "Configuration valid" in result.output
        assert "Sync: every 5m, window 30m" in result.output

    def test_config_check_missing_file(self, cli_runner: CliRunner) -> None:
        result = cli_runner.invoke(cli, ["config", "check", "-c", "/nonexistent/config.yaml"])
        assert result.exit_code != 0

    def test_config_check_invalid_values(self, cli_runner: CliRunner, tmp_path: Path) -> None:
        path = tmp_path / "bad.yaml"
        with open(path, "w") as f:
            yaml.dump({"sync": {"full_sync_window_minutes": 5, "check_interval_minutes": 10}}, f)

        result = cli_runner.invoke(cli, ["config", "check", "-c", str(path)])

        assert result.exit_code == 1
        assert "Configuration error" in result.output
