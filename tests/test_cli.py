"""Tests for CLI commands."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from click.testing import CliRunner

from quota_radar.cli import main
from quota_radar.config import Config
from quota_radar.decoder import decode
from quota_radar.errors import DiscoveryFailure
from tests.conftest import NOW, make_model_config, make_payload, make_target


@pytest.fixture
def runner() -> CliRunner:
    """Create a CLI test runner."""
    return CliRunner()


@pytest.fixture(autouse=True)
def no_file_logging():
    """Keep CLI commands from attaching log handlers during tests."""
    with patch("quota_radar.logging.configure"):
        yield


def connected_snapshot():
    payload = make_payload(
        [
            make_model_config("A", fraction=0.5),
            make_model_config("B", fraction=0.5),
            make_model_config("C", fraction=0.1, reset_time="2026-01-15T18:00:00Z"),
        ]
    )
    return decode(payload, Config(), now=NOW)


class TestStatusCommand:
    """Tests for the status command."""

    def test_status_offline(self, runner: CliRunner) -> None:
        fetch = AsyncMock(return_value=(None, "Language server not found"))
        with patch("quota_radar.cli._fetch_snapshot", fetch):
            result = runner.invoke(main, ["status"])

        assert result.exit_code == 1
        assert "Offline: Language server not found" in result.output

    def test_status_offline_json(self, runner: CliRunner) -> None:
        fetch = AsyncMock(return_value=(None, "SignalLost: refused"))
        with patch("quota_radar.cli._fetch_snapshot", fetch):
            result = runner.invoke(main, ["status", "--json"])

        assert result.exit_code == 1
        data = json.loads(result.output)
        assert data["is_connected"] is False
        assert data["error_message"] == "SignalLost: refused"

    def test_status_prints_account(self, runner: CliRunner) -> None:
        fetch = AsyncMock(return_value=(connected_snapshot(), None))
        with (
            patch("quota_radar.cli._fetch_snapshot", fetch),
            patch("quota_radar.logging.quota_update") as quota_update,
        ):
            result = runner.invoke(main, ["status"])

        assert result.exit_code == 0
        assert "User: Ada <ada@example.com>" in result.output
        assert "Prompt credits: 450 / 500" in result.output
        quota_update.assert_called_once()

    def test_status_json(self, runner: CliRunner) -> None:
        fetch = AsyncMock(return_value=(connected_snapshot(), None))
        with patch("quota_radar.cli._fetch_snapshot", fetch):
            result = runner.invoke(main, ["status", "--json"])

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["is_connected"] is True
        assert [m["model_id"] for m in data["models"]] == ["A", "B", "C"]


class TestDiscoverCommand:
    """Tests for the discover command."""

    def test_discover_found(self, runner: CliRunner) -> None:
        client = MagicMock()
        client.target = make_target(port=53125)
        with patch("quota_radar.cli._connect", AsyncMock(return_value=(MagicMock(), client))):
            result = runner.invoke(main, ["discover"])

        assert result.exit_code == 0
        assert "Port: 53125" in result.output
        assert "PID: 4242" in result.output
        assert make_target().token not in result.output

    def test_discover_not_found(self, runner: CliRunner) -> None:
        locator = MagicMock()
        locator.last_failure = DiscoveryFailure("Language server not found")
        locator.last_diagnostics = "1234 node /opt/antigravity/helper"
        with patch("quota_radar.cli._connect", AsyncMock(return_value=(locator, None))):
            result = runner.invoke(main, ["discover"])

        assert result.exit_code == 1
        assert "Language server not found" in result.output
        assert "Related processes" in result.output


class TestGroupCommands:
    """Tests for group management commands."""

    def test_group_auto_saves_membership(self, runner: CliRunner) -> None:
        fetch = AsyncMock(return_value=(connected_snapshot(), None))
        with patch("quota_radar.cli._fetch_snapshot", fetch):
            result = runner.invoke(main, ["group", "auto"])

        assert result.exit_code == 0
        assert "Saved 2 groups for 3 models" in result.output
        assert Config.load().grouping.memberships == {"A": "A_B", "B": "A_B", "C": "C"}

    def test_group_auto_offline(self, runner: CliRunner) -> None:
        fetch = AsyncMock(return_value=(None, "Language server not found"))
        with patch("quota_radar.cli._fetch_snapshot", fetch):
            result = runner.invoke(main, ["group", "auto"])
        assert result.exit_code == 1
        assert not Config().config_path.exists()

    def test_group_rename(self, runner: CliRunner) -> None:
        result = runner.invoke(main, ["group", "rename", "A", "B", "--name", "Shared"])
        assert result.exit_code == 0
        assert Config.load().grouping.custom_names == {"A": "Shared", "B": "Shared"}

    def test_group_clear(self, runner: CliRunner) -> None:
        Config().set_memberships({"A": "A_B", "B": "A_B"})
        result = runner.invoke(main, ["group", "clear", "--yes"])
        assert result.exit_code == 0
        assert Config.load().grouping.memberships == {}

    def test_group_clear_aborted(self, runner: CliRunner) -> None:
        Config().set_memberships({"A": "A_B", "B": "A_B"})
        result = runner.invoke(main, ["group", "clear"], input="n\n")
        assert result.exit_code == 1
        assert Config.load().grouping.memberships == {"A": "A_B", "B": "A_B"}

    def test_group_pin_toggles(self, runner: CliRunner) -> None:
        assert "A_B: pinned" in runner.invoke(main, ["group", "pin", "A_B"]).output
        assert "A_B: unpinned" in runner.invoke(main, ["group", "pin", "A_B"]).output

    def test_group_toggle(self, runner: CliRunner) -> None:
        result = runner.invoke(main, ["group", "toggle"])
        assert "Grouping disabled" in result.output
        assert Config.load().grouping.enabled is False


class TestModelCommands:
    """Tests for per-model commands."""

    def test_model_rename_and_reset(self, runner: CliRunner) -> None:
        result = runner.invoke(main, ["model", "rename", "A", "Primary"])
        assert "A renamed to 'Primary'" in result.output
        assert Config.load().models.custom_names == {"A": "Primary"}

        result = runner.invoke(main, ["model", "rename", "A"])
        assert "A name reset" in result.output
        assert Config.load().models.custom_names == {}

    def test_model_pin(self, runner: CliRunner) -> None:
        result = runner.invoke(main, ["model", "pin", "Claude"])
        assert "Claude: pinned" in result.output
        assert Config.load().models.is_pinned("claude")


class TestConfigCommands:
    """Tests for config commands."""

    def test_config_show_defaults(self, runner: CliRunner) -> None:
        result = runner.invoke(main, ["config", "show"])
        assert result.exit_code == 0
        assert "Exists: False" in result.output
        assert "warning = 30" in result.output
        assert "refresh_interval = 120" in result.output

    def test_config_thresholds(self, runner: CliRunner) -> None:
        result = runner.invoke(main, ["config", "thresholds", "40", "15"])
        assert result.exit_code == 0
        thresholds = Config.load().thresholds
        assert (thresholds.warning, thresholds.critical) == (40, 15)

    def test_config_thresholds_invalid(self, runner: CliRunner) -> None:
        result = runner.invoke(main, ["config", "thresholds", "20", "30"])
        assert result.exit_code == 1
        assert "Error:" in result.output
        assert not Config().config_path.exists()

    def test_config_reset(self, runner: CliRunner) -> None:
        Config().update_thresholds(50, 20)
        result = runner.invoke(main, ["config", "reset", "--yes"])
        assert result.exit_code == 0
        assert Config.load().thresholds.warning == 30

    def test_broken_config_file(self, runner: CliRunner) -> None:
        cfg = Config()
        cfg.config_path.parent.mkdir(parents=True)
        cfg.config_path.write_text("[thresholds]\nwarning = 90\n")

        result = runner.invoke(main, ["config", "show"])

        assert result.exit_code == 1
        assert "warning threshold must be" in result.output
