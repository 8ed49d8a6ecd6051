"""Tests for the CLI entry point."""

import json
from unittest.mock import MagicMock, patch

import pytest
from click.testing import CliRunner

from hubmap.cli import main
from hubmap.models import Endpoint, PeerRecord
from hubmap.persistence import PeerStore


@pytest.fixture(autouse=True)
def _isolated_config(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the CLI away from the user's real config and environment."""
    monkeypatch.setattr("hubmap.config.DEFAULT_CONFIG_PATH", tmp_path / "nope.yaml")
    monkeypatch.setattr("hubmap.cli.load_dotenv", lambda: False)
    for var in ("HUB_URL", "HUBMAP_DB_PATH", "GEO_API_URL"):
        monkeypatch.delenv(var, raising=False)


def _config_file(tmp_path, db_path) -> str:
    cfg_file = tmp_path / "config.yaml"
    cfg_file.write_text(f"db_path: {db_path}\n", encoding="utf-8")
    return str(cfg_file)


def _seed(db_path) -> None:
    store = PeerStore(str(db_path))
    for network, address in (
        ("FARCASTER_NETWORK_MAINNET", "1.1.1.1"),
        ("FARCASTER_NETWORK_TESTNET", "2.2.2.2"),
    ):
        store.upsert_peer(
            PeerRecord(
                network=network,
                address=address,
                gossip=Endpoint(address=address, family=4, port=2282),
                hub_version="2024.5.1",
            )
        )
    store.close()


class TestCliHelp:
    """--help flag produces usage information."""

    def test_help_exits_zero(self) -> None:
        result = CliRunner().invoke(main, ["--help"])
        assert result.exit_code == 0
        assert "directory of hub peers" in result.output

    def test_help_lists_commands(self) -> None:
        result = CliRunner().invoke(main, ["--help"])
        for command in ("run", "peers", "stats"):
            assert command in result.output

    def test_run_help_shows_only_option(self) -> None:
        result = CliRunner().invoke(main, ["run", "--help"])
        assert result.exit_code == 0
        assert "--only" in result.output


class TestRunCommand:
    @patch("hubmap.cli.signal.signal")
    @patch("hubmap.cli.run_service")
    def test_runs_all_pipelines_by_default(
        self, mock_run: MagicMock, mock_signal: MagicMock, tmp_path
    ) -> None:
        cfg_path = _config_file(tmp_path, tmp_path / "hubmap.db")

        result = CliRunner().invoke(main, ["--config", cfg_path, "run"])

        assert result.exit_code == 0
        cfg = mock_run.call_args.args[0]
        assert cfg.db_path == str(tmp_path / "hubmap.db")
        assert mock_run.call_args.kwargs["only"] is None
        assert mock_signal.call_count == 2

    @patch("hubmap.cli.signal.signal")
    @patch("hubmap.cli.run_service")
    def test_only_selects_pipelines(
        self, mock_run: MagicMock, mock_signal: MagicMock
    ) -> None:
        result = CliRunner().invoke(main, ["run", "--only", "geo", "--only", "INFO"])

        assert result.exit_code == 0
        assert mock_run.call_args.kwargs["only"] == ["geo", "info"]

    def test_unknown_pipeline_rejected(self) -> None:
        result = CliRunner().invoke(main, ["run", "--only", "bogus"])
        assert result.exit_code != 0
        assert "Invalid value" in result.output


class TestPeersCommand:
    def test_table_output(self, tmp_path) -> None:
        db_path = tmp_path / "hubmap.db"
        _seed(db_path)

        result = CliRunner().invoke(
            main, ["--config", _config_file(tmp_path, db_path), "peers"]
        )

        assert result.exit_code == 0
        assert "1.1.1.1" in result.output
        assert "2.2.2.2" in result.output

    def test_json_filtered_by_network(self, tmp_path) -> None:
        db_path = tmp_path / "hubmap.db"
        _seed(db_path)

        result = CliRunner().invoke(
            main,
            [
                "--config",
                _config_file(tmp_path, db_path),
                "peers",
                "--network",
                "FARCASTER_NETWORK_TESTNET",
                "--format",
                "json",
            ],
        )

        assert result.exit_code == 0
        payload = json.loads(result.output)
        assert [p["address"] for p in payload] == ["2.2.2.2"]


class TestStatsCommand:
    def test_json_output(self, tmp_path) -> None:
        db_path = tmp_path / "hubmap.db"
        _seed(db_path)

        result = CliRunner().invoke(
            main, ["--config", _config_file(tmp_path, db_path), "stats", "-f", "json"]
        )

        assert result.exit_code == 0
        payload = json.loads(result.output)
        assert payload["total"] == 2
        assert payload["geo_pending"] == 2
        assert payload["version_distribution"] == [["2024.5.1", 2]]


class TestConfigOption:
    """--config flag validation."""

    def test_missing_config_file_errors(self, tmp_path) -> None:
        missing = str(tmp_path / "nonexistent.yaml")
        result = CliRunner().invoke(main, ["--config", missing, "peers"])
        assert result.exit_code == 1
        assert "not found" in result.output

    def test_invalid_yaml_errors(self, tmp_path) -> None:
        cfg_file = tmp_path / "config.yaml"
        cfg_file.write_text(": : : bad yaml\n")
        result = CliRunner().invoke(main, ["--config", str(cfg_file), "peers"])
        assert result.exit_code == 1
        assert "Error" in result.output
