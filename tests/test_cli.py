"""Tests for the command-line interface"""

import json

import pytest
from click.testing import CliRunner

from songbook_sync.cli import cli


@pytest.fixture
def offline_config(temp_dir, snapshot_path, monkeypatch):
    """songbook.yaml without a remote database, with the bundled snapshot"""
    for name in ("SONGBOOK_DATABASE_URL", "SONGBOOK_AUTH_TOKEN", "SONGBOOK_CACHE_DIR"):
        monkeypatch.delenv(name, raising=False)
    path = temp_dir / "songbook.yaml"
    path.write_text(
        f'cache:\n  directory: "{(temp_dir / "cache").as_posix()}"\n'
        f'snapshot:\n  path: "{snapshot_path.as_posix()}"\n',
        encoding="utf-8"
    )
    return path


class TestCli:
    """Test CLI commands against an offline engine"""

    def test_stats_json(self, offline_config):
        result = CliRunner().invoke(cli, ["--config", str(offline_config), "stats", "--json"])

        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["cached_collections"] == 0
        assert data["orchestrator_state"] == "ready"

    def test_collection_from_snapshot(self, offline_config):
        result = CliRunner().invoke(cli, ["--config", str(offline_config), "collection", "LPMI"])

        assert result.exit_code == 0, result.output
        assert "Snapshot 1" in result.output
        assert "Snapshot 10" in result.output

    def test_page(self, offline_config):
        result = CliRunner().invoke(
            cli, ["--config", str(offline_config), "page", "--size", "4", "--cursor", "8"]
        )

        assert result.exit_code == 0, result.output
        assert "Snapshot 9" in result.output
        assert "Last page" in result.output

    def test_song_not_found_exits_nonzero(self, offline_config):
        result = CliRunner().invoke(cli, ["--config", str(offline_config), "song", "999"])
        assert result.exit_code == 1

    def test_unknown_role_rejected(self, offline_config):
        result = CliRunner().invoke(cli, ["--config", str(offline_config), "--role", "pirate", "songs"])
        assert result.exit_code == 2

    def test_refresh_offline_fails(self, offline_config):
        result = CliRunner().invoke(cli, ["--config", str(offline_config), "refresh"])
        assert result.exit_code == 1
