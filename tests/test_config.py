"""Tests for configuration loading"""

from pathlib import Path

import pytest

from songbook_sync.core.config import CONFIG_FILENAME, load_config
from songbook_sync.core.exceptions import ConfigError


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch, temp_dir):
    """Run every test from an empty directory without SONGBOOK_* overrides"""
    for name in ("SONGBOOK_DATABASE_URL", "SONGBOOK_AUTH_TOKEN", "SONGBOOK_CACHE_DIR"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(temp_dir)


def write_config(directory: Path, content: str) -> Path:
    path = directory / CONFIG_FILENAME
    path.write_text(content, encoding="utf-8")
    return path


class TestLoadConfig:
    """Test load_config"""

    def test_defaults_without_file(self):
        config = load_config()

        assert config.remote.database_url is None
        assert config.remote.legacy_path == "songs"
        assert config.cache.ttl_hours == 168.0
        assert config.cache.background_refresh_ratio == 0.95
        assert config.sync.refresh_role == "guest"
        assert config.snapshot.path is None
        assert config.snapshot.collection_id == "LPMI"

    def test_explicit_missing_file(self, temp_dir):
        with pytest.raises(ConfigError):
            load_config(temp_dir / "missing.yaml")

    def test_full_file(self, temp_dir):
        write_config(temp_dir, """
remote:
  database_url: "https://example.firebaseio.com/"
  requests_per_second: 5
  legacy_path: "/songs/"
cache:
  directory: "cache-here"
  ttl_hours: 24
  flaky_collections: ["odd_one"]
connectivity:
  result_cache_seconds: 0
sync:
  refresh_role: Premium
  preload_collections: ["LPMI"]
snapshot:
  path: "assets/lpmi.json"
  collection_id: SRD
""")
        config = load_config()

        assert config.remote.database_url == "https://example.firebaseio.com"
        assert config.remote.requests_per_second == 5
        assert config.remote.legacy_path == "songs"
        assert config.cache.directory == (temp_dir / "cache-here").resolve()
        assert config.cache.db_path.name == "cache.db"
        assert config.cache.ttl_hours == 24.0
        assert config.cache.flaky_collections == ("odd_one",)
        assert config.connectivity.result_cache_seconds == 0
        assert config.sync.refresh_role == "premium"
        assert config.sync.preload_collections == ("LPMI",)
        assert config.snapshot.path == (temp_dir / "assets" / "lpmi.json").resolve()
        assert config.snapshot.collection_id == "SRD"

    def test_environment_overrides(self, temp_dir, monkeypatch):
        write_config(temp_dir, "remote:\n  database_url: https://file.example\n")
        monkeypatch.setenv("SONGBOOK_DATABASE_URL", "https://env.example")
        monkeypatch.setenv("SONGBOOK_CACHE_DIR", str(temp_dir / "env-cache"))

        config = load_config()

        assert config.remote.database_url == "https://env.example"
        assert config.cache.directory == (temp_dir / "env-cache").resolve()

    @pytest.mark.parametrize("content", [
        "remote: [1, 2]",
        "remote:\n  database_url: ftp://nope",
        "cache:\n  ttl_hours: -1",
        "cache:\n  background_refresh_ratio: 1.5",
        "connectivity:\n  signal_timeout: fast",
        "sync:\n  refresh_role: pirate",
        "snapshot:\n  collection_id: ''",
        "- just\n- a list",
        "remote: {database_url: [unclosed",
    ])
    def test_invalid_values(self, temp_dir, content):
        write_config(temp_dir, content)
        with pytest.raises(ConfigError):
            load_config()

    def test_empty_file_is_defaults(self, temp_dir):
        write_config(temp_dir, "")
        assert load_config().cache.ttl_hours == 168.0
