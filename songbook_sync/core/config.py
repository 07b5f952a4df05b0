"""
Configuration management for songbook-sync.

This module handles loading, validating, and providing access to the
engine configuration stored in songbook.yaml.

The configuration file contains:
    - Remote document store location and credentials
    - Cache directory, TTLs and the flaky-collection allow-list
    - Connectivity probe timeouts
    - Sync scheduling (change-check interval, refresh role, timeouts)
    - Bundled snapshot location

Every field has a default, so the engine can start without any file at
all. Secrets and locations can be overridden from the environment (a .env
file in the working directory is loaded automatically):

    SONGBOOK_DATABASE_URL    remote.database_url
    SONGBOOK_AUTH_TOKEN      remote.auth_token
    SONGBOOK_CACHE_DIR       cache.directory

Example songbook.yaml:
    remote:
      database_url: "https://lmpi-c5c5c-default-rtdb.firebaseio.com"
      requests_per_second: 10

    cache:
      directory: "~/.songbook_sync"
      ttl_hours: 168
      memory_ttl_minutes: 30

    connectivity:
      guest_read_timeout: 10
      signal_timeout: 6

    sync:
      change_check_interval_hours: 6
      refresh_role: guest

    snapshot:
      path: "assets/lpmi.json"
      collection_id: LPMI
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from songbook_sync.core.exceptions import ConfigError
from songbook_sync.models import ActorRole


# Default configuration file name (looked up in current working directory)
CONFIG_FILENAME = "songbook.yaml"

DEFAULT_CACHE_DIRECTORY = "~/.songbook_sync"

DEFAULT_FLAKY_COLLECTIONS = (
    "lagu_krismas_26346",
    "christmas_collection",
    "krismas",
)

DEFAULT_PRELOAD_COLLECTIONS = ("LPMI", "SRD", "Lagu_belia")


@dataclass(frozen=True)
class RemoteConfig:
    """
    Remote document store configuration.

    Attributes:
        database_url: Base URL of the realtime database, or None when the
                      engine should run purely offline.
        auth_token: Optional access token appended to every request.
        requests_per_second: Client-side throttle for remote reads.
        legacy_path: Flat legacy song partition.
        collections_path: Collection metadata records.
        collection_songs_path: Per-collection song partitions.
        change_metadata_path: Small record mapping collection id -> hash.
        last_modified_path: Single global last-modified marker.
        connection_signal_path: Backend connectivity signal.
        server_clock_path: Volatile server-side clock value.
        guest_probe_path: Path read directly by the guest connectivity probe.
    """
    database_url: str | None = None
    auth_token: str | None = None
    requests_per_second: int = 10
    legacy_path: str = "songs"
    collections_path: str = "song_collections"
    collection_songs_path: str = "collection_songs"
    change_metadata_path: str = "sync_metadata/collections"
    last_modified_path: str = "sync_metadata/last_modified"
    connection_signal_path: str = ".info/connected"
    server_clock_path: str = ".info/serverTimeOffset"
    guest_probe_path: str = "songs"


@dataclass(frozen=True)
class CacheConfig:
    """
    Collection cache configuration.

    Attributes:
        directory: Directory holding the durable store file.
        ttl_hours: Durable entry validity. Measured in days in production
                   to keep remote read cost low.
        memory_ttl_minutes: Validity of the in-memory acceleration tier.
        background_refresh_ratio: Fraction of the TTL after which a read
                   served from cache schedules a background refresh.
        flaky_collections: Collection ids known to live at inconsistent
                   remote locations; they get multi-path lookup.
        default_timeout_seconds: Remote timeout for ordinary collections.
        flaky_timeout_seconds: Remote timeout for flaky collections.
    """
    directory: Path
    ttl_hours: float = 168.0
    memory_ttl_minutes: float = 30.0
    background_refresh_ratio: float = 0.95
    flaky_collections: tuple[str, ...] = DEFAULT_FLAKY_COLLECTIONS
    default_timeout_seconds: float = 8.0
    flaky_timeout_seconds: float = 15.0

    @property
    def db_path(self) -> Path:
        return self.directory / "cache.db"


@dataclass(frozen=True)
class ConnectivityConfig:
    """
    Timeouts (seconds) for each step of the connectivity probe.

    Attributes:
        guest_read_timeout: Step 1, direct data read for guests.
        signal_timeout: Step 2, backend connectivity signal.
        clock_timeout: Step 3, server clock read.
        last_resort_timeout: Step 4, direct data read retried.
        result_cache_seconds: How long a probe answer is reused.
                              0 disables reuse.
    """
    guest_read_timeout: float = 10.0
    signal_timeout: float = 6.0
    clock_timeout: float = 6.0
    last_resort_timeout: float = 15.0
    result_cache_seconds: float = 30.0


@dataclass(frozen=True)
class SyncConfig:
    """
    Sync scheduling configuration.

    Attributes:
        change_check_interval_hours: Minimum gap between two remote
                   change-metadata probes.
        refresh_role: Actor role used for background/forced refreshes.
        remote_timeout_guest: Remote read timeout for guest actors.
        remote_timeout_authenticated: Remote read timeout for everyone else.
        preload_collections: Collections warmed in the background at start.
    """
    change_check_interval_hours: float = 6.0
    refresh_role: str = "guest"
    remote_timeout_guest: float = 20.0
    remote_timeout_authenticated: float = 10.0
    preload_collections: tuple[str, ...] = DEFAULT_PRELOAD_COLLECTIONS


@dataclass(frozen=True)
class SnapshotConfig:
    """
    Bundled snapshot configuration.

    Attributes:
        path: JSON file shipped with the app (list or key-map of songs),
              or None when no snapshot is available.
        collection_id: Collection the snapshot content belongs to; a
              collection read for this id may fall back to the snapshot.
    """
    path: Path | None = None
    collection_id: str = "LPMI"


@dataclass(frozen=True)
class Config:
    """
    Complete engine configuration.

    Created by load_config() and treated as immutable.

    Example:
        config = load_config()
        print(f"Cache file: {config.cache.db_path}")
        print(f"TTL: {config.cache.ttl_hours}h")
    """
    remote: RemoteConfig
    cache: CacheConfig
    connectivity: ConnectivityConfig
    sync: SyncConfig
    snapshot: SnapshotConfig

    @classmethod
    def default(cls, cache_directory: Path | None = None) -> "Config":
        """Build a configuration made only of defaults."""
        directory = cache_directory or Path(DEFAULT_CACHE_DIRECTORY).expanduser()
        return cls(
            remote=RemoteConfig(),
            cache=CacheConfig(directory=directory),
            connectivity=ConnectivityConfig(),
            sync=SyncConfig(),
            snapshot=SnapshotConfig(),
        )


def load_config(config_path: Path | None = None) -> Config:
    """
    Load and validate configuration from songbook.yaml.

    Args:
        config_path: Optional explicit path to config file.
                     If None, looks for songbook.yaml in the current working
                     directory and falls back to defaults when absent.

    Returns:
        Config: A frozen dataclass containing all configuration values.

    Raises:
        ConfigError: If an explicit config file is not found, has invalid
                     YAML syntax, or contains invalid values.

    Behavior:
        1. Load .env (if any) into the process environment
        2. Locate and parse the YAML file (or start from an empty dict)
        3. Parse each section with defaults applied
        4. Apply environment overrides
        5. Return the frozen Config object
    """
    load_dotenv()

    explicit = config_path is not None
    if config_path is None:
        config_path = Path.cwd() / CONFIG_FILENAME

    raw_config: dict[str, Any] = {}
    if config_path.exists():
        raw_config = _read_yaml(config_path)
    elif explicit:
        raise ConfigError(
            f"Configuration file not found: {config_path}",
            details={"file_path": str(config_path)}
        )

    for section in ("remote", "cache", "connectivity", "sync", "snapshot"):
        value = raw_config.get(section)
        if value is not None and not isinstance(value, dict):
            raise ConfigError(
                f"Section '{section}' must be a dictionary",
                details={"section": section}
            )

    return Config(
        remote=_parse_remote_config(raw_config.get("remote") or {}),
        cache=_parse_cache_config(raw_config.get("cache") or {}),
        connectivity=_parse_connectivity_config(raw_config.get("connectivity") or {}),
        sync=_parse_sync_config(raw_config.get("sync") or {}),
        snapshot=_parse_snapshot_config(raw_config.get("snapshot") or {}),
    )


def _read_yaml(config_path: Path) -> dict[str, Any]:
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            content = f.read()
    except IOError as e:
        raise ConfigError(
            f"Failed to read configuration file: {e}",
            details={"file_path": str(config_path), "original_error": str(e)}
        ) from e

    try:
        raw_config = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigError(
            f"Invalid YAML syntax in configuration file: {e}",
            details={"file_path": str(config_path), "original_error": str(e)}
        ) from e

    if raw_config is None:
        return {}
    if not isinstance(raw_config, dict):
        raise ConfigError(
            "Configuration file must contain a YAML dictionary",
            details={"file_path": str(config_path)}
        )
    return raw_config


def _positive_number(section: dict[str, Any], key: str, default: float, field: str) -> float:
    """
    Read a positive number from a section, applying the default if absent.

    Raises:
        ConfigError: If the value is present but not a positive number.
    """
    raw = section.get(key)
    if raw is None:
        return default
    if isinstance(raw, bool) or not isinstance(raw, (int, float)) or raw <= 0:
        raise ConfigError(
            f"'{field}' must be a positive number",
            details={"field": field, "value": raw}
        )
    return float(raw)


def _optional_string(section: dict[str, Any], key: str, field: str) -> str | None:
    raw = section.get(key)
    if raw is None:
        return None
    if not isinstance(raw, str) or not raw.strip():
        raise ConfigError(
            f"'{field}' must be a non-empty string or null",
            details={"field": field}
        )
    return raw.strip()


def _string_tuple(section: dict[str, Any], key: str, default: tuple[str, ...], field: str) -> tuple[str, ...]:
    raw = section.get(key)
    if raw is None:
        return default
    if not isinstance(raw, list) or not all(isinstance(item, str) for item in raw):
        raise ConfigError(
            f"'{field}' must be a list of strings",
            details={"field": field}
        )
    return tuple(item.strip() for item in raw if item.strip())


def _parse_remote_config(section: dict[str, Any]) -> RemoteConfig:
    database_url = os.environ.get("SONGBOOK_DATABASE_URL") or _optional_string(
        section, "database_url", "remote.database_url"
    )
    auth_token = os.environ.get("SONGBOOK_AUTH_TOKEN") or _optional_string(
        section, "auth_token", "remote.auth_token"
    )

    if database_url is not None and not database_url.startswith(("http://", "https://")):
        raise ConfigError(
            "'remote.database_url' must be an http(s) URL",
            details={"field": "remote.database_url", "value": database_url}
        )

    rps = section.get("requests_per_second", 10)
    if isinstance(rps, bool) or not isinstance(rps, int) or rps < 1:
        raise ConfigError(
            "'remote.requests_per_second' must be a positive integer",
            details={"field": "remote.requests_per_second", "value": rps}
        )

    paths = {}
    for key in (
        "legacy_path",
        "collections_path",
        "collection_songs_path",
        "change_metadata_path",
        "last_modified_path",
        "connection_signal_path",
        "server_clock_path",
        "guest_probe_path",
    ):
        value = _optional_string(section, key, f"remote.{key}")
        if value is not None:
            paths[key] = value.strip("/")

    return RemoteConfig(
        database_url=database_url.rstrip("/") if database_url else None,
        auth_token=auth_token,
        requests_per_second=rps,
        **paths
    )


def _parse_cache_config(section: dict[str, Any]) -> CacheConfig:
    directory_raw = os.environ.get("SONGBOOK_CACHE_DIR") or section.get(
        "directory", DEFAULT_CACHE_DIRECTORY
    )
    if not isinstance(directory_raw, str) or not directory_raw.strip():
        raise ConfigError(
            "'cache.directory' must be a non-empty string",
            details={"field": "cache.directory"}
        )
    # Expand ~ and make absolute; the directory is created by the store
    directory = Path(directory_raw.strip()).expanduser().resolve()

    ratio = section.get("background_refresh_ratio", 0.95)
    if isinstance(ratio, bool) or not isinstance(ratio, (int, float)) or not 0 < ratio <= 1:
        raise ConfigError(
            "'cache.background_refresh_ratio' must be in (0, 1]",
            details={"field": "cache.background_refresh_ratio", "value": ratio}
        )

    return CacheConfig(
        directory=directory,
        ttl_hours=_positive_number(section, "ttl_hours", 168.0, "cache.ttl_hours"),
        memory_ttl_minutes=_positive_number(
            section, "memory_ttl_minutes", 30.0, "cache.memory_ttl_minutes"
        ),
        background_refresh_ratio=float(ratio),
        flaky_collections=_string_tuple(
            section, "flaky_collections", DEFAULT_FLAKY_COLLECTIONS, "cache.flaky_collections"
        ),
        default_timeout_seconds=_positive_number(
            section, "default_timeout_seconds", 8.0, "cache.default_timeout_seconds"
        ),
        flaky_timeout_seconds=_positive_number(
            section, "flaky_timeout_seconds", 15.0, "cache.flaky_timeout_seconds"
        ),
    )


def _parse_connectivity_config(section: dict[str, Any]) -> ConnectivityConfig:
    cache_seconds = section.get("result_cache_seconds", 30.0)
    if isinstance(cache_seconds, bool) or not isinstance(cache_seconds, (int, float)) or cache_seconds < 0:
        raise ConfigError(
            "'connectivity.result_cache_seconds' must be zero or a positive number",
            details={"field": "connectivity.result_cache_seconds", "value": cache_seconds}
        )

    return ConnectivityConfig(
        guest_read_timeout=_positive_number(
            section, "guest_read_timeout", 10.0, "connectivity.guest_read_timeout"
        ),
        signal_timeout=_positive_number(section, "signal_timeout", 6.0, "connectivity.signal_timeout"),
        clock_timeout=_positive_number(section, "clock_timeout", 6.0, "connectivity.clock_timeout"),
        last_resort_timeout=_positive_number(
            section, "last_resort_timeout", 15.0, "connectivity.last_resort_timeout"
        ),
        result_cache_seconds=float(cache_seconds),
    )


def _parse_sync_config(section: dict[str, Any]) -> SyncConfig:
    refresh_role = section.get("refresh_role", "guest")
    if not isinstance(refresh_role, str) or not ActorRole.is_known(refresh_role):
        raise ConfigError(
            f"'sync.refresh_role' must be one of: {', '.join(ActorRole.names())}",
            details={"field": "sync.refresh_role", "value": refresh_role}
        )

    return SyncConfig(
        change_check_interval_hours=_positive_number(
            section, "change_check_interval_hours", 6.0, "sync.change_check_interval_hours"
        ),
        refresh_role=refresh_role.strip().lower(),
        remote_timeout_guest=_positive_number(
            section, "remote_timeout_guest", 20.0, "sync.remote_timeout_guest"
        ),
        remote_timeout_authenticated=_positive_number(
            section, "remote_timeout_authenticated", 10.0, "sync.remote_timeout_authenticated"
        ),
        preload_collections=_string_tuple(
            section, "preload_collections", DEFAULT_PRELOAD_COLLECTIONS, "sync.preload_collections"
        ),
    )


def _parse_snapshot_config(section: dict[str, Any]) -> SnapshotConfig:
    path_raw = _optional_string(section, "path", "snapshot.path")
    collection_id = section.get("collection_id", "LPMI")
    if not isinstance(collection_id, str) or not collection_id.strip():
        raise ConfigError(
            "'snapshot.collection_id' must be a non-empty string",
            details={"field": "snapshot.collection_id"}
        )

    return SnapshotConfig(
        path=Path(path_raw).expanduser().resolve() if path_raw else None,
        collection_id=collection_id.strip(),
    )
