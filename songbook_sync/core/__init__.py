"""
Core module for songbook-sync.

This module provides the foundational components used throughout the engine:
    - exceptions: Custom exception classes for error handling
    - config: Configuration loading and validation
    - store: Thread-safe SQLite key/value store for the durable cache tier
    - logger: Logging system with multiple outputs

Usage:
    from songbook_sync.core import (
        Config, load_config,
        DurableStore,
        setup_logging, get_logger,
        SongbookSyncError, ConfigError, RemoteError
    )
"""

from songbook_sync.core.config import (
    CacheConfig,
    Config,
    ConnectivityConfig,
    RemoteConfig,
    SnapshotConfig,
    SyncConfig,
    load_config,
)
from songbook_sync.core.exceptions import (
    CacheCorruptionError,
    ConfigError,
    MigrationError,
    ParseError,
    RemoteError,
    SongbookSyncError,
    StoreError,
)
from songbook_sync.core.logger import (
    get_logger,
    log_degraded_read,
    setup_logging,
    shutdown_logging,
)
from songbook_sync.core.store import DurableStore

__all__ = [
    # Config
    "Config",
    "RemoteConfig",
    "CacheConfig",
    "ConnectivityConfig",
    "SyncConfig",
    "SnapshotConfig",
    "load_config",
    # Store
    "DurableStore",
    # Exceptions
    "SongbookSyncError",
    "ConfigError",
    "StoreError",
    "RemoteError",
    "ParseError",
    "CacheCorruptionError",
    "MigrationError",
    # Logger
    "setup_logging",
    "get_logger",
    "log_degraded_read",
    "shutdown_logging",
]
