"""
songbook-sync: offline-first caching and sync engine for a songbook reader.

Makes a large, hierarchical song collection stored in a remote realtime
database available instantly and reliably on a device with intermittent
connectivity, while the backend's layout migrates from one flat song
partition to access-controlled per-collection partitions.

Architecture:
    Reads resolve through tiers, falling back on each failure:

        remote (collections + legacy, merged) -> fresh cache
            -> stale cache -> bundled snapshot -> empty result

    connectivity.py     - ConnectivityProbe: is the backend really reachable?
    cache/              - CollectionCache (memory + SQLite, TTL, content hash),
                          ChangeDetector, MigrationGate
    resolver.py         - SourceResolver: dual-read, merge, fallback
    sync/               - SyncOrchestrator: startup, refresh dedupe,
                          background refresh, emergency reset
    context.py          - SongbookContext: owns all of the above, public API
    remote/             - RemoteStore interface, Firebase REST client, parsing
    core/               - Configuration, durable store, logging, exceptions
    cli.py              - Command-line interface

Usage:
    Command Line:
        songbook songs
        songbook collection LPMI --role premium
        songbook page --size 20
        songbook refresh --force

    Python API:
        from songbook_sync import SongbookContext, load_config

        async with SongbookContext(load_config()) as songbook:
            result = await songbook.get_all_songs(role="guest")

Configuration:
    Optional songbook.yaml in the current directory; see
    songbook_sync.core.config for every section and its defaults.

Dependencies:
    - aiohttp: Remote REST client
    - asyncio-throttle: Client-side request rate limiting
    - pyyaml: Configuration file parsing
    - python-dotenv: .env support for secrets
    - click / rich-click: CLI
    - tqdm: Console logging and progress bars
"""

__version__ = "0.1.0"
__author__ = "songbook-sync"
__license__ = "MIT"

# Convenience imports for common usage
from songbook_sync.context import SongbookContext
from songbook_sync.core import (
    Config,
    ConfigError,
    DurableStore,
    RemoteError,
    SongbookSyncError,
    get_logger,
    load_config,
    setup_logging,
)
from songbook_sync.models import (
    AccessLevel,
    ActorRole,
    DataSource,
    PageResult,
    Song,
    SongCollection,
    SongsResult,
    Verse,
)

__all__ = [
    # Version
    "__version__",
    # Core
    "Config",
    "load_config",
    "DurableStore",
    "setup_logging",
    "get_logger",
    # Exceptions
    "SongbookSyncError",
    "ConfigError",
    "RemoteError",
    # Engine
    "SongbookContext",
    # Models
    "AccessLevel",
    "ActorRole",
    "DataSource",
    "PageResult",
    "Song",
    "SongCollection",
    "SongsResult",
    "Verse",
]
