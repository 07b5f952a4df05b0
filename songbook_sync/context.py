"""
Explicit owner of every engine service.

SongbookContext builds the store, remote client, probe, cache, change
detector, migration gate, resolver and orchestrator from one Config, and
ties their lifecycle to start()/stop() instead of module-level singletons.

It is also the public API. Roles are accepted as the opaque strings the
authorization layer hands out ("guest", "user", "premium", ...). Read
operations never raise: failures surface as an empty result with
is_online=False.

Usage:
    config = load_config()
    async with SongbookContext(config) as songbook:
        result = await songbook.get_all_songs(role="premium")
        page = await songbook.get_paginated_songs(page_size=20)
        await songbook.force_refresh()
        print(await songbook.get_cache_statistics())
"""

import asyncio
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable

from songbook_sync.cache.change_detector import ChangeDetector
from songbook_sync.cache.collection_cache import CollectionCache, utc_now
from songbook_sync.cache.migration import MigrationGate
from songbook_sync.connectivity import ConnectivityProbe
from songbook_sync.core.config import Config, load_config
from songbook_sync.core.logger import get_logger
from songbook_sync.core.store import DurableStore
from songbook_sync.models import (
    ActorRole,
    CacheStatistics,
    PageResult,
    SearchResult,
    SongCollection,
    SongLookup,
    SongsResult,
)
from songbook_sync.remote.client import (
    FirebaseRestStore,
    RemoteStore,
    UnconfiguredRemoteStore,
)
from songbook_sync.resolver import SourceResolver
from songbook_sync.snapshot import BundledSnapshot
from songbook_sync.sync.orchestrator import RefreshOutcome, SyncOrchestrator


logger = get_logger(__name__)


def build_remote(config: Config) -> RemoteStore:
    """Create the remote client described by config.remote."""
    if config.remote.database_url is None:
        logger.info("No remote database configured, running offline")
        return UnconfiguredRemoteStore()
    return FirebaseRestStore(
        config.remote.database_url,
        auth_token=config.remote.auth_token,
        requests_per_second=config.remote.requests_per_second,
    )


class SongbookContext:
    """
    Application-scoped container and public read API.

    Args:
        config: Engine configuration.
        remote: Remote store; built from config when None.
        store: Durable store; opened at config.cache.db_path when None.
        sleep: Sleep function used for retry backoff.
        clock: UTC clock used for cache ages and change-check intervals.
    """

    def __init__(
        self,
        config: Config,
        remote: RemoteStore | None = None,
        store: DurableStore | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utc_now
    ) -> None:
        self.config = config
        self.remote = remote if remote is not None else build_remote(config)
        self.store = store if store is not None else DurableStore(config.cache.db_path)

        self.snapshot = BundledSnapshot(config.snapshot.path, config.snapshot.collection_id)
        self.probe = ConnectivityProbe(self.remote, config.connectivity, config.remote)
        self.cache = CollectionCache(self.store, config.cache, clock=clock)
        self.detector = ChangeDetector(
            self.remote, self.cache, config.remote, config.sync, clock=clock
        )
        self.migrations = MigrationGate(self.store)
        self.resolver = SourceResolver(
            self.remote, self.probe, self.cache, self.snapshot, config
        )
        self.orchestrator = SyncOrchestrator(
            self.resolver,
            self.cache,
            self.detector,
            self.migrations,
            self.probe,
            config,
            sleep=sleep,
        )

    @classmethod
    def from_config_file(cls, config_path: Path | None = None) -> "SongbookContext":
        """
        Build a context from songbook.yaml.

        Raises:
            ConfigError: If the configuration is invalid.
        """
        return cls(load_config(config_path))

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self, preload: bool = False) -> "SongbookContext":
        """
        Initialize the engine (migrations, cache version check).

        Args:
            preload: Also warm the configured preload collections in the
                     background.
        """
        await self.orchestrator.initialize()
        if preload:
            self.orchestrator.start_preload()
        return self

    async def stop(self) -> None:
        """Cancel background work and release network and disk handles."""
        await self.orchestrator.close()
        await self.remote.close()
        await asyncio.to_thread(self.store.close)

    async def __aenter__(self) -> "SongbookContext":
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    # =========================================================================
    # Public API
    # =========================================================================

    async def get_all_songs(self, role: str | None = None) -> SongsResult:
        await self.orchestrator.initialize()
        return await self.resolver.get_all_songs(ActorRole.parse(role))

    async def get_songs_for_collection(self, collection_id: str, role: str | None = None) -> SongsResult:
        await self.orchestrator.initialize()
        return await self.resolver.get_songs_for_collection(collection_id, ActorRole.parse(role))

    async def get_paginated_songs(
        self,
        page_size: int,
        cursor: str | None = None,
        role: str | None = None
    ) -> PageResult:
        await self.orchestrator.initialize()
        return await self.resolver.get_paginated_songs(page_size, cursor, ActorRole.parse(role))

    async def search_songs(self, term: str, role: str | None = None) -> SearchResult:
        await self.orchestrator.initialize()
        return await self.resolver.search_songs(term, ActorRole.parse(role))

    async def get_song_by_number(self, number: str, role: str | None = None) -> SongLookup:
        await self.orchestrator.initialize()
        return await self.resolver.get_song_by_number(number, ActorRole.parse(role))

    async def get_accessible_collections(self, role: str | None = None) -> list[SongCollection]:
        await self.orchestrator.initialize()
        return await self.resolver.get_accessible_collections(ActorRole.parse(role))

    async def get_collection_with_retry(
        self,
        collection_id: str,
        role: str | None = None,
        max_retries: int = 3
    ) -> SongsResult:
        await self.orchestrator.initialize()
        return await self.orchestrator.get_collection_with_retry(
            collection_id, ActorRole.parse(role), max_retries
        )

    async def refresh(self, role: str | None = None) -> RefreshOutcome:
        return await self.orchestrator.refresh(ActorRole.parse(role) if role else None)

    async def force_refresh(self, role: str | None = None) -> RefreshOutcome:
        return await self.orchestrator.force_refresh(ActorRole.parse(role) if role else None)

    async def emergency_reset(self, role: str | None = None) -> RefreshOutcome:
        return await self.orchestrator.emergency_reset(ActorRole.parse(role) if role else None)

    async def clear_cache(self) -> None:
        await self.orchestrator.clear_cache()

    async def get_cache_statistics(self) -> CacheStatistics:
        await self.orchestrator.initialize()
        return await self.orchestrator.statistics()
