"""
Sync orchestration: startup, refresh scheduling and emergency reset.

States:
    UNINITIALIZED -> INITIALIZING -> READY

    initialize() runs pending cache migrations and enforces the cache
    version before the first read.

Refresh:
    At most one refresh runs at a time. A caller arriving while one is in
    flight awaits the running refresh instead of starting its own.

    - refresh():          ordinary refresh, gated by the ChangeDetector
    - force_refresh():    ignores change detection and content hashes,
                          always reads the remote and rewrites the cache
    - emergency_reset():  wipes cache and sync metadata, then force_refresh()

Background refresh:
    The resolver calls schedule_background_refresh() when it serves an entry
    close to expiry. The refresh runs as a detached asyncio task; the
    triggering read never awaits it. Its outcome (or exception) is observed
    only here, through a done-callback that logs it.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable

from songbook_sync.cache.change_detector import ChangeDetector
from songbook_sync.cache.collection_cache import CACHE_VERSION, CollectionCache
from songbook_sync.cache.migration import MigrationGate
from songbook_sync.connectivity import ConnectivityProbe
from songbook_sync.core.config import Config
from songbook_sync.core.exceptions import MigrationError, RemoteError
from songbook_sync.core.logger import get_logger
from songbook_sync.models import ActorRole, CacheStatistics, SongsResult
from songbook_sync.resolver import SourceResolver


logger = get_logger(__name__)


class SyncState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"


class RefreshStatus(str, Enum):
    COMPLETED = "completed"
    UNCHANGED = "unchanged"
    OFFLINE = "offline"
    FAILED = "failed"


@dataclass(frozen=True)
class RefreshOutcome:
    """
    Result of one refresh run.

    Attributes:
        status: How the refresh ended.
        songs_fetched: Songs read from the remote store (both layouts).
        entries_written: Durable cache entries actually rewritten.
        forced: True for force_refresh()/emergency_reset() runs.
        error: Failure description when status is FAILED.
    """
    status: RefreshStatus
    songs_fetched: int = 0
    entries_written: int = 0
    forced: bool = False
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status in (RefreshStatus.COMPLETED, RefreshStatus.UNCHANGED)


class SyncOrchestrator:
    """
    Owns the refresh lifecycle of the cache.

    Example:
        orchestrator = SyncOrchestrator(resolver, cache, detector, gate, probe, config)
        await orchestrator.initialize()
        outcome = await orchestrator.force_refresh()
        print(outcome.status, outcome.entries_written)
    """

    def __init__(
        self,
        resolver: SourceResolver,
        cache: CollectionCache,
        detector: ChangeDetector,
        migrations: MigrationGate,
        probe: ConnectivityProbe,
        config: Config,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ) -> None:
        self._resolver = resolver
        self._cache = cache
        self._detector = detector
        self._migrations = migrations
        self._probe = probe
        self._config = config
        self._sleep = sleep

        self.state = SyncState.UNINITIALIZED
        self.last_background_outcome: RefreshOutcome | None = None
        self._init_task: asyncio.Task | None = None
        self._refresh_task: asyncio.Task | None = None
        self._refresh_forced = False
        self._background: set[asyncio.Task] = set()

        resolver.refresh_trigger = self.schedule_background_refresh

    @property
    def refresh_role(self) -> ActorRole:
        return ActorRole.parse(self._config.sync.refresh_role)

    @property
    def refresh_in_flight(self) -> bool:
        return self._refresh_task is not None and not self._refresh_task.done()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def initialize(self) -> None:
        """
        Run migrations and cache version checks once.

        Concurrent callers share the same initialization. A failed migration
        is logged and retried on the next start; the engine still starts.
        """
        if self.state is SyncState.READY:
            return
        if self._init_task is None:
            self._init_task = asyncio.create_task(self._initialize())
        await asyncio.shield(self._init_task)

    async def _initialize(self) -> None:
        self.state = SyncState.INITIALIZING
        logger.debug("Initializing sync engine")
        try:
            await self._migrations.run()
        except MigrationError as e:
            logger.error(f"{e.message} (will retry on next start)")
        await self._cache.initialize()
        self.state = SyncState.READY
        logger.info("Sync engine ready")

    async def wait_idle(self) -> None:
        """Wait until background refreshes and preloads have finished."""
        while self._background:
            await asyncio.wait(set(self._background))

    async def close(self) -> None:
        """Cancel background work and wait for it to finish."""
        tasks = list(self._background)
        if self._refresh_task is not None and not self._refresh_task.done():
            tasks.append(self._refresh_task)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._background.clear()

    # =========================================================================
    # Refresh
    # =========================================================================

    async def refresh(self, role: ActorRole | None = None) -> RefreshOutcome:
        """
        Refresh the cache if the remote changed.

        If a refresh is already running, waits for it and returns its outcome.
        """
        if self.refresh_in_flight:
            logger.debug("Refresh already in flight, waiting for it")
            return await asyncio.shield(self._refresh_task)
        return await self._start_refresh(force=False, role=role)

    async def force_refresh(self, role: ActorRole | None = None) -> RefreshOutcome:
        """
        Refresh from the remote regardless of change detection and hashes.

        A non-forced refresh already in flight is awaited first, then the
        forced one runs; a forced one in flight is simply shared.
        """
        while self.refresh_in_flight:
            if self._refresh_forced:
                return await asyncio.shield(self._refresh_task)
            # wait() never raises; the running refresh reports its own failure
            await asyncio.wait({self._refresh_task})
        self._probe.invalidate()
        return await self._start_refresh(force=True, role=role)

    async def _start_refresh(self, force: bool, role: ActorRole | None) -> RefreshOutcome:
        self._refresh_forced = force
        self._refresh_task = asyncio.create_task(self._run_refresh(force, role or self.refresh_role))
        return await asyncio.shield(self._refresh_task)

    async def _run_refresh(self, force: bool, role: ActorRole) -> RefreshOutcome:
        await self.initialize()

        if not await self._probe.is_online(role):
            logger.info("Refresh skipped: remote store unreachable")
            return RefreshOutcome(status=RefreshStatus.OFFLINE, forced=force)

        if not force and not await self._detector.has_remote_changed_since_last_check():
            logger.info("Refresh skipped: remote unchanged")
            return RefreshOutcome(status=RefreshStatus.UNCHANGED)

        try:
            fetch = await self._resolver.fetch_remote(role)
        except RemoteError as e:
            logger.error(f"Refresh failed: {e.message}")
            return RefreshOutcome(status=RefreshStatus.FAILED, forced=force, error=e.message)

        songs_fetched = sum(len(songs) for songs in fetch.partitions.values()) + len(fetch.legacy)
        if songs_fetched == 0:
            logger.warning("Refresh read no songs, keeping existing cache")
            return RefreshOutcome(
                status=RefreshStatus.FAILED,
                forced=force,
                error="remote returned no songs"
            )

        written = await self._resolver.persist(fetch, force=force)
        await self._cache.mark_synced()
        await self._detector.acknowledge()

        logger.info(
            f"Refresh completed: {songs_fetched} songs, {written} cache entries written"
            + (" (forced)" if force else "")
        )
        return RefreshOutcome(
            status=RefreshStatus.COMPLETED,
            songs_fetched=songs_fetched,
            entries_written=written,
            forced=force,
        )

    def schedule_background_refresh(self, collection_id: str | None = None) -> asyncio.Task | None:
        """
        Start a detached refresh unless one is already running.

        Args:
            collection_id: Entry that triggered the refresh (for logging).

        Returns:
            The running refresh task, or None outside an event loop.
        """
        if self.refresh_in_flight:
            return self._refresh_task

        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, background refresh not scheduled")
            return None

        logger.info(
            "Starting background refresh"
            + (f" (triggered by {collection_id})" if collection_id else "")
        )
        task = asyncio.create_task(self.refresh())
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            logger.debug("Background refresh cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background refresh crashed: {error!r}")
            self.last_background_outcome = RefreshOutcome(status=RefreshStatus.FAILED, error=repr(error))
            return
        self.last_background_outcome = task.result()
        logger.debug(f"Background refresh finished: {self.last_background_outcome.status.value}")

    async def emergency_reset(self, role: ActorRole | None = None) -> RefreshOutcome:
        """
        Wipe all cache entries and sync metadata, then force a refresh.

        For callers that detect persistent inconsistency.
        """
        logger.warning("Emergency reset: wiping cache and sync metadata")
        await self.initialize()
        await self._cache.clear()
        return await self.force_refresh(role)

    async def clear_cache(self) -> None:
        await self.initialize()
        await self._cache.clear()
        logger.info("Cache cleared")

    # =========================================================================
    # Warm-up and retries
    # =========================================================================

    async def preload(
        self,
        collection_ids: tuple[str, ...] | list[str] | None = None,
        role: ActorRole | None = None
    ) -> dict[str, int]:
        """
        Warm the cache for selected collections.

        Skipped entirely when offline. Collections already fresh in cache
        cost no remote read.

        Returns:
            Collection id -> number of songs available after warm-up.
        """
        role = role or self.refresh_role
        ids = tuple(collection_ids) if collection_ids is not None else self._config.sync.preload_collections
        if not ids:
            return {}
        if not await self._probe.is_online(role):
            logger.info("Preload skipped: offline")
            return {}

        results = await asyncio.gather(
            *(self._resolver.get_songs_for_collection(cid, role) for cid in ids)
        )
        counts = {cid: len(result.songs) for cid, result in zip(ids, results)}
        logger.info(f"Preloaded collections: {counts}")
        return counts

    def start_preload(self, collection_ids: tuple[str, ...] | None = None) -> asyncio.Task:
        """Run preload() as a detached task."""
        task = asyncio.create_task(self.preload(collection_ids))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def get_collection_with_retry(
        self,
        collection_id: str,
        role: ActorRole = ActorRole.GUEST,
        max_retries: int = 3
    ) -> SongsResult:
        """
        Read a collection, retrying with progressive backoff while empty.

        Waits attempt * 2 seconds between attempts.

        Returns:
            The first non-empty result, or the last result.
        """
        result = SongsResult.exhausted()
        for attempt in range(1, max_retries + 1):
            result = await self._resolver.get_songs_for_collection(collection_id, role)
            if result.songs:
                return result
            if attempt < max_retries:
                delay = attempt * 2
                logger.debug(f"Collection {collection_id} empty, retrying in {delay}s")
                await self._sleep(delay)
        logger.warning(f"Collection {collection_id} still empty after {max_retries} attempts")
        return result

    # =========================================================================
    # Diagnostics
    # =========================================================================

    async def statistics(self) -> CacheStatistics:
        cached, fresh, songs = await self._cache.summary()
        return CacheStatistics(
            last_sync=await self._cache.last_sync(),
            cached_collections=cached,
            fresh_collections=fresh,
            total_cached_songs=songs,
            memory_entries=self._cache.memory_size,
            ttl_hours=self._config.cache.ttl_hours,
            durable_writes=self._cache.write_count,
            cache_version=CACHE_VERSION,
            migration_version=await self._migrations.stored_version(),
            orchestrator_state=self.state.value,
            refresh_in_flight=self.refresh_in_flight,
        )
