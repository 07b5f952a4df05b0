"""
Unified song read API across remote, cache and bundled snapshot.

The remote store holds songs in two incompatible layouts:
    - the legacy flat partition (songs/<number>)
    - per-collection partitions (collection_songs/<collection id>/...),
      described by access-controlled metadata (song_collections/<id>)

SourceResolver reads both and merges them (collection copies win over
legacy copies of the same number), then degrades tier by tier:

    remote -> fresh cache -> stale cache -> bundled snapshot -> empty

Tier order inside one call is strict: the snapshot is never consulted
before remote and cache are exhausted. Every tier failure is logged and
demoted to the next tier; no public method raises for a read.

The resolver never persists directly. Everything it fetches is handed to
CollectionCache.put(), which owns the durable store.

Usage:
    resolver = SourceResolver(remote, probe, cache, snapshot, config)
    result = await resolver.get_all_songs(ActorRole.GUEST)
    print(len(result.songs), result.is_online, result.source)
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from songbook_sync.cache.collection_cache import CollectionCache, lookup_plan
from songbook_sync.connectivity import ConnectivityProbe
from songbook_sync.core.config import Config
from songbook_sync.core.exceptions import ParseError, RemoteError
from songbook_sync.core.logger import get_logger, log_degraded_read
from songbook_sync.models import (
    LEGACY_SCOPE,
    ActorRole,
    DataSource,
    PageResult,
    SearchResult,
    Song,
    SongCollection,
    SongLookup,
    SongsResult,
)
from songbook_sync.remote.client import RemoteStore
from songbook_sync.remote.parsing import (
    parse_collection,
    parse_collections,
    parse_song,
    parse_songs,
    sort_by_number,
)
from songbook_sync.snapshot import BundledSnapshot


logger = get_logger(__name__)


def merge_songs(collection_lists: list[list[Song]], legacy: list[Song]) -> list[Song]:
    """
    Merge collection partitions and the legacy partition by song number.

    Collections are merged in the order given and the first occurrence of
    a number wins; legacy songs only fill numbers no collection has.
    The result is stably sorted by numeric song number.

    Example:
        merged = merge_songs([collection_a], legacy)
    """
    merged: dict[str, Song] = {}
    for songs in collection_lists:
        for song in songs:
            merged.setdefault(song.number, song)
    for song in legacy:
        merged.setdefault(song.number, song)
    return sort_by_number(list(merged.values()))


def order_collections(collections: list[SongCollection]) -> list[SongCollection]:
    """Active first, then most recently updated, then by id."""
    oldest = datetime.min.replace(tzinfo=timezone.utc)
    by_id = sorted(collections, key=lambda c: c.id)
    by_recency = sorted(by_id, key=lambda c: c.updated_at or c.created_at or oldest, reverse=True)
    return sorted(by_recency, key=lambda c: not c.is_active)


@dataclass
class RemoteFetch:
    """
    Everything one full remote read produced.

    Attributes:
        collections: All collection metadata records (unfiltered).
        accessible: Active collections readable by the caller, merge order.
        partitions: Collection id -> songs, for partitions that had songs.
        legacy: Legacy partition, sorted by number.
        failures: Number of partitions or layouts that failed to read.
    """
    collections: list[SongCollection] = field(default_factory=list)
    accessible: list[SongCollection] = field(default_factory=list)
    partitions: dict[str, list[Song]] = field(default_factory=dict)
    legacy: list[Song] = field(default_factory=list)
    failures: int = 0


class SourceResolver:
    """
    Collection-first dual reader with cache and snapshot fallback.

    Attributes:
        refresh_trigger: Optional callback invoked with a collection id when
                         a read is served from an entry close to expiry.
                         The orchestrator installs it to schedule background
                         refreshes without the resolver depending on it.
    """

    def __init__(
        self,
        remote: RemoteStore,
        probe: ConnectivityProbe,
        cache: CollectionCache,
        snapshot: BundledSnapshot,
        config: Config,
        refresh_trigger: Callable[[str], None] | None = None
    ) -> None:
        self._remote = remote
        self._probe = probe
        self._cache = cache
        self._snapshot = snapshot
        self._config = config
        self.refresh_trigger = refresh_trigger

    def _timeout(self, role: ActorRole) -> float:
        if role.is_guest:
            return self._config.sync.remote_timeout_guest
        return self._config.sync.remote_timeout_authenticated

    # =========================================================================
    # Remote reads
    # =========================================================================

    async def fetch_collection_partition(self, collection_id: str) -> list[Song]:
        """
        Read one collection partition following its lookup plan.

        Returns:
            The collection's songs, [] if every candidate path was empty.

        Raises:
            RemoteError: If every candidate path failed.
        """
        plan = lookup_plan(collection_id, self._config.cache, self._config.remote)
        last_error: RemoteError | None = None
        answered = False

        for path in plan.paths:
            try:
                payload = await self._remote.get(path, plan.timeout)
            except RemoteError as e:
                logger.debug(f"Partition path {path} failed: {e.message}")
                last_error = e
                continue
            answered = True
            songs = parse_songs(payload, collection_id)
            if songs:
                if path != plan.paths[0]:
                    logger.info(f"Found collection {collection_id} at alternate path {path}")
                return songs

        if not answered and last_error is not None:
            raise last_error
        return []

    async def fetch_legacy(self, role: ActorRole) -> list[Song]:
        """
        Read the legacy flat partition.

        Raises:
            RemoteError: On any remote failure.
        """
        payload = await self._remote.get(self._config.remote.legacy_path, self._timeout(role))
        return sort_by_number(parse_songs(payload))

    async def fetch_collections(self, role: ActorRole) -> tuple[list[SongCollection], list[SongCollection]]:
        """
        Read collection metadata.

        Returns:
            (all collections, active collections readable by role in merge order)

        Raises:
            RemoteError: On any remote failure.
        """
        payload = await self._remote.get(self._config.remote.collections_path, self._timeout(role))
        collections = parse_collections(payload)
        accessible = [
            c for c in order_collections(collections)
            if c.is_active and role.can_access(c.access_level)
        ]
        return collections, accessible

    async def fetch_remote(self, role: ActorRole) -> RemoteFetch:
        """
        Read both layouts: collection metadata, every accessible partition,
        and the legacy partition. Partitions are read concurrently.

        Returns:
            RemoteFetch with whatever could be read.

        Raises:
            RemoteError: If neither the collection metadata nor the legacy
                         partition could be read.
        """
        fetch = RemoteFetch()
        metadata_error: RemoteError | None = None

        try:
            fetch.collections, fetch.accessible = await self.fetch_collections(role)
        except RemoteError as e:
            logger.warning(f"Collection metadata read failed: {e.message}")
            metadata_error = e
            fetch.failures += 1

        results = await asyncio.gather(
            *(self.fetch_collection_partition(c.id) for c in fetch.accessible),
            return_exceptions=True
        )
        for collection, result in zip(fetch.accessible, results):
            if isinstance(result, RemoteError):
                logger.warning(f"Collection {collection.id} read failed: {result.message}")
                fetch.failures += 1
            elif isinstance(result, BaseException):
                raise result
            elif result:
                fetch.partitions[collection.id] = result

        # Recompute denormalized counts from what was actually read
        counts = {cid: len(songs) for cid, songs in fetch.partitions.items()}
        fetch.collections = [c.with_song_count(counts.get(c.id, 0)) for c in fetch.collections]
        fetch.accessible = [c.with_song_count(counts.get(c.id, 0)) for c in fetch.accessible]

        try:
            fetch.legacy = await self.fetch_legacy(role)
        except RemoteError as e:
            logger.warning(f"Legacy partition read failed: {e.message}")
            fetch.failures += 1
            if metadata_error is not None:
                raise e

        return fetch

    async def persist(self, fetch: RemoteFetch, force: bool = False) -> int:
        """
        Hand a remote fetch to the cache.

        Returns:
            Number of durable entry writes.
        """
        partitions = dict(fetch.partitions)
        if fetch.legacy:
            partitions[LEGACY_SCOPE] = fetch.legacy
        if fetch.collections:
            await self._cache.remember_collections(fetch.collections)
        return await self._cache.populate(partitions, force=force)

    # =========================================================================
    # Cache and snapshot tiers
    # =========================================================================

    async def _cached_scopes(self, role: ActorRole) -> list[str]:
        """Cache scopes role may read, in merge order (legacy last)."""
        known = await self._cache.known_collections()
        scopes = [
            c.id for c in order_collections(known)
            if c.is_active and role.can_access(c.access_level)
        ]
        return scopes + [LEGACY_SCOPE]

    async def _all_from_cache(self, role: ActorRole, allow_stale: bool) -> SongsResult | None:
        collection_lists = []
        active = []
        legacy: list[Song] = []
        any_stale = False

        for scope in await self._cached_scopes(role):
            hit = await self._cache.lookup(scope, allow_stale=allow_stale)
            if hit is None:
                continue
            any_stale = any_stale or not hit.is_fresh
            if scope == LEGACY_SCOPE:
                legacy = list(hit.entry.songs)
            else:
                collection_lists.append(list(hit.entry.songs))
                active.append(scope)

        songs = merge_songs(collection_lists, legacy)
        if not songs:
            return None

        legacy_count = sum(1 for song in songs if song.collection_id is None)
        return SongsResult(
            songs=songs,
            is_online=False,
            source=DataSource.STALE_CACHE if any_stale else DataSource.CACHE,
            legacy_count=legacy_count,
            collection_count=len(songs) - legacy_count,
            active_collections=tuple(active),
        )

    async def _from_snapshot(self, operation: str, reason: str) -> SongsResult:
        songs = sort_by_number(await self._snapshot.load())
        if not songs:
            log_degraded_read(logger, operation, DataSource.NONE.value, reason, 0)
            return SongsResult.exhausted()

        log_degraded_read(logger, operation, DataSource.SNAPSHOT.value, reason, len(songs))
        return SongsResult(
            songs=songs,
            is_online=False,
            source=DataSource.SNAPSHOT,
            legacy_count=len(songs),
        )

    def _maybe_trigger_refresh(self, collection_id: str, hit_entry_due: bool) -> None:
        if hit_entry_due and self.refresh_trigger is not None:
            logger.debug(f"Entry {collection_id} close to expiry, scheduling refresh")
            self.refresh_trigger(collection_id)

    # =========================================================================
    # Public read API
    # =========================================================================

    async def get_all_songs(self, role: ActorRole = ActorRole.GUEST) -> SongsResult:
        """
        Return every song the caller may read.

        Args:
            role: Caller's role; collections above its access level are
                  left out of the merge.

        Returns:
            SongsResult; never raises.

        Behavior:
            1. Offline: bundled snapshot, is_online=False. The cache is not
               consulted, since a snapshot is static and cache freshness
               means nothing offline.
            2. Online: read collection metadata, every accessible active
               partition, and the legacy partition; merge with collection
               precedence; hand everything to the cache.
            3. Remote empty or failing: fresh cache, then stale cache,
               then bundled snapshot, then an empty result.
        """
        operation = "get_all_songs"
        if not await self._probe.is_online(role):
            return await self._from_snapshot(operation, "offline")

        remote_answered = False
        reason = "remote returned no songs"
        try:
            fetch = await self.fetch_remote(role)
            remote_answered = True
            songs = merge_songs(
                [fetch.partitions[c.id] for c in fetch.accessible if c.id in fetch.partitions],
                fetch.legacy
            )
            if songs:
                await self.persist(fetch)
                legacy_count = sum(1 for song in songs if song.collection_id is None)
                logger.info(
                    f"Loaded {len(songs)} songs ({len(fetch.partitions)} collections, "
                    f"{legacy_count} legacy)"
                )
                return SongsResult(
                    songs=songs,
                    is_online=True,
                    source=DataSource.REMOTE,
                    legacy_count=legacy_count,
                    collection_count=len(songs) - legacy_count,
                    active_collections=tuple(fetch.partitions),
                )
        except RemoteError as e:
            reason = f"remote failed: {e.message}"
            logger.warning(f"Remote read failed, falling back: {e.message}")
        except Exception as e:
            reason = f"unexpected error: {e}"
            logger.error(f"Unexpected error reading all songs, falling back: {e}", exc_info=True)

        for allow_stale in (False, True):
            cached = await self._all_from_cache(role, allow_stale=allow_stale)
            if cached is not None:
                if cached.source is DataSource.STALE_CACHE:
                    log_degraded_read(logger, operation, cached.source.value, reason, len(cached.songs))
                return SongsResult(
                    songs=cached.songs,
                    is_online=remote_answered,
                    source=cached.source,
                    legacy_count=cached.legacy_count,
                    collection_count=cached.collection_count,
                    active_collections=cached.active_collections,
                )

        return await self._from_snapshot(operation, reason)

    async def _collection_denied(self, collection_id: str, role: ActorRole) -> bool:
        for collection in await self._cache.known_collections():
            if collection.id == collection_id:
                return not role.can_access(collection.access_level)
        return False

    def _denied_by_record(self, collection_id: str, record: object, role: ActorRole) -> bool:
        try:
            collection = parse_collection(collection_id, record)
        except ParseError as e:
            logger.debug(f"Ignoring malformed metadata of {collection_id}: {e.message}")
            return False
        return not role.can_access(collection.access_level)

    async def get_songs_for_collection(
        self,
        collection_id: str,
        role: ActorRole = ActorRole.GUEST
    ) -> SongsResult:
        """
        Return the songs of one collection.

        Args:
            collection_id: Collection to read.
            role: Caller's role, checked against the collection's access level.

        Returns:
            SongsResult; never raises. An inaccessible collection yields an
            empty result.

        Behavior:
            1. Fresh cache (memory, then durable). Entries close to expiry
               schedule a background refresh but are still served.
            2. Remote, if online, after checking the collection's access level.
            3. Stale cache.
            4. Bundled snapshot, only for the snapshot's own collection.
            5. Empty result.
        """
        operation = "get_songs_for_collection"
        if await self._collection_denied(collection_id, role):
            logger.warning(f"Role {role.name.lower()} may not read collection {collection_id}")
            return SongsResult(songs=[], is_online=bool(self._probe.last_known(role)), source=DataSource.NONE)

        hit = await self._cache.lookup(collection_id)
        if hit is not None:
            self._maybe_trigger_refresh(collection_id, self._cache.needs_refresh(hit.entry))
            return SongsResult(
                songs=list(hit.entry.songs),
                is_online=bool(self._probe.last_known(role)),
                source=DataSource.CACHE,
                collection_count=len(hit.entry.songs),
                active_collections=(collection_id,),
            )

        online = await self._probe.is_online(role)
        reason = "offline"
        if online:
            try:
                record = await self._remote.get(
                    f"{self._config.remote.collections_path}/{collection_id}",
                    self._timeout(role)
                )
                if record is not None and self._denied_by_record(collection_id, record, role):
                    logger.warning(
                        f"Role {role.name.lower()} may not read collection {collection_id}"
                    )
                    return SongsResult(songs=[], is_online=True, source=DataSource.NONE)

                songs = await self.fetch_collection_partition(collection_id)
                if songs:
                    await self._cache.put(collection_id, songs)
                    return SongsResult(
                        songs=songs,
                        is_online=True,
                        source=DataSource.REMOTE,
                        collection_count=len(songs),
                        active_collections=(collection_id,),
                    )
                reason = "remote returned no songs"
            except RemoteError as e:
                reason = f"remote failed: {e.message}"
                logger.warning(f"Collection {collection_id} remote read failed: {e.message}")
                online = False
            except Exception as e:
                reason = f"unexpected error: {e}"
                logger.error(
                    f"Unexpected error reading collection {collection_id}, falling back: {e}",
                    exc_info=True
                )

        stale = await self._cache.lookup(collection_id, allow_stale=True)
        if stale is not None:
            self._maybe_trigger_refresh(collection_id, True)
            log_degraded_read(
                logger, operation, DataSource.STALE_CACHE.value, reason, len(stale.entry.songs)
            )
            return SongsResult(
                songs=list(stale.entry.songs),
                is_online=online,
                source=DataSource.STALE_CACHE,
                collection_count=len(stale.entry.songs),
                active_collections=(collection_id,),
            )

        if collection_id == self._snapshot.collection_id:
            return await self._from_snapshot(operation, reason)

        log_degraded_read(logger, operation, DataSource.NONE.value, reason, 0)
        return SongsResult(songs=[], is_online=online, source=DataSource.NONE)

    def _remote_page(
        self,
        rows: list[tuple[str, Any]],
        page_size: int,
        cursor: str | None
    ) -> PageResult:
        if cursor is not None and rows and rows[0][0] == cursor:
            rows = rows[1:]
        has_more = len(rows) > page_size
        rows = rows[:page_size]
        songs = []
        for key, raw in rows:
            try:
                songs.append(parse_song(raw, key))
            except ParseError as e:
                logger.debug(f"Skipping song record {key!r}: {e.message}")
        next_cursor = rows[-1][0] if has_more and rows else None
        return PageResult(songs=songs, is_online=True, has_more=has_more, next_cursor=next_cursor)

    async def get_paginated_songs(
        self,
        page_size: int,
        cursor: str | None = None,
        role: ActorRole = ActorRole.GUEST
    ) -> PageResult:
        """
        Return one page of the legacy partition in key order.

        Args:
            page_size: Songs per page. Values below 1 are read as 1.
            cursor: next_cursor of the previous page, None for the first page.
            role: Caller's role (selects the remote timeout).

        Returns:
            PageResult; never raises. Chaining next_cursor visits every
            record exactly once and ends with has_more=False.

        Behavior:
            The scan starts at the cursor key, which the store returns
            again as the first row. One extra row is requested for it,
            plus one more to detect whether another page follows. Offline
            or on remote failure the bundled snapshot is paginated with the
            same contract.
        """
        if page_size < 1:
            logger.debug(f"page_size {page_size} raised to 1")
            page_size = 1

        if await self._probe.is_online(role):
            limit = page_size + 1 + (1 if cursor is not None else 0)
            try:
                rows = await self._remote.scan(
                    self._config.remote.legacy_path, cursor, limit, self._timeout(role)
                )
                return self._remote_page(rows, page_size, cursor)
            except RemoteError as e:
                logger.warning(f"Paginated read failed, using snapshot: {e.message}")
            except Exception as e:
                logger.error(f"Unexpected error in paginated read, using snapshot: {e}", exc_info=True)

        songs, has_more, next_cursor = await self._snapshot.page(page_size, cursor)
        return PageResult(songs=songs, is_online=False, has_more=has_more, next_cursor=next_cursor)

    async def get_accessible_collections(self, role: ActorRole = ActorRole.GUEST) -> list[SongCollection]:
        """
        Collection metadata readable by role: active first, newest first.

        Falls back to the metadata last seen remotely when offline.
        """
        if await self._probe.is_online(role):
            try:
                collections, _ = await self.fetch_collections(role)
                await self._cache.remember_collections(collections)
                return [c for c in order_collections(collections) if role.can_access(c.access_level)]
            except RemoteError as e:
                logger.warning(f"Collection metadata read failed: {e.message}")

        known = await self._cache.known_collections()
        return [c for c in order_collections(known) if role.can_access(c.access_level)]

    async def search_songs(self, term: str, role: ActorRole = ActorRole.GUEST) -> SearchResult:
        """
        Case-insensitive search over title, number and lyrics.

        Returns:
            Matching songs plus the number of matches per collection
            (LEGACY_SCOPE for songs outside any collection).
        """
        result = await self.get_all_songs(role)
        needle = term.strip()
        matches = [song for song in result.songs if song.matches(needle)]

        counts: dict[str, int] = {}
        for song in matches:
            scope = song.collection_id or LEGACY_SCOPE
            counts[scope] = counts.get(scope, 0) + 1

        return SearchResult(
            songs=matches,
            term=needle,
            is_online=result.is_online,
            counts_by_collection=counts,
        )

    async def get_song_by_number(self, number: str, role: ActorRole = ActorRole.GUEST) -> SongLookup:
        """
        Find a song by number across everything role may read.

        Collection copies win over legacy copies, like in get_all_songs().
        """
        result = await self.get_all_songs(role)
        wanted = number.strip()
        for song in result.songs:
            if song.number == wanted:
                if song.collection_id is not None:
                    found_in = song.collection_id
                elif result.source is DataSource.SNAPSHOT:
                    found_in = self._snapshot.collection_id
                else:
                    found_in = LEGACY_SCOPE
                return SongLookup(song=song, found_in=found_in, is_online=result.is_online)
        return SongLookup(song=None, found_in=None, is_online=result.is_online)
