"""
Durable, versioned, hash-aware cache of per-collection song lists.

Two tiers are consulted in order:
    1. In-memory map with a short validity window (memory_ttl_minutes).
       Avoids re-reading and re-parsing the same entry within a session.
    2. Durable store (SQLite) with a long TTL (ttl_hours, days in
       production), so a device that was online once keeps working for a
       long time with few remote reads.

Writes:
    put() hashes the serialized songs and skips the durable write when the
    stored hash is identical, so no-op polls do not churn the disk.
    An empty song list is never stored: an empty entry would turn a
    transient empty read into a sticky false negative.

Corruption:
    An entry that cannot be decoded, or that decodes to zero songs, is
    removed on sight and reported as a miss.

Versioning:
    Every entry carries CACHE_VERSION and the store keeps a cache_version
    key. initialize() wipes the whole cache when the stored version differs
    from the code's, before any read is served.

Flaky collections:
    A small allow-list of collection ids that are stored at inconsistent
    remote locations gets a multi-path lookup plan with a longer timeout;
    see lookup_plan().

Usage:
    cache = CollectionCache(store, config.cache)
    await cache.initialize()

    await cache.put("LPMI", songs)
    hit = await cache.lookup("LPMI")
    if hit is not None and hit.is_fresh:
        songs = list(hit.entry.songs)
"""

import asyncio
import hashlib
import json
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Callable

from songbook_sync.core.config import CacheConfig, RemoteConfig
from songbook_sync.core.exceptions import CacheCorruptionError, StoreError
from songbook_sync.core.logger import get_logger
from songbook_sync.core.store import DurableStore
from songbook_sync.models import (
    AccessLevel,
    CacheEntry,
    CollectionStatus,
    Song,
    SongCollection,
    SyncMetadata,
)
from songbook_sync.remote.parsing import parse_songs, parse_timestamp


logger = get_logger(__name__)


CACHE_VERSION = 2

ENTRY_PREFIX = "collection_cache_"
HASH_PREFIX = "data_hash_"
AVAILABLE_KEY = "available_collections"
LAST_SYNC_KEY = "last_sync_timestamp"
LAST_METADATA_CHECK_KEY = "last_metadata_check"
VERSION_KEY = "cache_version"
SYNC_METADATA_KEY = "sync_metadata"
COLLECTIONS_KEY = "collection_metadata"


def content_hash(songs: list[Song] | tuple[Song, ...]) -> str:
    """SHA-256 of the canonical JSON form of songs."""
    payload = json.dumps(
        [song.to_dict() for song in songs],
        sort_keys=True,
        ensure_ascii=False,
        separators=(",", ":")
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class LookupPlan:
    """
    Where to look for a collection's partition on the remote store.

    Attributes:
        paths: Candidate remote paths, tried in order until one has data.
        timeout: Per-path timeout in seconds.
    """
    paths: tuple[str, ...]
    timeout: float


def lookup_plan(collection_id: str, cache_config: CacheConfig, remote_config: RemoteConfig) -> LookupPlan:
    """
    Build the remote lookup plan for a collection.

    Ordinary collections get their single canonical path and the default
    timeout. Collections on the flaky allow-list get the literal id, its
    case variants and the nested 'songs' sub-key, with the longer timeout.
    """
    base = remote_config.collection_songs_path
    flaky = {cid.lower() for cid in cache_config.flaky_collections}

    if collection_id.lower() not in flaky:
        return LookupPlan(
            paths=(f"{base}/{collection_id}",),
            timeout=cache_config.default_timeout_seconds
        )

    candidates = [
        f"{base}/{collection_id}",
        f"{base}/{collection_id.lower()}",
        f"{base}/{collection_id.upper()}",
        f"{base}/{collection_id}/songs",
    ]
    paths = tuple(dict.fromkeys(candidates))
    return LookupPlan(paths=paths, timeout=cache_config.flaky_timeout_seconds)


@dataclass(frozen=True)
class CacheHit:
    """
    A cache entry together with its freshness.

    Attributes:
        entry: The cached entry.
        is_fresh: True while the entry is within the durable TTL.
        from_memory: True if served by the in-memory tier.
    """
    entry: CacheEntry
    is_fresh: bool
    from_memory: bool


class CollectionCache:
    """
    Two-tier collection cache. Sole owner of persisted entries and sync
    metadata; other components read and write them only through here.

    All durable store access is pushed to a worker thread.
    """

    def __init__(
        self,
        store: DurableStore,
        config: CacheConfig,
        clock: Callable[[], datetime] = utc_now
    ) -> None:
        self._store = store
        self._config = config
        self._clock = clock
        # collection id -> (time placed in memory, entry)
        self._memory: dict[str, tuple[datetime, CacheEntry]] = {}

    @property
    def ttl(self) -> timedelta:
        return timedelta(hours=self._config.ttl_hours)

    @property
    def memory_ttl(self) -> timedelta:
        return timedelta(minutes=self._config.memory_ttl_minutes)

    @property
    def memory_size(self) -> int:
        return len(self._memory)

    @property
    def write_count(self) -> int:
        return self._store.write_count

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def initialize(self) -> None:
        """
        Enforce the cache version and drop empty entries.

        Must run before the first read. A store that cannot be read here is
        left alone; every later read treats its failures as misses.
        """
        try:
            stored = await asyncio.to_thread(self._store.get, VERSION_KEY)
            stored_version = int(stored) if stored is not None else 0
        except (StoreError, ValueError) as e:
            logger.warning(f"Could not read cache version, assuming 0: {e}")
            stored_version = 0

        if stored_version != CACHE_VERSION:
            logger.info(
                f"Cache version {stored_version} != {CACHE_VERSION}, wiping cache"
            )
            await self.clear()

        removed = await self.clear_empty_entries()
        if removed:
            logger.info(f"Removed {removed} empty cache entries")

    async def clear(self) -> None:
        """
        Wipe every entry, hash, index and all sync metadata.

        The cache version is rewritten afterwards so the wipe is not
        repeated on the next start. Migration bookkeeping is kept.
        """
        self._memory.clear()
        try:
            for prefix in (ENTRY_PREFIX, HASH_PREFIX):
                await asyncio.to_thread(self._store.delete_prefix, prefix)
            for key in (
                AVAILABLE_KEY, LAST_SYNC_KEY, LAST_METADATA_CHECK_KEY, SYNC_METADATA_KEY, COLLECTIONS_KEY
            ):
                await asyncio.to_thread(self._store.delete, key)
            await asyncio.to_thread(self._store.set, VERSION_KEY, str(CACHE_VERSION))
        except StoreError as e:
            logger.error(f"Failed to clear cache: {e}")

    # =========================================================================
    # Reads
    # =========================================================================

    async def get(self, collection_id: str) -> list[Song]:
        """
        Return the fresh cached songs of a collection, or [] on a miss.

        Expired entries count as misses here; use lookup(allow_stale=True)
        to reach them as a last resort.
        """
        hit = await self.lookup(collection_id)
        return list(hit.entry.songs) if hit is not None else []

    async def lookup(self, collection_id: str, allow_stale: bool = False) -> CacheHit | None:
        """
        Find an entry in memory, then in the durable store.

        Args:
            collection_id: Collection to look up.
            allow_stale: Also return entries past the durable TTL.

        Returns:
            CacheHit, or None on a miss (absent, corrupt, or expired when
            allow_stale is False).
        """
        now = self._clock()

        cached = self._memory.get(collection_id)
        if cached is not None:
            placed_at, entry = cached
            if now - placed_at <= self.memory_ttl:
                is_fresh = now - entry.captured_at <= self.ttl
                if is_fresh or allow_stale:
                    return CacheHit(entry=entry, is_fresh=is_fresh, from_memory=True)
            else:
                del self._memory[collection_id]

        entry = await self._read_entry(collection_id)
        if entry is None:
            return None

        is_fresh = now - entry.captured_at <= self.ttl
        if is_fresh:
            self._memory[collection_id] = (now, entry)
        elif not allow_stale:
            return None
        return CacheHit(entry=entry, is_fresh=is_fresh, from_memory=False)

    async def _read_entry(self, collection_id: str) -> CacheEntry | None:
        try:
            raw = await asyncio.to_thread(self._store.get, ENTRY_PREFIX + collection_id)
        except StoreError as e:
            logger.warning(f"Cache read failed for {collection_id}, treating as miss: {e}")
            return None
        if raw is None:
            return None

        try:
            return self._decode(collection_id, raw)
        except CacheCorruptionError as e:
            logger.warning(f"Evicting corrupt cache entry {collection_id}: {e.message}")
            await self.invalidate(collection_id)
            return None

    def _decode(self, collection_id: str, raw: str) -> CacheEntry:
        """
        Deserialize a stored entry.

        Raises:
            CacheCorruptionError: Undecodable JSON, wrong schema version,
                                  or zero songs.
        """
        try:
            data = json.loads(raw)
            captured_at = datetime.fromisoformat(data["captured_at"])
            schema_version = int(data.get("schema_version", 0))
            stored_hash = str(data.get("content_hash", ""))
            songs = parse_songs(data.get("songs"))
        except (ValueError, KeyError, TypeError) as e:
            raise CacheCorruptionError(
                f"Unreadable cache entry: {e}",
                details={"collection_id": collection_id}
            ) from e

        if schema_version != CACHE_VERSION:
            raise CacheCorruptionError(
                f"Entry written with schema version {schema_version}",
                details={"collection_id": collection_id, "schema_version": schema_version}
            )
        if not songs:
            raise CacheCorruptionError(
                "Entry contains no songs",
                details={"collection_id": collection_id}
            )

        return CacheEntry(
            collection_id=collection_id,
            songs=tuple(songs),
            captured_at=captured_at,
            content_hash=stored_hash,
            schema_version=schema_version,
        )

    @staticmethod
    def _encode(entry: CacheEntry) -> str:
        return json.dumps({
            "collection_id": entry.collection_id,
            "songs": [song.to_dict() for song in entry.songs],
            "captured_at": entry.captured_at.isoformat(),
            "content_hash": entry.content_hash,
            "schema_version": entry.schema_version,
        }, ensure_ascii=False)

    # =========================================================================
    # Writes
    # =========================================================================

    async def put(self, collection_id: str, songs: list[Song], force: bool = False) -> bool:
        """
        Store the songs of a collection.

        Args:
            collection_id: Collection id (or the legacy scope id).
            songs: Ordered songs. An empty list removes the entry instead.
            force: Write even when the content hash is unchanged.

        Returns:
            True if a durable write happened.

        Behavior:
            1. Hash the songs
            2. If the stored hash matches and not force: refresh only the
               memory tier (the content was just re-verified) and return
            3. Otherwise write entry, hash and index in one transaction
        """
        if not songs:
            logger.debug(f"Refusing to cache empty song list for {collection_id}")
            await self.invalidate(collection_id)
            return False

        now = self._clock()
        new_hash = content_hash(songs)
        entry = CacheEntry(
            collection_id=collection_id,
            songs=tuple(songs),
            captured_at=now,
            content_hash=new_hash,
            schema_version=CACHE_VERSION,
        )

        try:
            if not force:
                previous_hash = await asyncio.to_thread(self._store.get, HASH_PREFIX + collection_id)
                if previous_hash == new_hash:
                    self._memory[collection_id] = (now, entry)
                    logger.debug(f"No changes for {collection_id}, skipping cache write")
                    return False

            index = await self._read_index()
            if collection_id not in index:
                index.append(collection_id)

            await asyncio.to_thread(self._store.set_many, {
                ENTRY_PREFIX + collection_id: self._encode(entry),
                HASH_PREFIX + collection_id: new_hash,
                AVAILABLE_KEY: json.dumps(sorted(index)),
            })
        except StoreError as e:
            logger.error(f"Failed to cache {collection_id}: {e}")
            return False

        self._memory[collection_id] = (now, entry)
        logger.debug(f"Cached {collection_id} ({len(songs)} songs, hash {new_hash[:8]})")
        return True

    async def populate(self, partitions: dict[str, list[Song]], force: bool = False) -> int:
        """
        Seed the cache from already-fetched partitions.

        Returns:
            Number of durable writes performed.
        """
        written = 0
        for collection_id, songs in partitions.items():
            if await self.put(collection_id, songs, force=force):
                written += 1
        return written

    async def invalidate(self, collection_id: str) -> None:
        """Remove a collection from both tiers."""
        self._memory.pop(collection_id, None)
        try:
            await asyncio.to_thread(self._store.delete, ENTRY_PREFIX + collection_id)
            await asyncio.to_thread(self._store.delete, HASH_PREFIX + collection_id)
            index = await self._read_index()
            if collection_id in index:
                index.remove(collection_id)
                await asyncio.to_thread(self._store.set, AVAILABLE_KEY, json.dumps(index))
        except StoreError as e:
            logger.error(f"Failed to invalidate {collection_id}: {e}")

    async def clear_empty_entries(self) -> int:
        """
        Remove every durable entry that decodes to zero songs or not at all.

        Returns:
            Number of removed entries.
        """
        try:
            keys = await asyncio.to_thread(self._store.keys, ENTRY_PREFIX)
        except StoreError as e:
            logger.warning(f"Could not scan cache entries: {e}")
            return 0

        removed = 0
        for key in keys:
            collection_id = key[len(ENTRY_PREFIX):]
            if await self._read_entry(collection_id) is None:
                removed += 1
        return removed

    # =========================================================================
    # Index and bookkeeping
    # =========================================================================

    async def _read_index(self) -> list[str]:
        raw = await asyncio.to_thread(self._store.get, AVAILABLE_KEY)
        if raw is None:
            keys = await asyncio.to_thread(self._store.keys, ENTRY_PREFIX)
            return [key[len(ENTRY_PREFIX):] for key in keys]
        try:
            index = json.loads(raw)
        except ValueError:
            return []
        return [str(cid) for cid in index] if isinstance(index, list) else []

    async def remember_collections(self, collections: list[SongCollection]) -> None:
        """
        Persist collection metadata so access and status can still be
        checked when the remote store is unreachable.
        """
        payload = json.dumps([
            {
                "id": collection.id,
                "name": collection.name,
                "description": collection.description,
                "access_level": collection.access_level.name.lower(),
                "status": collection.status.value,
                "song_count": collection.song_count,
                "created_at": collection.created_at.isoformat() if collection.created_at else None,
                "updated_at": collection.updated_at.isoformat() if collection.updated_at else None,
            }
            for collection in collections
        ], ensure_ascii=False, sort_keys=True)
        try:
            if await asyncio.to_thread(self._store.get, COLLECTIONS_KEY) != payload:
                await asyncio.to_thread(self._store.set, COLLECTIONS_KEY, payload)
        except StoreError as e:
            logger.error(f"Failed to persist collection metadata: {e}")

    async def known_collections(self) -> list[SongCollection]:
        """Collection metadata last seen remotely, or [] if never seen."""
        try:
            raw = await asyncio.to_thread(self._store.get, COLLECTIONS_KEY)
            records = json.loads(raw) if raw is not None else []
        except (StoreError, ValueError) as e:
            logger.warning(f"Could not read collection metadata: {e}")
            return []

        collections = []
        for record in records if isinstance(records, list) else []:
            if not isinstance(record, dict) or not isinstance(record.get("id"), str):
                continue
            collections.append(SongCollection(
                id=record["id"],
                name=str(record.get("name") or record["id"]),
                description=str(record.get("description") or ""),
                access_level=AccessLevel.parse(record.get("access_level")),
                status=CollectionStatus.parse(record.get("status")),
                song_count=int(record.get("song_count") or 0),
                created_at=parse_timestamp(record.get("created_at")),
                updated_at=parse_timestamp(record.get("updated_at")),
            ))
        return collections

    async def list_available_ids(self) -> list[str]:
        """Ids of all collections with a durable entry."""
        try:
            return sorted(await self._read_index())
        except StoreError as e:
            logger.warning(f"Could not read cache index: {e}")
            return []

    def needs_refresh(self, entry: CacheEntry) -> bool:
        """True once an entry's age passes background_refresh_ratio of the TTL."""
        threshold = self.ttl.total_seconds() * self._config.background_refresh_ratio
        return entry.age_seconds(self._clock()) > threshold

    async def load_sync_metadata(self) -> SyncMetadata:
        """Return persisted sync metadata, or a fresh record on first run."""
        try:
            raw = await asyncio.to_thread(self._store.get, SYNC_METADATA_KEY)
        except StoreError as e:
            logger.warning(f"Could not read sync metadata: {e}")
            raw = None
        if raw is None:
            return SyncMetadata(cache_version=CACHE_VERSION)
        try:
            return SyncMetadata.from_dict(json.loads(raw))
        except (ValueError, TypeError, AttributeError) as e:
            logger.warning(f"Discarding unreadable sync metadata: {e}")
            return SyncMetadata(cache_version=CACHE_VERSION)

    async def save_sync_metadata(self, metadata: SyncMetadata) -> None:
        items = {SYNC_METADATA_KEY: json.dumps(metadata.to_dict())}
        if metadata.last_metadata_check is not None:
            items[LAST_METADATA_CHECK_KEY] = metadata.last_metadata_check.isoformat()
        try:
            await asyncio.to_thread(self._store.set_many, items)
        except StoreError as e:
            logger.error(f"Failed to save sync metadata: {e}")

    async def mark_synced(self) -> datetime:
        """Record a successful full refresh. Returns the recorded time."""
        now = self._clock()
        metadata = await self.load_sync_metadata()
        metadata = replace(metadata, last_full_sync=now, cache_version=CACHE_VERSION)
        await self.save_sync_metadata(metadata)
        try:
            await asyncio.to_thread(self._store.set, LAST_SYNC_KEY, now.isoformat())
        except StoreError as e:
            logger.error(f"Failed to record sync time: {e}")
        return now

    async def last_sync(self) -> datetime | None:
        try:
            raw = await asyncio.to_thread(self._store.get, LAST_SYNC_KEY)
        except StoreError:
            return None
        if raw is None:
            return None
        try:
            return datetime.fromisoformat(raw)
        except ValueError:
            return None

    async def summary(self) -> tuple[int, int, int]:
        """
        Count cached collections, fresh collections and cached songs.

        Returns:
            (cached_collections, fresh_collections, total_cached_songs)
        """
        cached = fresh = songs = 0
        for collection_id in await self.list_available_ids():
            hit = await self.lookup(collection_id, allow_stale=True)
            if hit is None:
                continue
            cached += 1
            songs += len(hit.entry.songs)
            if hit.is_fresh:
                fresh += 1
        return cached, fresh, songs
