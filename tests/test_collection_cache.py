"""Tests for the two-tier collection cache"""

import json
from dataclasses import replace

import pytest

from songbook_sync.cache.collection_cache import (
    CACHE_VERSION,
    ENTRY_PREFIX,
    HASH_PREFIX,
    VERSION_KEY,
    CollectionCache,
    content_hash,
    lookup_plan,
)
from songbook_sync.models import LEGACY_SCOPE, SongCollection, AccessLevel
from songbook_sync.remote.parsing import parse_songs

from conftest import song_map


def make_songs(numbers, collection_id=None):
    return parse_songs(song_map(numbers), collection_id)


@pytest.mark.asyncio
class TestCollectionCache:
    """Test CollectionCache"""

    async def test_put_then_get(self, cache):
        """get returns exactly what was put, in order"""
        songs = make_songs(range(1, 6), "LPMI")
        assert await cache.put("LPMI", songs) is True
        assert await cache.get("LPMI") == songs
        assert await cache.list_available_ids() == ["LPMI"]

    async def test_get_survives_new_instance(self, cache, store, config, clock):
        """A fresh instance reads the durable tier"""
        songs = make_songs(range(1, 4))
        await cache.put(LEGACY_SCOPE, songs)

        reopened = CollectionCache(store, config.cache, clock=clock)
        hit = await reopened.lookup(LEGACY_SCOPE)
        assert hit is not None
        assert hit.from_memory is False
        assert list(hit.entry.songs) == songs

    async def test_unchanged_content_skips_write(self, cache):
        """Putting identical songs twice performs one durable write"""
        songs = make_songs(range(1, 4), "A")
        before = cache.write_count

        assert await cache.put("A", songs) is True
        after_first = cache.write_count
        assert await cache.put("A", songs) is False

        assert after_first > before
        assert cache.write_count == after_first

    async def test_force_put_writes_unchanged_content(self, cache):
        songs = make_songs(range(1, 4), "A")
        await cache.put("A", songs)
        written = cache.write_count

        assert await cache.put("A", songs, force=True) is True
        assert cache.write_count > written

    async def test_hash_is_stored(self, cache, store):
        songs = make_songs([1, 2], "A")
        await cache.put("A", songs)
        assert store.get(HASH_PREFIX + "A") == content_hash(songs)

    async def test_empty_put_is_not_stored(self, cache, store):
        """An empty list removes the entry instead of caching emptiness"""
        await cache.put("A", make_songs([1], "A"))
        assert await cache.put("A", []) is False

        assert await cache.get("A") == []
        assert store.get(ENTRY_PREFIX + "A") is None
        assert await cache.list_available_ids() == []

    async def test_corrupt_entry_is_evicted(self, cache, store):
        """Undecodable entries read as a miss and are removed"""
        store.set(ENTRY_PREFIX + "BROKEN", "{not json")

        assert await cache.get("BROKEN") == []
        assert store.get(ENTRY_PREFIX + "BROKEN") is None

    async def test_zero_song_entry_is_evicted(self, cache, store, clock):
        store.set(ENTRY_PREFIX + "EMPTY", json.dumps({
            "collection_id": "EMPTY",
            "songs": [],
            "captured_at": clock().isoformat(),
            "content_hash": "abc",
            "schema_version": CACHE_VERSION,
        }))

        assert await cache.clear_empty_entries() == 1
        assert store.keys(ENTRY_PREFIX) == []

    async def test_version_mismatch_wipes_cache(self, cache, store):
        """initialize() wipes everything written under another version"""
        await cache.put("A", make_songs([1, 2], "A"))
        store.set(VERSION_KEY, str(CACHE_VERSION - 1))

        await cache.initialize()

        assert store.keys(ENTRY_PREFIX) == []
        assert store.keys(HASH_PREFIX) == []
        assert store.get(VERSION_KEY) == str(CACHE_VERSION)

    async def test_matching_version_keeps_cache(self, cache, store):
        store.set(VERSION_KEY, str(CACHE_VERSION))
        await cache.put("A", make_songs([1, 2], "A"))

        await cache.initialize()

        assert len(await cache.get("A")) == 2

    async def test_expired_entry_is_stale(self, cache, clock, config):
        """Past the TTL an entry is only reachable with allow_stale"""
        await cache.put("A", make_songs([1, 2], "A"))
        clock.advance(hours=config.cache.ttl_hours + 1)

        assert await cache.get("A") == []
        hit = await cache.lookup("A", allow_stale=True)
        assert hit is not None
        assert hit.is_fresh is False

    async def test_memory_tier_expires(self, cache, clock, config):
        await cache.put("A", make_songs([1], "A"))
        assert (await cache.lookup("A")).from_memory is True

        clock.advance(minutes=config.cache.memory_ttl_minutes + 1)
        hit = await cache.lookup("A")
        assert hit is not None
        assert hit.from_memory is False

    async def test_needs_refresh_near_expiry(self, cache, clock, config):
        await cache.put("A", make_songs([1], "A"))
        entry = (await cache.lookup("A")).entry
        assert cache.needs_refresh(entry) is False

        clock.advance(hours=config.cache.ttl_hours * 0.96)
        assert cache.needs_refresh(entry) is True

    async def test_populate_counts_writes(self, cache):
        partitions = {"A": make_songs([1], "A"), "B": make_songs([2], "B"), "C": []}
        assert await cache.populate(partitions) == 2
        assert await cache.populate(partitions) == 0

    async def test_clear_keeps_version(self, cache, store):
        await cache.put("A", make_songs([1], "A"))
        await cache.mark_synced()

        await cache.clear()

        assert await cache.get("A") == []
        assert await cache.last_sync() is None
        assert store.get(VERSION_KEY) == str(CACHE_VERSION)

    async def test_sync_metadata_round_trip(self, cache, clock):
        metadata = await cache.load_sync_metadata()
        assert metadata.last_full_sync is None

        synced_at = await cache.mark_synced()
        assert synced_at == clock()
        assert (await cache.load_sync_metadata()).last_full_sync == clock()
        assert await cache.last_sync() == clock()

    async def test_remember_collections(self, cache):
        await cache.remember_collections([
            SongCollection(id="SRD", name="SRD", access_level=AccessLevel.PREMIUM, song_count=4),
        ])
        known = await cache.known_collections()
        assert [c.id for c in known] == ["SRD"]
        assert known[0].access_level is AccessLevel.PREMIUM
        assert known[0].song_count == 4

    async def test_remember_collections_keeps_timestamps(self, cache, clock):
        """Cached metadata keeps what collection ordering depends on"""
        await cache.remember_collections([
            SongCollection(id="A", name="A", description="Hymns", created_at=clock(), updated_at=clock()),
            SongCollection(id="B", name="B"),
        ])

        first, second = await cache.known_collections()

        assert first.created_at == clock()
        assert first.updated_at == clock()
        assert first.description == "Hymns"
        assert second.updated_at is None

    async def test_summary(self, cache, clock, config):
        await cache.put("A", make_songs([1, 2], "A"))
        clock.advance(hours=config.cache.ttl_hours / 2)
        await cache.put("B", make_songs([3], "B"))
        clock.advance(hours=config.cache.ttl_hours / 2 + 1)

        assert await cache.summary() == (2, 1, 3)


class TestLookupPlan:
    """Test remote lookup plans"""

    def test_ordinary_collection(self, config):
        plan = lookup_plan("LPMI", config.cache, config.remote)
        assert plan.paths == ("collection_songs/LPMI",)
        assert plan.timeout == config.cache.default_timeout_seconds

    def test_flaky_collection(self, config):
        plan = lookup_plan("Krismas", config.cache, config.remote)
        assert plan.paths == (
            "collection_songs/Krismas",
            "collection_songs/krismas",
            "collection_songs/KRISMAS",
            "collection_songs/Krismas/songs",
        )
        assert plan.timeout == config.cache.flaky_timeout_seconds

    def test_custom_flaky_list(self, config):
        cache_config = replace(config.cache, flaky_collections=("odd",))
        assert len(lookup_plan("odd", cache_config, config.remote).paths) == 4
        assert len(lookup_plan("krismas", cache_config, config.remote).paths) == 1
