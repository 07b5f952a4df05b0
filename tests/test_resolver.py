"""Tests for tiered reads through the public API"""

import pytest

from songbook_sync.models import LEGACY_SCOPE, DataSource

from conftest import song_map


def numbers(songs):
    return [song.number for song in songs]


def add_collection(remote, collection_id, song_numbers, access_level="public", status="active"):
    remote.tree["song_collections"][collection_id] = {
        "name": collection_id,
        "access_level": access_level,
        "status": status,
    }
    remote.tree["collection_songs"][collection_id] = song_map(song_numbers, collection_id)


@pytest.mark.asyncio
class TestGetAllSongs:
    """Test get_all_songs"""

    async def test_merges_collections_and_legacy(self, songbook):
        """Collection copies win over legacy copies of the same number"""
        result = await songbook.get_all_songs()

        assert result.is_online is True
        assert result.source is DataSource.REMOTE
        assert numbers(result.songs) == ["1", "2", "3", "4", "5", "6", "7"]
        assert result.songs[2].collection_id == "A"
        assert result.songs[2].title == "Collection A 3"
        assert result.collection_count == 3
        assert result.legacy_count == 4
        assert result.active_collections == ("A",)

    async def test_remote_read_is_cached(self, songbook):
        await songbook.get_all_songs()

        assert len(await songbook.cache.get("A")) == 3
        assert len(await songbook.cache.get(LEGACY_SCOPE)) == 5

    async def test_offline_uses_snapshot(self, songbook, remote):
        remote.offline = True

        result = await songbook.get_all_songs()

        assert result.is_online is False
        assert result.source is DataSource.SNAPSHOT
        assert len(result.songs) == 10
        assert result.songs[0].title == "Snapshot 1"

    async def test_offline_skips_cache(self, songbook, remote):
        await songbook.get_all_songs()
        remote.offline = True

        result = await songbook.get_all_songs()
        assert result.source is DataSource.SNAPSHOT

    async def test_remote_failure_uses_snapshot(self, songbook, remote):
        """Reachable but failing remote with an empty cache ends at the snapshot"""
        remote.failing_paths.update({"songs", "song_collections"})

        result = await songbook.get_all_songs()

        assert result.source is DataSource.SNAPSHOT
        assert result.is_online is False
        assert len(result.songs) == 10

    async def test_remote_failure_uses_cache(self, songbook, remote):
        await songbook.get_all_songs()
        remote.failing_paths.update({"songs", "song_collections"})

        result = await songbook.get_all_songs()

        assert result.source is DataSource.CACHE
        assert result.is_online is False
        assert numbers(result.songs) == ["1", "2", "3", "4", "5", "6", "7"]
        assert result.songs[2].collection_id == "A"

    async def test_empty_remote_uses_cache(self, songbook, remote):
        await songbook.get_all_songs()
        remote.tree = {"song_collections": {}, "collection_songs": {}}

        result = await songbook.get_all_songs()

        assert result.source is DataSource.CACHE
        assert result.is_online is True
        assert len(result.songs) == 7

    async def test_empty_remote_without_cache_uses_snapshot(self, songbook, remote):
        remote.tree = {}

        result = await songbook.get_all_songs()

        assert result.source is DataSource.SNAPSHOT
        assert len(result.songs) == 10

    @pytest.mark.parametrize("field_name", ["updated_at", "created_at"])
    async def test_out_of_range_timestamp_is_ignored(self, songbook, remote, field_name):
        remote.tree["song_collections"]["A"][field_name] = 10 ** 20

        result = await songbook.get_all_songs()

        assert result.source is DataSource.REMOTE
        assert len(result.songs) == 7
        assert result.active_collections == ("A",)

    async def test_unexpected_remote_error_falls_back(self, songbook, remote, monkeypatch):
        await songbook.get_all_songs()

        async def broken_get(*args, **kwargs):
            raise TypeError("unexpected payload")

        monkeypatch.setattr(remote, "get", broken_get)

        result = await songbook.get_all_songs()

        assert result.source is DataSource.CACHE
        assert len(result.songs) == 7

    async def test_cache_keeps_remote_collection_order(self, songbook, remote):
        """A number in two collections resolves to the same one from either tier"""
        remote.tree["song_collections"]["A"]["updated_at"] = 1_600_000_000_000
        add_collection(remote, "B", [1])
        remote.tree["song_collections"]["B"]["updated_at"] = 1_700_000_000_000

        online = await songbook.get_all_songs()
        remote.failing_paths.update({"songs", "song_collections"})
        cached = await songbook.get_all_songs()

        assert cached.source is DataSource.CACHE
        assert online.songs[0].collection_id == "B"
        assert cached.songs[0].collection_id == "B"
        assert cached.active_collections == online.active_collections

    async def test_stale_cache(self, songbook, remote, clock, config):
        await songbook.get_all_songs()
        clock.advance(hours=config.cache.ttl_hours + 1)
        remote.failing_paths.update({"songs", "song_collections"})

        result = await songbook.get_all_songs()

        assert result.source is DataSource.STALE_CACHE
        assert len(result.songs) == 7

    async def test_access_levels_filter_collections(self, songbook, remote):
        add_collection(remote, "P", [100, 101], access_level="premium")

        guest = await songbook.get_all_songs("guest")
        premium = await songbook.get_all_songs("premium")

        assert "100" not in numbers(guest.songs)
        assert numbers(premium.songs)[-2:] == ["100", "101"]
        assert premium.active_collections == ("A", "P")

    async def test_inactive_collections_are_skipped(self, songbook, remote):
        add_collection(remote, "OLD", [200], status="archived")

        result = await songbook.get_all_songs("superadmin")

        assert "200" not in numbers(result.songs)


@pytest.mark.asyncio
class TestGetSongsForCollection:
    """Test get_songs_for_collection"""

    async def test_remote_then_cache(self, songbook, remote):
        first = await songbook.get_songs_for_collection("A")
        second = await songbook.get_songs_for_collection("A")

        assert first.source is DataSource.REMOTE
        assert second.source is DataSource.CACHE
        assert second.songs == first.songs
        assert remote.read_count("collection_songs/A") == 1

    async def test_out_of_range_timestamp_is_ignored(self, songbook, remote):
        remote.tree["song_collections"]["A"]["created_at"] = -(10 ** 20)

        result = await songbook.get_songs_for_collection("A")

        assert result.source is DataSource.REMOTE
        assert len(result.songs) == 3

    async def test_unexpected_remote_error_is_an_empty_result(self, songbook, remote, monkeypatch):
        async def broken_get(*args, **kwargs):
            raise TypeError("unexpected payload")

        monkeypatch.setattr(remote, "get", broken_get)

        result = await songbook.get_songs_for_collection("A")

        assert result.songs == []
        assert result.source is DataSource.NONE

    async def test_denied_collection_is_empty(self, songbook, remote):
        add_collection(remote, "P", [100], access_level="premium")

        denied = await songbook.get_songs_for_collection("P", "guest")
        allowed = await songbook.get_songs_for_collection("P", "premium")

        assert denied.songs == []
        assert denied.source is DataSource.NONE
        assert numbers(allowed.songs) == ["100"]

    async def test_denied_offline_from_known_metadata(self, songbook, remote):
        add_collection(remote, "P", [100], access_level="premium")
        await songbook.get_songs_for_collection("P", "premium")
        await songbook.get_accessible_collections("premium")
        remote.offline = True

        result = await songbook.get_songs_for_collection("P", "guest")

        assert result.songs == []
        assert result.source is DataSource.NONE

    async def test_flaky_collection_alternate_path(self, songbook, remote):
        remote.tree["collection_songs"]["krismas"] = song_map([1, 2], "Krismas")

        result = await songbook.get_songs_for_collection("Krismas")

        assert numbers(result.songs) == ["1", "2"]
        assert all(song.collection_id == "Krismas" for song in result.songs)
        assert remote.reads.index("collection_songs/Krismas") < remote.reads.index(
            "collection_songs/krismas"
        )

    async def test_offline_snapshot_collection(self, songbook, remote):
        remote.offline = True

        snapshot = await songbook.get_songs_for_collection("LPMI")
        other = await songbook.get_songs_for_collection("SRD")

        assert snapshot.source is DataSource.SNAPSHOT
        assert len(snapshot.songs) == 10
        assert other.songs == []
        assert other.source is DataSource.NONE
        assert other.is_online is False

    async def test_stale_entry_when_remote_fails(self, songbook, remote, clock, config):
        await songbook.get_songs_for_collection("A")
        clock.advance(hours=config.cache.ttl_hours + 1)
        remote.failing_paths.add("collection_songs")

        result = await songbook.get_songs_for_collection("A")

        assert result.source is DataSource.STALE_CACHE
        assert len(result.songs) == 3


@pytest.mark.asyncio
class TestPagination:
    """Test get_paginated_songs"""

    async def walk(self, songbook, page_size):
        pages = []
        cursor = None
        while True:
            page = await songbook.get_paginated_songs(page_size, cursor)
            pages.append(page)
            if not page.has_more:
                return pages
            cursor = page.next_cursor

    async def test_visits_every_song_once(self, songbook, remote):
        remote.tree["songs"] = song_map(range(1, 24))

        pages = await self.walk(songbook, 5)

        visited = [song.number for page in pages for song in page.songs]
        assert visited == [str(n) for n in range(1, 24)]
        assert [len(page.songs) for page in pages] == [5, 5, 5, 5, 3]
        assert pages[-1].next_cursor is None
        assert all(page.is_online for page in pages)

    async def test_exact_multiple_of_page_size(self, songbook, remote):
        remote.tree["songs"] = song_map(range(1, 21))

        pages = await self.walk(songbook, 5)

        assert [len(page.songs) for page in pages] == [5, 5, 5, 5]
        assert pages[2].next_cursor == "15"
        assert pages[-1].has_more is False

    async def test_offline_pages_snapshot(self, songbook, remote):
        remote.offline = True

        pages = await self.walk(songbook, 4)

        assert [numbers(page.songs) for page in pages] == [
            ["1", "2", "3", "4"], ["5", "6", "7", "8"], ["9", "10"]
        ]
        assert not any(page.is_online for page in pages)

    async def test_page_size_below_one_reads_one_song(self, songbook, remote):
        """Nonsense page sizes still answer instead of raising"""
        remote.tree["songs"] = song_map(range(1, 4))

        page = await songbook.get_paginated_songs(0)

        assert numbers(page.songs) == ["1"]
        assert page.has_more is True
        assert page.next_cursor == "1"

    async def test_unexpected_scan_error_falls_back_to_snapshot(self, songbook, remote, monkeypatch):
        """An unexpected failure while reading a page degrades to the snapshot"""
        async def broken_scan(*args, **kwargs):
            raise KeyError("songs")

        monkeypatch.setattr(remote, "scan", broken_scan)

        page = await songbook.get_paginated_songs(4)

        assert page.is_online is False
        assert numbers(page.songs) == ["1", "2", "3", "4"]


@pytest.mark.asyncio
class TestSearchAndLookup:
    """Test search_songs, get_song_by_number and get_accessible_collections"""

    async def test_search(self, songbook):
        result = await songbook.search_songs("  collection a ")

        assert result.term == "collection a"
        assert numbers(result.songs) == ["1", "2", "3"]
        assert result.counts_by_collection == {"A": 3}

    async def test_search_counts_legacy(self, songbook):
        result = await songbook.search_songs("legacy")
        assert result.counts_by_collection == {LEGACY_SCOPE: 4}

    async def test_song_by_number(self, songbook):
        in_collection = await songbook.get_song_by_number("3")
        legacy = await songbook.get_song_by_number("6")
        missing = await songbook.get_song_by_number("99")

        assert in_collection.found_in == "A"
        assert legacy.found_in == LEGACY_SCOPE
        assert missing.found is False
        assert missing.found_in is None

    async def test_song_by_number_offline(self, songbook, remote):
        remote.offline = True
        lookup = await songbook.get_song_by_number("2")
        assert lookup.found_in == "LPMI"
        assert lookup.is_online is False

    async def test_accessible_collections_offline(self, songbook, remote):
        add_collection(remote, "P", [100], access_level="premium")
        online = await songbook.get_accessible_collections("premium")
        remote.offline = True

        assert [c.id for c in online] == ["A", "P"]
        assert [c.id for c in await songbook.get_accessible_collections("guest")] == ["A"]
