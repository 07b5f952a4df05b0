"""
Data models for songbook-sync.

This module defines the dataclasses and enumerations passed between the
engine's layers: songs and collections as read from the remote store,
the cache's persisted records, and the result types returned by the
public read API.

Design Decisions:
    - Songs and collections are frozen (immutable); a song's collection
      context is attached with dataclasses.replace(), never mutated
    - Roles and access levels are ordered integer enumerations, so access
      checks are plain integer comparisons
    - Models know how to serialize themselves (to_dict) but parsing of
      untrusted payloads lives in songbook_sync.remote.parsing

Usage:
    from songbook_sync.models import Song, Verse, ActorRole, AccessLevel

    song = Song(number="1", title="Amazing Grace", verses=(Verse("1", "..."),))
    if ActorRole.parse("premium").can_access(AccessLevel.PREMIUM):
        ...
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any


LEGACY_SCOPE = "__legacy__"

_ROLE_ALIASES = {
    "": "guest",
    "public": "guest",
    "anonymous": "guest",
    "registered": "user",
    "super_admin": "superadmin",
}


class AccessLevel(IntEnum):
    """
    Access level required to read a collection.

    Ordinal: public < registered < premium < admin < superadmin.
    """
    PUBLIC = 0
    REGISTERED = 1
    PREMIUM = 2
    ADMIN = 3
    SUPERADMIN = 4

    @classmethod
    def parse(cls, value: Any) -> "AccessLevel":
        """
        Parse a stored access level.

        Unknown or missing values map to PUBLIC, which matches how the
        backend treats collections created before access control existed.
        """
        if isinstance(value, str):
            normalized = value.strip().lower()
            if normalized == "user":
                return cls.REGISTERED
            for level in cls:
                if level.name.lower() == normalized:
                    return level
        return cls.PUBLIC


class ActorRole(IntEnum):
    """
    Authorization class of the caller, supplied as an opaque string.

    The integer value doubles as the highest AccessLevel the role can read.
    """
    GUEST = 0
    USER = 1
    PREMIUM = 2
    ADMIN = 3
    SUPERADMIN = 4

    @classmethod
    def parse(cls, value: str | None) -> "ActorRole":
        """
        Parse a role string. None, empty and unknown strings are GUEST.

        Example:
            ActorRole.parse("Premium")   # ActorRole.PREMIUM
            ActorRole.parse(None)        # ActorRole.GUEST
        """
        if value is None:
            return cls.GUEST
        normalized = value.strip().lower()
        normalized = _ROLE_ALIASES.get(normalized, normalized)
        for role in cls:
            if role.name.lower() == normalized:
                return role
        return cls.GUEST

    @classmethod
    def is_known(cls, value: str) -> bool:
        normalized = value.strip().lower()
        return normalized in _ROLE_ALIASES or normalized in cls.names()

    @classmethod
    def names(cls) -> list[str]:
        return [role.name.lower() for role in cls]

    @property
    def is_guest(self) -> bool:
        return self is ActorRole.GUEST

    def can_access(self, level: AccessLevel) -> bool:
        return int(self) >= int(level)


class CollectionStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    ARCHIVED = "archived"

    @classmethod
    def parse(cls, value: Any) -> "CollectionStatus":
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        return cls.ACTIVE


class DataSource(str, Enum):
    """Tier that answered a read."""
    REMOTE = "remote"
    CACHE = "cache"
    STALE_CACHE = "stale_cache"
    SNAPSHOT = "snapshot"
    NONE = "none"


@dataclass(frozen=True)
class Verse:
    """
    One labelled block of lyrics.

    Attributes:
        label: Verse label, usually its number ("1", "2") or "Korus".
        lyrics: Lyric text, line breaks preserved.
    """
    label: str
    lyrics: str

    def to_dict(self) -> dict[str, str]:
        return {"verse_number": self.label, "lyrics": self.lyrics}


@dataclass(frozen=True)
class Song:
    """
    Immutable representation of a song.

    Attributes:
        number: String form of the song number; unique within its scope
                (one collection, or the legacy partition).
        title: Song title.
        verses: Ordered verses.
        audio_url: Optional link to a recording.
        collection_id: Collection the song was read from, or None for the
                       legacy partition and the bundled snapshot.
        position_index: Position of the song inside its collection.

    Example:
        song = Song(number="12", title="Great Is Thy Faithfulness")
        print(song.sort_key)   # 12
    """
    number: str
    title: str
    verses: tuple[Verse, ...] = field(default_factory=tuple)
    audio_url: str | None = None
    collection_id: str | None = None
    position_index: int | None = None

    @property
    def sort_key(self) -> int:
        """Numeric value of the song number; non-numeric numbers sort as 0."""
        try:
            return int(self.number.strip())
        except ValueError:
            return 0

    def with_collection(self, collection_id: str, position_index: int | None = None) -> "Song":
        return replace(self, collection_id=collection_id, position_index=position_index)

    def matches(self, term: str) -> bool:
        """
        Case-insensitive match on title, number or any verse lyric.

        Args:
            term: Search term, already stripped. An empty term matches.
        """
        needle = term.lower()
        if needle in self.title.lower() or needle in self.number.lower():
            return True
        return any(needle in verse.lyrics.lower() for verse in self.verses)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert to the backend's JSON record shape.

        The same shape is used for cache entries, so cached and freshly
        fetched songs go through one parser.
        """
        data: dict[str, Any] = {
            "song_number": self.number,
            "song_title": self.title,
            "verses": [verse.to_dict() for verse in self.verses],
        }
        if self.audio_url:
            data["url"] = self.audio_url
        if self.collection_id is not None:
            data["collection_id"] = self.collection_id
        if self.position_index is not None:
            data["collection_index"] = self.position_index
        return data


@dataclass(frozen=True)
class SongCollection:
    """
    Metadata of a named, access-controlled song partition.

    Attributes:
        id: Collection id, also the key of its song partition.
        name: Display name.
        description: Free text.
        access_level: Minimum level required to read the partition.
        status: Only ACTIVE collections take part in merged reads.
        song_count: Number of songs actually found in the partition.
                    Recomputed by the reader, never trusted from input.
        created_at: Creation time, if recorded.
        updated_at: Last update time, if recorded.
        created_by: Actor id of the creator.
        updated_by: Actor id of the last editor.
    """
    id: str
    name: str
    description: str = ""
    access_level: AccessLevel = AccessLevel.PUBLIC
    status: CollectionStatus = CollectionStatus.ACTIVE
    song_count: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None
    created_by: str | None = None
    updated_by: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status is CollectionStatus.ACTIVE

    def with_song_count(self, song_count: int) -> "SongCollection":
        return replace(self, song_count=song_count)


@dataclass(frozen=True)
class CacheEntry:
    """
    A persisted, ordered song list for one collection.

    Attributes:
        collection_id: Collection id, or LEGACY_SCOPE for the flat partition.
        songs: Ordered songs exactly as they were put.
        captured_at: When the songs were written (UTC).
        content_hash: Hash of the serialized songs.
        schema_version: Cache format version the entry was written with.
    """
    collection_id: str
    songs: tuple[Song, ...]
    captured_at: datetime
    content_hash: str
    schema_version: int

    def age_seconds(self, now: datetime) -> float:
        return max(0.0, (now - self.captured_at).total_seconds())


@dataclass
class SyncMetadata:
    """
    Sync bookkeeping owned by the cache.

    Created on first run, updated on every sync decision, wiped on explicit
    clear or cache version bump.

    Attributes:
        last_full_sync: Time of the last successful full refresh.
        last_metadata_check: Time of the last remote change probe.
        collection_hashes: Last seen remote hash per collection id.
        global_marker: Last seen global last-modified marker, used when the
                       per-collection metadata record does not exist.
        last_known_changed: Answer returned by the last change probe.
        cache_version: Cache format version this metadata belongs to.
    """
    last_full_sync: datetime | None = None
    last_metadata_check: datetime | None = None
    collection_hashes: dict[str, str] = field(default_factory=dict)
    global_marker: str | None = None
    last_known_changed: bool = True
    cache_version: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "last_full_sync": self.last_full_sync.isoformat() if self.last_full_sync else None,
            "last_metadata_check": (
                self.last_metadata_check.isoformat() if self.last_metadata_check else None
            ),
            "collection_hashes": dict(self.collection_hashes),
            "global_marker": self.global_marker,
            "last_known_changed": self.last_known_changed,
            "cache_version": self.cache_version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SyncMetadata":
        def _when(value: Any) -> datetime | None:
            return datetime.fromisoformat(value) if isinstance(value, str) else None

        hashes = data.get("collection_hashes") or {}
        return cls(
            last_full_sync=_when(data.get("last_full_sync")),
            last_metadata_check=_when(data.get("last_metadata_check")),
            collection_hashes={str(k): str(v) for k, v in hashes.items()},
            global_marker=data.get("global_marker"),
            last_known_changed=bool(data.get("last_known_changed", True)),
            cache_version=int(data.get("cache_version", 0)),
        )


@dataclass(frozen=True)
class SongsResult:
    """
    Answer of get_all_songs / get_songs_for_collection.

    Attributes:
        songs: Ordered songs (may be empty).
        is_online: True only when the remote store answered this read.
        source: Tier that produced the songs.
        legacy_count: Songs contributed by the legacy partition.
        collection_count: Songs contributed by collection partitions.
        active_collections: Ids of the collections that were merged.
    """
    songs: list[Song]
    is_online: bool
    source: DataSource
    legacy_count: int = 0
    collection_count: int = 0
    active_collections: tuple[str, ...] = ()

    @classmethod
    def exhausted(cls) -> "SongsResult":
        """Every tier failed: empty, offline."""
        return cls(songs=[], is_online=False, source=DataSource.NONE)


@dataclass(frozen=True)
class PageResult:
    """
    One page of the legacy partition in key order.

    Attributes:
        songs: Songs on this page, at most page_size.
        is_online: True if read from the remote store.
        has_more: True if another page follows.
        next_cursor: Key to pass as cursor for the next page, None on the
                     last page.
    """
    songs: list[Song]
    is_online: bool
    has_more: bool
    next_cursor: str | None


@dataclass(frozen=True)
class SearchResult:
    songs: list[Song]
    term: str
    is_online: bool
    counts_by_collection: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class SongLookup:
    """
    Result of get_song_by_number.

    Attributes:
        song: The song, or None when no scope has that number.
        found_in: Collection id, LEGACY_SCOPE, or None when not found.
        is_online: True if the lookup was answered by the remote store.
    """
    song: Song | None
    found_in: str | None
    is_online: bool

    @property
    def found(self) -> bool:
        return self.song is not None


@dataclass(frozen=True)
class CacheStatistics:
    """Snapshot of the cache and orchestrator state for diagnostics."""
    last_sync: datetime | None
    cached_collections: int
    fresh_collections: int
    total_cached_songs: int
    memory_entries: int
    ttl_hours: float
    durable_writes: int
    cache_version: int
    migration_version: int
    orchestrator_state: str
    refresh_in_flight: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "last_sync": self.last_sync.isoformat() if self.last_sync else None,
            "cached_collections": self.cached_collections,
            "fresh_collections": self.fresh_collections,
            "total_cached_songs": self.total_cached_songs,
            "memory_entries": self.memory_entries,
            "ttl_hours": self.ttl_hours,
            "durable_writes": self.durable_writes,
            "cache_version": self.cache_version,
            "migration_version": self.migration_version,
            "orchestrator_state": self.orchestrator_state,
            "refresh_in_flight": self.refresh_in_flight,
        }
