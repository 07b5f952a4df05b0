"""
Tolerant parsing of remote payloads into models.

Payloads come from three places that all share the same record shape:
remote partitions, cache entries and the bundled snapshot. A partition
may arrive as a key-map ({"1": {...}, "2": {...}}) or, when the backend
stored consecutive integer keys, as a list with None holes. Both are
normalized to (key, value) pairs in the backend's key order.

A single malformed record raises ParseError inside parse_song(); the
batch helpers log it and skip the record so one bad song never costs the
whole partition.
"""

from datetime import datetime, timezone
from typing import Any

from songbook_sync.core.exceptions import ParseError
from songbook_sync.core.logger import get_logger
from songbook_sync.models import (
    AccessLevel,
    CollectionStatus,
    Song,
    SongCollection,
    Verse,
)


logger = get_logger(__name__)

# Keys that parse as 32-bit integers sort numerically before all others
_MAX_INT_KEY = 2**31 - 1


def key_order(key: str) -> tuple[int, int, str]:
    """
    Sort key reproducing the backend's "$key" ordering.

    Example:
        sorted(["10", "2", "a"], key=key_order)   # ["2", "10", "a"]
    """
    if key.isdigit() and (key == "0" or not key.startswith("0")):
        value = int(key)
        if value <= _MAX_INT_KEY:
            return (0, value, "")
    if key.startswith("-") and key[1:].isdigit() and not key[1:].startswith("0"):
        value = int(key)
        if value >= -_MAX_INT_KEY - 1:
            return (0, value, "")
    return (1, 0, key)


def children(payload: Any) -> list[tuple[str, Any]]:
    """
    Normalize a partition payload into (key, value) pairs in key order.

    Lists keep their indices as keys and drop None holes; dicts are sorted
    with key_order(). Anything else has no children.
    """
    if isinstance(payload, list):
        return [(str(index), value) for index, value in enumerate(payload) if value is not None]
    if isinstance(payload, dict):
        return sorted(
            ((str(key), value) for key, value in payload.items() if value is not None),
            key=lambda item: key_order(item[0])
        )
    return []


def unwrap_partition(payload: Any) -> Any:
    """
    Return the song container of a collection partition.

    Some partitions nest their songs under a 'songs' sub-key next to
    partition-level fields; others are the song map itself.
    """
    if isinstance(payload, dict) and "song_number" not in payload:
        nested = payload.get("songs")
        if isinstance(nested, (dict, list)):
            return nested
    return payload


def parse_timestamp(value: Any) -> datetime | None:
    """
    Parse a backend timestamp: epoch milliseconds or an ISO-8601 string.

    Returns None for anything unparseable.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def _parse_verses(raw: Any) -> tuple[Verse, ...]:
    verses = []
    for index, (_, item) in enumerate(children(raw), start=1):
        if isinstance(item, dict):
            label = item.get("verse_number", index)
            lyrics = item.get("lyrics", "")
        elif isinstance(item, str):
            label, lyrics = index, item
        else:
            continue
        verses.append(Verse(label=str(label), lyrics=str(lyrics or "")))
    return tuple(verses)


def parse_song(raw: Any, key: str | None = None) -> Song:
    """
    Parse a single song record.

    Args:
        raw: Record dict with song_number, song_title, verses and
             optionally url, collection_id, collection_index.
        key: Key the record was stored under; used as the number when the
             record itself has none.

    Returns:
        Song: The parsed song.

    Raises:
        ParseError: If the record is not a dict or has no usable number.
    """
    if not isinstance(raw, dict):
        raise ParseError(
            "Song record is not an object",
            details={"key": key, "type": type(raw).__name__}
        )

    number = raw.get("song_number", key)
    if isinstance(number, bool) or not isinstance(number, (str, int)) or not str(number).strip():
        raise ParseError(
            "Song record has no number",
            details={"key": key}
        )

    title = raw.get("song_title") or ""
    index = raw.get("collection_index")
    audio_url = raw.get("url")

    return Song(
        number=str(number).strip(),
        title=str(title),
        verses=_parse_verses(raw.get("verses")),
        audio_url=audio_url if isinstance(audio_url, str) and audio_url else None,
        collection_id=raw.get("collection_id") if isinstance(raw.get("collection_id"), str) else None,
        position_index=index if isinstance(index, int) and not isinstance(index, bool) else None,
    )


def parse_songs(payload: Any, collection_id: str | None = None) -> list[Song]:
    """
    Parse every song of a partition payload, skipping malformed records.

    Args:
        payload: Partition payload (key-map or list).
        collection_id: When given, each song gets this collection context
                       and its position within the partition.

    Returns:
        Songs in the partition's key order.
    """
    songs = []
    skipped = 0
    for key, raw in children(unwrap_partition(payload)):
        try:
            song = parse_song(raw, key)
        except ParseError as e:
            skipped += 1
            logger.debug(f"Skipping song record {key!r}: {e.message}")
            continue
        if collection_id is not None:
            song = song.with_collection(collection_id, len(songs))
        songs.append(song)

    if skipped:
        logger.warning(
            f"Skipped {skipped} malformed song record(s)"
            + (f" in collection {collection_id}" if collection_id else "")
        )
    return songs


def sort_by_number(songs: list[Song]) -> list[Song]:
    """Stable sort by numeric song number (non-numeric as zero)."""
    return sorted(songs, key=lambda song: song.sort_key)


def parse_collection(collection_id: str, raw: Any) -> SongCollection:
    """
    Parse one collection metadata record.

    song_count from the record is ignored; it is recomputed by whoever
    reads the partition.

    Raises:
        ParseError: If the record is not a dict.
    """
    if not isinstance(raw, dict):
        raise ParseError(
            "Collection record is not an object",
            details={"collection_id": collection_id}
        )

    return SongCollection(
        id=collection_id,
        name=str(raw.get("name") or collection_id),
        description=str(raw.get("description") or ""),
        access_level=AccessLevel.parse(raw.get("access_level")),
        status=CollectionStatus.parse(raw.get("status")),
        song_count=0,
        created_at=parse_timestamp(raw.get("created_at")),
        updated_at=parse_timestamp(raw.get("updated_at")),
        created_by=raw.get("created_by") if isinstance(raw.get("created_by"), str) else None,
        updated_by=raw.get("updated_by") if isinstance(raw.get("updated_by"), str) else None,
    )


def parse_collections(payload: Any) -> list[SongCollection]:
    """Parse the collection metadata map, skipping malformed records."""
    collections = []
    for key, raw in children(payload):
        try:
            collections.append(parse_collection(key, raw))
        except ParseError as e:
            logger.warning(f"Skipping collection record {key!r}: {e.message}")
    return collections
