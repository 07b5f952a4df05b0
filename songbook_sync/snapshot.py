"""
Bundled snapshot loader.

The snapshot is static, read-only song data shipped with the application,
stored as a JSON list or key-map of song records (optionally wrapped in a
{"songs": ...} object). It is the last tier of every read and is never
written.

Loading never raises: a missing or unreadable file is logged and yields
an empty snapshot, so the last tier always has a usable answer.
"""

import asyncio
import json
from pathlib import Path

from songbook_sync.core.logger import get_logger
from songbook_sync.models import Song
from songbook_sync.remote.parsing import key_order, parse_songs


logger = get_logger(__name__)


class BundledSnapshot:
    """
    Lazily loaded, memoized snapshot content.

    Attributes:
        path: Snapshot JSON file, or None when the app ships none.
        collection_id: Collection the snapshot content belongs to.
    """

    def __init__(self, path: Path | None, collection_id: str = "LPMI") -> None:
        self.path = path
        self.collection_id = collection_id
        self._songs: list[Song] | None = None
        self._lock = asyncio.Lock()

    def _read(self) -> list[Song]:
        if self.path is None:
            logger.debug("No bundled snapshot configured")
            return []

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                payload = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load bundled snapshot {self.path}: {e}")
            return []

        songs = parse_songs(payload)
        logger.info(f"Loaded {len(songs)} songs from bundled snapshot")
        return songs

    async def load(self) -> list[Song]:
        """
        Return the snapshot songs, reading the file on first call.

        Returns:
            A new list each call; callers may reorder it freely.
        """
        async with self._lock:
            if self._songs is None:
                self._songs = await asyncio.to_thread(self._read)
        return list(self._songs)

    async def page(self, page_size: int, cursor: str | None) -> tuple[list[Song], bool, str | None]:
        """
        Paginate the snapshot locally with the same contract as a remote scan.

        Songs are keyed by their number and ordered like backend keys.

        Returns:
            (songs, has_more, next_cursor)
        """
        songs = sorted(await self.load(), key=lambda song: key_order(song.number))
        if cursor is not None:
            songs = [song for song in songs if key_order(song.number) > key_order(cursor)]

        has_more = len(songs) > page_size
        page = songs[:page_size]
        next_cursor = page[-1].number if has_more and page else None
        return page, has_more, next_cursor
