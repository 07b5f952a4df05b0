"""
Thread-safe SQLite key/value store for songbook-sync.

This is the durable on-device tier: a flat, string-keyed store holding
serialized cache entries and sync bookkeeping. It is shared process-wide
with last-writer-wins semantics; it mirrors the remote store and is never
a master copy.

Schema:
    kv:  key (primary key), value (text, usually JSON), updated_at (ISO-8601)

Key layout (owned by the cache package):
    collection_cache_<id>    serialized CacheEntry
    data_hash_<id>           content hash of the stored entry
    available_collections    JSON list of cached collection ids
    last_sync_timestamp      ISO-8601 time of the last successful refresh
    last_metadata_check      ISO-8601 time of the last change probe
    cache_version            cache format version
    migration_version        last migration step applied
    sync_metadata            serialized SyncMetadata

Usage:
    store = DurableStore(cache_dir / "cache.db")
    store.set("cache_version", "2")
    version = store.get("cache_version")

    # From async code every call goes through a worker thread
    value = await asyncio.to_thread(store.get, "available_collections")
"""

import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Generator

from songbook_sync.core.exceptions import StoreError


_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS kv (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


class DurableStore:
    """
    Thread-safe SQLite key/value store.

    Uses a single persistent connection with thread locking for safety.
    All public methods acquire self._lock before executing.

    Attributes:
        db_path: Location of the SQLite file.
        write_count: Number of keys written since construction. Used by
                     cache statistics and by tests asserting that a
                     no-op put did not touch the disk.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.write_count = 0
        self._lock = threading.Lock()
        self._conn: sqlite3.Connection | None = None

        try:
            db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreError(
                f"Cannot create store directory: {db_path.parent}",
                details={"path": str(db_path.parent), "original_error": str(e)}
            ) from e

        try:
            with self._get_connection() as conn:
                conn.executescript(_SCHEMA_SQL)
                conn.commit()
        except sqlite3.Error as e:
            raise StoreError(
                f"Failed to initialize store: {e}",
                details={"path": str(db_path)}
            ) from e

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Get the persistent connection, creating it on first use.

        sqlite3 errors raised inside the block are wrapped in StoreError.
        """
        if self._conn is None:
            self._conn = sqlite3.connect(
                str(self.db_path),
                timeout=30.0,
                check_same_thread=False  # We handle thread safety with _lock
            )
            self._conn.execute("PRAGMA journal_mode = WAL")
        try:
            yield self._conn
        except sqlite3.Error as e:
            raise StoreError(
                f"Store operation failed: {e}",
                details={"path": str(self.db_path), "original_error": str(e)}
            ) from e

    def _now_iso(self) -> str:
        return datetime.now(timezone.utc).isoformat()

    def close(self) -> None:
        """Close the store connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def get(self, key: str) -> str | None:
        """Return the value stored under key, or None."""
        with self._lock:
            with self._get_connection() as conn:
                row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
                return row[0] if row else None

    def set(self, key: str, value: str) -> None:
        """Insert or replace a single key."""
        self.set_many({key: value})

    def set_many(self, items: dict[str, str]) -> None:
        """
        Insert or replace several keys in one transaction.

        Args:
            items: Mapping of key -> value. Empty mappings are a no-op.
        """
        if not items:
            return
        now = self._now_iso()
        with self._lock:
            with self._get_connection() as conn:
                conn.executemany(
                    """
                    INSERT INTO kv (key, value, updated_at) VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    [(key, value, now) for key, value in items.items()]
                )
                conn.commit()
                self.write_count += len(items)

    def delete(self, key: str) -> bool:
        """
        Delete a key.

        Returns:
            True if the key existed.
        """
        with self._lock:
            with self._get_connection() as conn:
                cursor = conn.execute("DELETE FROM kv WHERE key = ?", (key,))
                conn.commit()
                return cursor.rowcount > 0

    def keys(self, prefix: str = "") -> list[str]:
        """Return all keys starting with prefix, sorted."""
        with self._lock:
            with self._get_connection() as conn:
                rows = conn.execute(
                    "SELECT key FROM kv WHERE substr(key, 1, ?) = ? ORDER BY key",
                    (len(prefix), prefix)
                ).fetchall()
        return [row[0] for row in rows]

    def delete_prefix(self, prefix: str) -> int:
        """
        Delete every key starting with prefix.

        Returns:
            Number of deleted keys.
        """
        with self._lock:
            with self._get_connection() as conn:
                cursor = conn.execute(
                    "DELETE FROM kv WHERE substr(key, 1, ?) = ?",
                    (len(prefix), prefix)
                )
                conn.commit()
                return cursor.rowcount
