"""Test configuration and fixtures"""

import asyncio
import copy
import json
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

from songbook_sync.cache.collection_cache import CollectionCache
from songbook_sync.context import SongbookContext
from songbook_sync.core.config import Config, ConnectivityConfig, SnapshotConfig
from songbook_sync.core.exceptions import RemoteError
from songbook_sync.core.store import DurableStore
from songbook_sync.remote.client import RemoteStore
from songbook_sync.remote.parsing import children, key_order


def song_record(number: int | str, title: str | None = None) -> dict[str, Any]:
    """A song record in the backend's JSON shape"""
    return {
        "song_number": str(number),
        "song_title": title or f"Song {number}",
        "verses": [{"verse_number": "1", "lyrics": f"Lyrics of song {number}"}],
    }


def song_map(numbers, prefix: str = "Song") -> dict[str, dict[str, Any]]:
    """A partition keyed by song number"""
    return {str(n): song_record(n, f"{prefix} {n}") for n in numbers}


class FakeRemoteStore(RemoteStore):
    """
    In-memory remote tree.

    Flip `offline` to make every request time out, or add paths to
    `failing_paths` to reject reads below them. `connected` is the value
    served at the backend connectivity signal. Every request path is
    recorded in `reads`.
    """

    def __init__(self, tree: dict[str, Any] | None = None) -> None:
        self.tree: dict[str, Any] = tree if tree is not None else {}
        self.offline = False
        self.connected: Any = True
        self.failing_paths: set[str] = set()
        self.delay = 0.0
        self.reads: list[str] = []
        self.closed = False

    def read_count(self, path: str) -> int:
        return self.reads.count(path)

    async def _enter(self, path: str) -> None:
        self.reads.append(path)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.offline:
            raise RemoteError(f"Timed out reading {path}", is_timeout=True)
        for failing in self.failing_paths:
            if path == failing or path.startswith(failing + "/"):
                raise RemoteError(f"Permission denied: {path}", status_code=401)

    def _resolve(self, path: str) -> Any:
        if path == ".info/connected":
            return self.connected
        if path == ".info/serverTimeOffset":
            return 0

        node: Any = self.tree
        for part in path.strip("/").split("/"):
            if isinstance(node, dict):
                node = node.get(part)
            elif isinstance(node, list) and part.isdigit() and int(part) < len(node):
                node = node[int(part)]
            else:
                return None
            if node is None:
                return None
        return copy.deepcopy(node)

    async def get(self, path: str, timeout: float) -> Any:
        await self._enter(path)
        return self._resolve(path)

    async def scan(
        self,
        path: str,
        start_at: str | None,
        limit: int,
        timeout: float
    ) -> list[tuple[str, Any]]:
        await self._enter(path)
        rows = children(self._resolve(path))
        if start_at is not None:
            rows = [(key, value) for key, value in rows if key_order(key) >= key_order(start_at)]
        return rows[:limit]

    async def exists(self, path: str, timeout: float) -> bool:
        await self._enter(path)
        return self._resolve(path) is not None

    async def close(self) -> None:
        self.closed = True


class FakeClock:
    """Settable UTC clock"""

    def __init__(self) -> None:
        self.now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class RecordingSleep:
    """Replacement for asyncio.sleep that only records delays"""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def temp_dir(tmp_path):
    """Temporary directory for tests"""
    return tmp_path


@pytest.fixture
def snapshot_path(temp_dir) -> Path:
    """Bundled snapshot with songs 1..10"""
    path = temp_dir / "snapshot.json"
    records = [song_record(n, f"Snapshot {n}") for n in range(1, 11)]
    path.write_text(json.dumps(records), encoding="utf-8")
    return path


@pytest.fixture
def config(temp_dir, snapshot_path) -> Config:
    """Engine config with short probe timeouts and no probe memo"""
    base = Config.default(temp_dir / "cache")
    return replace(
        base,
        remote=replace(base.remote, database_url="https://songbook.test"),
        connectivity=ConnectivityConfig(
            guest_read_timeout=1,
            signal_timeout=1,
            clock_timeout=1,
            last_resort_timeout=1,
            result_cache_seconds=0,
        ),
        snapshot=SnapshotConfig(path=snapshot_path, collection_id="LPMI"),
    )


@pytest.fixture
def store(config):
    durable = DurableStore(config.cache.db_path)
    yield durable
    durable.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeps() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def cache(store, config, clock) -> CollectionCache:
    return CollectionCache(store, config.cache, clock=clock)


@pytest.fixture
def remote() -> FakeRemoteStore:
    """
    Remote tree with one public collection 'A' (songs 1-3) and a legacy
    partition (songs 3-7), so song 3 exists in both layouts.
    """
    return FakeRemoteStore({
        "songs": song_map(range(3, 8), "Legacy"),
        "song_collections": {
            "A": {"name": "Collection A", "access_level": "public", "status": "active"},
        },
        "collection_songs": {
            "A": song_map(range(1, 4), "Collection A"),
        },
    })


@pytest_asyncio.fixture
async def songbook(config, remote, store, sleeps, clock):
    """Started SongbookContext over the fake remote"""
    context = SongbookContext(config, remote=remote, store=store, sleep=sleeps, clock=clock)
    await context.start()
    yield context
    await context.stop()
