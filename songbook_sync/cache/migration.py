"""
Cache migration gate.

The on-disk contract of the cache is versioned with a persisted counter
(migration_version). At startup the gate compares it with
CURRENT_MIGRATION_VERSION and runs every intermediate step in order.

Rules:
    - Each step is idempotent and safe to re-run.
    - The counter is bumped after each successful step.
    - A failing step aborts the run with MigrationError and leaves the
      counter at the last completed step, so it is retried on the next
      start rather than silently skipped.

Steps:
    1: Remove keys written by pre-collection app versions
       (old_collection_cache_*, legacy_song_data_*, outdated_collections_list).
    2: Drop cache entries written without a schema version or content hash.
"""

import asyncio
import json
from dataclasses import dataclass
from typing import Callable

from songbook_sync.cache.collection_cache import ENTRY_PREFIX, HASH_PREFIX
from songbook_sync.core.exceptions import MigrationError, StoreError
from songbook_sync.core.logger import get_logger
from songbook_sync.core.store import DurableStore


logger = get_logger(__name__)


MIGRATION_VERSION_KEY = "migration_version"

OBSOLETE_PREFIXES = ("old_collection_cache_", "legacy_song_data_")
OBSOLETE_KEYS = ("outdated_collections_list",)


@dataclass(frozen=True)
class MigrationStep:
    """
    One upgrade of the on-disk contract.

    Attributes:
        version: Version reached after this step.
        description: Short text for logs.
        apply: Synchronous function run in a worker thread against the store.
    """
    version: int
    description: str
    apply: Callable[[DurableStore], None]


def remove_obsolete_keys(store: DurableStore) -> None:
    removed = sum(store.delete_prefix(prefix) for prefix in OBSOLETE_PREFIXES)
    removed += sum(1 for key in OBSOLETE_KEYS if store.delete(key))
    logger.debug(f"Removed {removed} obsolete keys")


def drop_unversioned_entries(store: DurableStore) -> None:
    dropped = 0
    for key in store.keys(ENTRY_PREFIX):
        raw = store.get(key)
        try:
            data = json.loads(raw) if raw is not None else None
        except ValueError:
            data = None
        if isinstance(data, dict) and "schema_version" in data and data.get("content_hash"):
            continue
        store.delete(key)
        store.delete(HASH_PREFIX + key[len(ENTRY_PREFIX):])
        dropped += 1
    logger.debug(f"Dropped {dropped} unversioned cache entries")


DEFAULT_STEPS = (
    MigrationStep(1, "remove obsolete cache keys", remove_obsolete_keys),
    MigrationStep(2, "drop unversioned cache entries", drop_unversioned_entries),
)

CURRENT_MIGRATION_VERSION = DEFAULT_STEPS[-1].version


class MigrationGate:
    """
    Runs pending migration steps against the durable store.

    Example:
        gate = MigrationGate(store)
        if await gate.needs_migration():
            await gate.run()
    """

    def __init__(
        self,
        store: DurableStore,
        steps: tuple[MigrationStep, ...] = DEFAULT_STEPS
    ) -> None:
        self._store = store
        self._steps = tuple(sorted(steps, key=lambda step: step.version))
        self.current_version = self._steps[-1].version if self._steps else 0

    async def stored_version(self) -> int:
        """Persisted migration version; 0 when never migrated or unreadable."""
        try:
            raw = await asyncio.to_thread(self._store.get, MIGRATION_VERSION_KEY)
            return int(raw) if raw is not None else 0
        except (StoreError, ValueError) as e:
            logger.warning(f"Could not read migration version, assuming 0: {e}")
            return 0

    async def needs_migration(self) -> bool:
        return await self.stored_version() < self.current_version

    async def run(self) -> int:
        """
        Run every step newer than the persisted version, in order.

        Returns:
            The persisted version after the run.

        Raises:
            MigrationError: If a step fails. Versions of the steps that
                            completed before it stay persisted.
        """
        version = await self.stored_version()
        pending = [step for step in self._steps if step.version > version]
        if not pending:
            logger.debug(f"Cache migrations up to date (version {version})")
            return version

        logger.info(f"Migrating cache from version {version} to {self.current_version}")
        for step in pending:
            try:
                await asyncio.to_thread(step.apply, self._store)
                await asyncio.to_thread(self._store.set, MIGRATION_VERSION_KEY, str(step.version))
            except Exception as e:
                raise MigrationError(
                    f"Migration to version {step.version} ({step.description}) failed: {e}",
                    details={"from_version": version, "original_error": str(e)},
                    step_version=step.version
                ) from e
            version = step.version
            logger.info(f"Applied cache migration {step.version}: {step.description}")

        return version

    async def status(self) -> dict[str, int | bool]:
        stored = await self.stored_version()
        return {
            "stored_version": stored,
            "current_version": self.current_version,
            "needs_migration": stored < self.current_version,
        }
