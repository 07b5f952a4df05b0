"""
Cheap remote change detection.

Before paying for a full refresh, the orchestrator asks whether anything
changed remotely. The answer comes from a small metadata record mapping
collection id -> content hash (or timestamp), compared with the baseline
stored in SyncMetadata. When that record does not exist, a single global
last-modified marker is compared instead.

The remote probe runs at most once per change_check_interval_hours; asking
again sooner returns the last known answer. A failing probe answers "changed"
so a flaky check can never starve refreshes.
"""

from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable

from songbook_sync.cache.collection_cache import CollectionCache, utc_now
from songbook_sync.core.config import RemoteConfig, SyncConfig
from songbook_sync.core.logger import get_logger
from songbook_sync.remote.client import RemoteStore
from songbook_sync.remote.parsing import children


logger = get_logger(__name__)


def _fingerprint(value: Any) -> str:
    """Reduce one metadata value (hash string or record) to a comparable string."""
    if isinstance(value, dict):
        for key in ("hash", "content_hash", "updated_at", "last_modified"):
            if value.get(key) is not None:
                return str(value[key])
        return str(sorted(value.items()))
    return str(value)


class ChangeDetector:
    """
    Rate-limited "has the remote changed?" probe.

    Example:
        detector = ChangeDetector(remote, cache, config.remote, config.sync)
        if await detector.has_remote_changed_since_last_check():
            await orchestrator.refresh()
    """

    def __init__(
        self,
        remote: RemoteStore,
        cache: CollectionCache,
        paths: RemoteConfig,
        config: SyncConfig,
        clock: Callable[[], datetime] = utc_now
    ) -> None:
        self._remote = remote
        self._cache = cache
        self._paths = paths
        self._config = config
        self._clock = clock

    @property
    def interval(self) -> timedelta:
        return timedelta(hours=self._config.change_check_interval_hours)

    async def has_remote_changed_since_last_check(self) -> bool:
        """
        Decide whether a full refresh is worth its cost.

        Returns:
            True if any collection hash (or the global marker) differs from
            the stored baseline, if there is no baseline yet, or if the
            probe failed. Within the rate-limit interval, the previous
            answer.
        """
        metadata = await self._cache.load_sync_metadata()
        now = self._clock()

        if (
            metadata.last_metadata_check is not None
            and now - metadata.last_metadata_check < self.interval
        ):
            logger.debug("Change check skipped (checked recently)")
            return metadata.last_known_changed

        timeout = self._config.remote_timeout_authenticated
        try:
            payload = await self._remote.get(self._paths.change_metadata_path, timeout)
            hashes = {key: _fingerprint(value) for key, value in children(payload)}

            if hashes:
                changed = hashes != metadata.collection_hashes
                metadata = replace(metadata, collection_hashes=hashes)
            else:
                marker = await self._remote.get(self._paths.last_modified_path, timeout)
                if marker is None:
                    # Nothing to compare against
                    changed = True
                else:
                    changed = _fingerprint(marker) != metadata.global_marker
                    metadata = replace(metadata, global_marker=_fingerprint(marker))
        except Exception as e:
            logger.warning(f"Change check failed, assuming changed: {e}")
            return True

        metadata = replace(metadata, last_metadata_check=now, last_known_changed=changed)
        await self._cache.save_sync_metadata(metadata)
        logger.info(f"Remote change check: {'changed' if changed else 'unchanged'}")
        return changed

    async def acknowledge(self) -> None:
        """
        Record that the last detected change has been consumed by a refresh.

        Later calls inside the rate-limit interval then answer False instead
        of repeating a stale True.
        """
        metadata = await self._cache.load_sync_metadata()
        if metadata.last_known_changed:
            await self._cache.save_sync_metadata(replace(metadata, last_known_changed=False))
