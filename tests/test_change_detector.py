"""Tests for remote change detection"""

import pytest

from songbook_sync.cache.change_detector import ChangeDetector


@pytest.fixture
def detector(remote, cache, config, clock):
    return ChangeDetector(remote, cache, config.remote, config.sync, clock=clock)


@pytest.mark.asyncio
class TestChangeDetector:
    """Test ChangeDetector"""

    async def test_no_baseline_means_changed(self, detector):
        """Without any remote marker there is nothing to compare: changed"""
        assert await detector.has_remote_changed_since_last_check() is True

    async def test_collection_hashes(self, detector, remote, clock, config):
        remote.tree["sync_metadata"] = {"collections": {"A": "h1", "B": {"hash": "h2"}}}

        assert await detector.has_remote_changed_since_last_check() is True

        clock.advance(hours=config.sync.change_check_interval_hours + 1)
        assert await detector.has_remote_changed_since_last_check() is False

        remote.tree["sync_metadata"]["collections"]["B"] = {"hash": "h3"}
        clock.advance(hours=config.sync.change_check_interval_hours + 1)
        assert await detector.has_remote_changed_since_last_check() is True

    async def test_global_marker_fallback(self, detector, remote, clock, config):
        remote.tree["sync_metadata"] = {"last_modified": 1700000000000}

        assert await detector.has_remote_changed_since_last_check() is True
        clock.advance(hours=config.sync.change_check_interval_hours + 1)
        assert await detector.has_remote_changed_since_last_check() is False

    async def test_rate_limited(self, detector, remote, clock):
        """A second check inside the interval does not touch the remote"""
        remote.tree["sync_metadata"] = {"last_modified": 1}
        await detector.has_remote_changed_since_last_check()
        reads = len(remote.reads)

        clock.advance(minutes=5)
        assert await detector.has_remote_changed_since_last_check() is True
        assert len(remote.reads) == reads

    async def test_acknowledge_clears_answer(self, detector, remote, clock):
        remote.tree["sync_metadata"] = {"last_modified": 1}
        assert await detector.has_remote_changed_since_last_check() is True

        await detector.acknowledge()
        clock.advance(minutes=5)
        assert await detector.has_remote_changed_since_last_check() is False

    async def test_failure_answers_changed(self, detector, remote, cache):
        """A failing probe answers changed and records no check time"""
        remote.offline = True

        assert await detector.has_remote_changed_since_last_check() is True
        assert (await cache.load_sync_metadata()).last_metadata_check is None
