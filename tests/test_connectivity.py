"""Tests for the connectivity probe"""

from dataclasses import replace

import pytest

from songbook_sync.connectivity import ConnectivityProbe
from songbook_sync.models import ActorRole


@pytest.fixture
def probe(remote, config):
    return ConnectivityProbe(remote, config.connectivity, config.remote)


@pytest.mark.asyncio
class TestConnectivityProbe:
    """Test ConnectivityProbe"""

    async def test_guest_direct_read(self, probe, remote):
        """Guests are confirmed by a minimal data read"""
        assert await probe.is_online(ActorRole.GUEST) is True
        assert remote.reads == ["songs"]

    async def test_guest_read_of_empty_path_confirms(self, probe, remote):
        """An answer of "nothing stored" still proves the backend is reachable"""
        remote.tree.pop("songs")
        remote.connected = False

        assert await probe.is_online(ActorRole.GUEST) is True
        assert remote.reads == ["songs"]

    async def test_authenticated_uses_signal(self, probe, remote):
        assert await probe.is_online(ActorRole.PREMIUM) is True
        assert remote.reads == [".info/connected"]

    async def test_guest_falls_back_to_signal(self, probe, remote):
        """A restricted data path does not make a guest offline"""
        remote.failing_paths.add("songs")
        assert await probe.is_online(ActorRole.GUEST) is True
        assert remote.reads == ["songs", ".info/connected"]

    async def test_server_clock_confirms(self, probe, remote):
        remote.connected = False
        assert await probe.is_online(ActorRole.USER) is True
        assert remote.reads == [".info/connected", ".info/serverTimeOffset"]

    async def test_offline(self, probe, remote):
        """Every step failing is offline, never an exception"""
        remote.offline = True
        assert await probe.is_online(ActorRole.GUEST) is False
        assert await probe.is_online(ActorRole.ADMIN) is False

    async def test_steps_time_out(self, remote, config):
        fast = replace(
            config.connectivity,
            guest_read_timeout=0.01,
            signal_timeout=0.01,
            clock_timeout=0.01,
            last_resort_timeout=0.01,
        )
        probe = ConnectivityProbe(remote, fast, config.remote)
        remote.delay = 0.2

        assert await probe.is_online(ActorRole.GUEST) is False

    async def test_answer_is_memoized(self, remote, config):
        memoized = replace(config.connectivity, result_cache_seconds=60)
        probe = ConnectivityProbe(remote, memoized, config.remote)

        assert probe.last_known(ActorRole.GUEST) is None
        assert await probe.is_online(ActorRole.GUEST) is True
        assert await probe.is_online(ActorRole.GUEST) is True
        assert remote.reads == ["songs"]
        assert probe.last_known(ActorRole.GUEST) is True
        assert probe.last_known(ActorRole.USER) is None

        probe.invalidate()
        remote.offline = True
        assert await probe.is_online(ActorRole.GUEST) is False
