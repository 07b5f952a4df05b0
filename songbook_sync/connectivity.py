"""
Connectivity probe.

Answers "is the remote store actually responding right now?", which is a
stronger question than "is there a network interface". The probe
escalates through up to four checks, each bounded by its own timeout,
and stops at the first explicit confirmation:

    1. Guests only: minimal direct data read, a shallow existence check.
       Connection-status metadata may itself be access-restricted for
       anonymous actors, so a real read is the more reliable signal for them.
    2. The backend's own connectivity signal.
    3. A volatile server-side clock value. Any response proves reachability.
    4. The direct data read again, with a longer timeout.

Every failure is logged and counts as "not confirmed". The probe never
raises and has no side effects beyond logging and its short answer memo.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable

from songbook_sync.core.config import ConnectivityConfig, RemoteConfig
from songbook_sync.core.logger import get_logger
from songbook_sync.models import ActorRole
from songbook_sync.remote.client import RemoteStore


logger = get_logger(__name__)


class ConnectivityProbe:
    """
    Escalating remote reachability check.

    Answers are memoized per actor class (guest / authenticated) for
    config.result_cache_seconds so a burst of reads does not probe the
    backend once per read.

    Example:
        probe = ConnectivityProbe(remote, config.connectivity, config.remote)
        if await probe.is_online(ActorRole.GUEST):
            ...
    """

    def __init__(
        self,
        remote: RemoteStore,
        config: ConnectivityConfig,
        paths: RemoteConfig,
        clock: Callable[[], float] = time.monotonic
    ) -> None:
        self._remote = remote
        self._config = config
        self._paths = paths
        self._clock = clock
        self._memo: dict[bool, tuple[float, bool]] = {}

    def invalidate(self) -> None:
        """Forget memoized answers; the next call probes again."""
        self._memo.clear()

    def last_known(self, role: ActorRole = ActorRole.GUEST) -> bool | None:
        """
        Most recent answer for this actor class without probing.

        Used by reads served from cache, which must not wait on the network.
        None if this actor class was never probed.
        """
        memo = self._memo.get(role.is_guest)
        return memo[1] if memo is not None else None

    async def is_online(self, role: ActorRole = ActorRole.GUEST) -> bool:
        """
        Decide whether the remote store is reachable for this actor class.

        Args:
            role: Caller's role. Guests start with a direct data read.

        Returns:
            True only on an explicit confirmation from the backend.
        """
        is_guest = role.is_guest
        memo = self._memo.get(is_guest)
        now = self._clock()
        if memo is not None and now - memo[0] < self._config.result_cache_seconds:
            return memo[1]

        online = await self._probe(is_guest)
        self._memo[is_guest] = (self._clock(), online)
        logger.debug(f"Connectivity probe ({'guest' if is_guest else 'authenticated'}): "
                     f"{'online' if online else 'offline'}")
        return online

    async def _probe(self, is_guest: bool) -> bool:
        if is_guest and await self._step(
            "direct read", self._direct_read, self._config.guest_read_timeout
        ):
            return True

        if await self._step("connection signal", self._connection_signal, self._config.signal_timeout):
            return True

        if await self._step("server clock", self._server_clock, self._config.clock_timeout):
            return True

        return await self._step(
            "direct read (last resort)", self._direct_read, self._config.last_resort_timeout
        )

    async def _step(
        self,
        name: str,
        check: Callable[[float], Awaitable[bool]],
        timeout: float
    ) -> bool:
        """Run one check under its own timeout; any failure is False."""
        try:
            return await asyncio.wait_for(check(timeout), timeout=timeout)
        except asyncio.TimeoutError:
            logger.debug(f"Connectivity step '{name}' timed out after {timeout}s")
        except Exception as e:
            logger.debug(f"Connectivity step '{name}' failed: {e}")
        return False

    async def _direct_read(self, timeout: float) -> bool:
        # Any answer counts, including "nothing stored there"
        await self._remote.exists(self._paths.guest_probe_path, timeout)
        return True

    async def _connection_signal(self, timeout: float) -> bool:
        value: Any = await self._remote.get(self._paths.connection_signal_path, timeout)
        return value is True

    async def _server_clock(self, timeout: float) -> bool:
        await self._remote.get(self._paths.server_clock_path, timeout)
        return True
