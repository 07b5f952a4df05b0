"""
Remote document store client.

The engine is read-only toward the remote store and uses exactly three
kinds of read:
    - get:    point read of a path
    - scan:   ordered range scan by key (start at a key, limit count)
    - exists: small existence probe (shallow read)

RemoteStore is the interface the rest of the engine depends on. The
production implementation, FirebaseRestStore, talks to a Firebase Realtime
Database over its REST API with aiohttp, throttled client-side with
asyncio-throttle so a cold start that fans out over many collections does
not trip the backend's rate limits.

Every failure (timeout, HTTP error, connection error, undecodable body)
is raised as RemoteError. Callers never see aiohttp exceptions.

Usage:
    remote = FirebaseRestStore("https://example-rtdb.firebaseio.com")
    try:
        songs = await remote.get("collection_songs/LPMI", timeout=8)
        page = await remote.scan("songs", start_at="20", limit=11, timeout=10)
    finally:
        await remote.close()
"""

import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any

import aiohttp
from asyncio_throttle import Throttler

from songbook_sync.core.exceptions import RemoteError
from songbook_sync.core.logger import get_logger
from songbook_sync.remote.parsing import children


logger = get_logger(__name__)


class RemoteStore(ABC):
    """Read-only view of the hierarchical remote key/value tree."""

    @abstractmethod
    async def get(self, path: str, timeout: float) -> Any:
        """
        Read the JSON value at path.

        Returns:
            The decoded value, or None when nothing is stored there.

        Raises:
            RemoteError: On timeout or any transport/server failure.
        """

    @abstractmethod
    async def scan(
        self,
        path: str,
        start_at: str | None,
        limit: int,
        timeout: float
    ) -> list[tuple[str, Any]]:
        """
        Ordered range scan of the children of path.

        Args:
            path: Parent path.
            start_at: First key to include, or None to start at the beginning.
            limit: Maximum number of children returned.
            timeout: Seconds before the request is abandoned.

        Returns:
            (key, value) pairs in key order, at most limit of them.
            The child at start_at itself is included when it exists.

        Raises:
            RemoteError: On timeout or any transport/server failure.
        """

    @abstractmethod
    async def exists(self, path: str, timeout: float) -> bool:
        """True if anything is stored at path."""

    async def close(self) -> None:
        """Release network resources. Safe to call more than once."""


class UnconfiguredRemoteStore(RemoteStore):
    """
    Stand-in used when no database URL is configured.

    Every read fails immediately, so the probe reports offline and every
    resolver falls through to cache and snapshot.
    """

    def _fail(self, path: str) -> RemoteError:
        return RemoteError(
            "No remote database configured",
            details={"path": path}
        )

    async def get(self, path: str, timeout: float) -> Any:
        raise self._fail(path)

    async def scan(
        self,
        path: str,
        start_at: str | None,
        limit: int,
        timeout: float
    ) -> list[tuple[str, Any]]:
        raise self._fail(path)

    async def exists(self, path: str, timeout: float) -> bool:
        raise self._fail(path)


class FirebaseRestStore(RemoteStore):
    """
    Firebase Realtime Database REST client.

    One aiohttp.ClientSession is created lazily on first use and reused
    for every request; close() releases it.

    Attributes:
        database_url: Base URL without trailing slash.
        auth_token: Optional token sent as the 'auth' query parameter.
    """

    def __init__(
        self,
        database_url: str,
        auth_token: str | None = None,
        requests_per_second: int = 10
    ) -> None:
        self.database_url = database_url.rstrip("/")
        self.auth_token = auth_token
        self._throttler = Throttler(rate_limit=requests_per_second, period=1.0)
        self._session: aiohttp.ClientSession | None = None

    def _url(self, path: str) -> str:
        return f"{self.database_url}/{path.strip('/')}.json"

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={"Accept": "application/json"}
            )
        return self._session

    async def _request(self, path: str, params: dict[str, str], timeout: float) -> Any:
        """
        Perform one GET against the REST endpoint and decode its JSON body.

        Raises:
            RemoteError: With is_timeout=True on timeout, status_code set on
                         HTTP errors.
        """
        if self.auth_token:
            params = {**params, "auth": self.auth_token}

        details = {"path": path, "timeout": timeout}
        try:
            async with self._throttler:
                session = self._get_session()
                async with session.get(
                    self._url(path),
                    params=params,
                    timeout=aiohttp.ClientTimeout(total=timeout)
                ) as response:
                    if response.status >= 400:
                        body = await response.text()
                        raise RemoteError(
                            f"Remote read of '{path}' failed with HTTP {response.status}",
                            details={**details, "body": body[:200]},
                            status_code=response.status
                        )
                    return await response.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise RemoteError(
                f"Remote read of '{path}' timed out after {timeout}s",
                details=details,
                is_timeout=True
            ) from e
        except aiohttp.ClientError as e:
            raise RemoteError(
                f"Remote read of '{path}' failed: {e}",
                details={**details, "original_error": str(e)}
            ) from e
        except ValueError as e:
            raise RemoteError(
                f"Remote read of '{path}' returned an undecodable body",
                details={**details, "original_error": str(e)}
            ) from e

    async def get(self, path: str, timeout: float) -> Any:
        logger.debug(f"GET {path} (timeout {timeout}s)")
        return await self._request(path, {}, timeout)

    async def scan(
        self,
        path: str,
        start_at: str | None,
        limit: int,
        timeout: float
    ) -> list[tuple[str, Any]]:
        params = {"orderBy": json.dumps("$key"), "limitToFirst": str(limit)}
        if start_at is not None:
            params["startAt"] = json.dumps(start_at)

        logger.debug(f"SCAN {path} from {start_at!r} limit {limit}")
        payload = await self._request(path, params, timeout)
        # REST answers are plain JSON objects; key order must be restored
        return children(payload)[:limit]

    async def exists(self, path: str, timeout: float) -> bool:
        payload = await self._request(path, {"shallow": "true"}, timeout)
        return payload is not None

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
