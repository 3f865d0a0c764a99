"""HTTP transport for repository archives over XRPC, using aiohttp."""

from __future__ import annotations

import asyncio
import logging
from functools import partial
from types import TracebackType
from typing import Any, Self

import aiohttp

from reposync.core.exceptions import (
    DownloadTimeoutError,
    HttpStatusError,
    IncrementalUnsupportedError,
    NetworkFailureError,
    TransportError,
)
from reposync.core.formatting import download_stage
from reposync.core.models import LatestCommit
from reposync.core.ports import NullProgressReporter, ProgressReporter
from reposync.core.retry import RetryPolicy


logger = logging.getLogger(__name__)

DEFAULT_FALLBACK_ENDPOINT = "https://bsky.network"
DEFAULT_DEADLINE_MS = 120_000
GET_REPO = "com.atproto.sync.getRepo"
GET_LATEST_COMMIT = "com.atproto.sync.getLatestCommit"
CHUNK_SIZE = 64 * 1024


class HttpRepoTransport:
    """Downloads repositories from a primary host with a fallback host.

    Each request to an endpoint is bounded by its own deadline. Transient
    failures (network errors, 5xx, 429) are retried on the same endpoint
    by the retry policy; anything else moves on to the next endpoint.

    Example:
        >>> async with HttpRepoTransport() as transport:
        ...     data = await transport.download("did:plc:abc", "https://pds.example")
    """

    def __init__(
        self,
        fallback_endpoint: str = DEFAULT_FALLBACK_ENDPOINT,
        *,
        deadline_ms: int = DEFAULT_DEADLINE_MS,
        retry: RetryPolicy | None = None,
        session: aiohttp.ClientSession | None = None,
        chunk_size: int = CHUNK_SIZE,
    ) -> None:
        """Initialize the transport.

        Args:
            fallback_endpoint: Host tried after the primary (or alone).
            deadline_ms: Default per-request deadline.
            retry: Retry policy for transient failures.
            session: Optional session to use. If omitted, one is created on
                first use and closed by close().
            chunk_size: Read size while streaming archives.
        """
        self.fallback_endpoint = fallback_endpoint.rstrip("/")
        self.deadline_ms = deadline_ms
        self._retry = retry or RetryPolicy()
        self._session = session
        self._owns_session = session is None
        self._chunk_size = chunk_size

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the session if this transport created it."""
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            # Deadlines are enforced per request with asyncio.timeout
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=None))
        return self._session

    def _endpoints(self, primary: str | None) -> list[str]:
        endpoints = []
        if primary:
            endpoints.append(primary.rstrip("/"))
        if self.fallback_endpoint not in endpoints:
            endpoints.append(self.fallback_endpoint)
        return endpoints

    async def download(
        self,
        did: str,
        endpoint: str | None = None,
        since: str | None = None,
        *,
        deadline_ms: int | None = None,
        progress: ProgressReporter | None = None,
    ) -> bytes:
        """Download a repository archive.

        Args:
            did: Repository DID.
            endpoint: Optional primary host, tried before the fallback.
            since: Previous revision to download a diff from.
            deadline_ms: Per-request deadline; defaults to the transport's.
            progress: Optional progress reporter.

        Returns:
            The archive bytes.

        Raises:
            IncrementalUnsupportedError: If a host rejected `since` with 400.
            TransportError: The last endpoint's error if every endpoint failed.
        """
        deadline = deadline_ms if deadline_ms is not None else self.deadline_ms
        reporter = progress or NullProgressReporter()
        last_error: TransportError | None = None

        for url in self._endpoints(endpoint):
            fetch = partial(self._fetch_archive, url, did, since, deadline, reporter)
            try:
                return await self._retry.call(fetch)
            except IncrementalUnsupportedError:
                raise
            except TransportError as e:
                logger.warning("Download of %s from %s failed: %s", did, url, e)
                last_error = e

        assert last_error is not None
        raise last_error

    async def _fetch_archive(
        self,
        endpoint: str,
        did: str,
        since: str | None,
        deadline_ms: int,
        progress: ProgressReporter,
    ) -> bytes:
        params = {"did": did}
        if since:
            params["since"] = since
        url = f"{endpoint}/xrpc/{GET_REPO}"
        session = self._get_session()

        try:
            async with asyncio.timeout(deadline_ms / 1000):
                async with session.get(url, params=params) as resp:
                    if resp.status == 400 and since:
                        raise IncrementalUnsupportedError(
                            f"{endpoint} does not support incremental downloads",
                            endpoint,
                        )
                    if resp.status != 200:
                        raise HttpStatusError(
                            f"getRepo returned HTTP {resp.status}", endpoint, resp.status
                        )
                    return await self._read_body(resp, did, progress)
        except TimeoutError as e:
            raise DownloadTimeoutError(
                f"Download from {endpoint} exceeded {deadline_ms} ms",
                endpoint,
                deadline_ms,
                e,
            ) from e
        except aiohttp.ClientError as e:
            raise NetworkFailureError(f"Cannot reach {endpoint}: {e}", endpoint, e) from e

    async def _read_body(
        self, resp: aiohttp.ClientResponse, did: str, progress: ProgressReporter
    ) -> bytes:
        total = resp.content_length or 0
        callback = progress.start_task(did, total)
        received = bytearray()
        try:
            async for chunk in resp.content.iter_chunked(self._chunk_size):
                received.extend(chunk)
                callback(len(received), total)
                progress.stage(did, download_stage(len(received), total))
        finally:
            progress.finish_task(did)
        return bytes(received)

    async def get_latest_commit(
        self, did: str, endpoint: str | None = None
    ) -> LatestCommit | None:
        """Get the repository head.

        Returns:
            The head from the first endpoint that answers, or None.
        """
        for url in self._endpoints(endpoint):
            try:
                return await self._retry.call(partial(self._fetch_latest, url, did))
            except TransportError as e:
                logger.info("getLatestCommit for %s at %s failed: %s", did, url, e)
        return None

    async def _fetch_latest(self, endpoint: str, did: str) -> LatestCommit:
        url = f"{endpoint}/xrpc/{GET_LATEST_COMMIT}"
        data = await self._request_json(url, {"did": did}, endpoint)
        cid, rev = data.get("cid"), data.get("rev")
        if not isinstance(cid, str) or not isinstance(rev, str):
            raise TransportError("Malformed getLatestCommit response", endpoint)
        return LatestCommit(cid=cid, rev=rev)

    async def _request_json(
        self, url: str, params: dict[str, str], endpoint: str
    ) -> dict[str, Any]:
        session = self._get_session()
        try:
            async with asyncio.timeout(self.deadline_ms / 1000):
                async with session.get(url, params=params) as resp:
                    if resp.status != 200:
                        raise HttpStatusError(
                            f"{url} returned HTTP {resp.status}", endpoint, resp.status
                        )
                    data = await resp.json(content_type=None)
        except TimeoutError as e:
            raise DownloadTimeoutError(
                f"Request to {endpoint} exceeded {self.deadline_ms} ms",
                endpoint,
                self.deadline_ms,
                e,
            ) from e
        except (aiohttp.ClientError, ValueError) as e:
            raise NetworkFailureError(f"Cannot read from {endpoint}: {e}", endpoint, e) from e
        if not isinstance(data, dict):
            raise TransportError("Expected a JSON object", endpoint)
        return data

    async def estimate_size(self, did: str, endpoint: str | None = None) -> int | None:
        """Archive size from a HEAD request, or None if no host reports it."""
        session = self._get_session()
        for url in self._endpoints(endpoint):
            try:
                async with asyncio.timeout(self.deadline_ms / 1000):
                    async with session.head(
                        f"{url}/xrpc/{GET_REPO}", params={"did": did}
                    ) as resp:
                        if resp.status == 200 and resp.content_length:
                            return resp.content_length
            except (TimeoutError, aiohttp.ClientError) as e:
                logger.debug("HEAD %s for %s failed: %s", url, did, e)
        return None
