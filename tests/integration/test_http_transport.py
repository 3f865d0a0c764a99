"""Integration tests for HttpRepoTransport against a local aiohttp server.

A small XRPC server serves repository archives, heads and failure modes
so that fallback, retry, deadline and progress behavior run over real
HTTP.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer
from factories import RecordingProgress, block_payload, build_car

from reposync.adapters.transport import HttpRepoTransport
from reposync.core.exceptions import (
    DownloadTimeoutError,
    HttpStatusError,
    IncrementalUnsupportedError,
)
from reposync.core.models import LatestCommit
from reposync.core.retry import RetryPolicy


DID = "did:plc:owner"
NO_WAIT = RetryPolicy(max_attempts=3, base_delay=0)


@dataclass
class RepoHost:
    """Scripted behavior of one fake repository host.

    Attributes:
        archives: Archive bytes by DID.
        statuses: Status codes to answer getRepo with, consumed in order.
        heads: getLatestCommit answers by DID.
        reject_since: Answer 400 when `since` is present.
        stall: When set, getRepo sends a partial body and waits for it.
        requests: Recorded (path, query) pairs.
    """

    archives: dict[str, bytes] = field(default_factory=dict)
    statuses: list[int] = field(default_factory=list)
    heads: dict[str, dict[str, str]] = field(default_factory=dict)
    reject_since: bool = False
    stall: asyncio.Event | None = None
    requests: list[tuple[str, dict[str, str]]] = field(default_factory=list)

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/xrpc/com.atproto.sync.getRepo", self.get_repo)
        app.router.add_get("/xrpc/com.atproto.sync.getLatestCommit", self.get_latest)
        return app

    async def get_repo(self, request: web.Request) -> web.StreamResponse:
        self.requests.append((request.path, dict(request.query)))
        if self.statuses:
            return web.Response(status=self.statuses.pop(0))
        if self.reject_since and "since" in request.query:
            return web.json_response({"error": "InvalidRequest"}, status=400)
        data = self.archives.get(request.query.get("did", ""))
        if data is None:
            return web.json_response({"error": "RepoNotFound"}, status=404)
        if self.stall is not None:
            response = web.StreamResponse()
            response.content_length = len(data)
            await response.prepare(request)
            await response.write(data[:10])
            await self.stall.wait()
            return response
        return web.Response(body=data, content_type="application/vnd.ipld.car")

    async def get_latest(self, request: web.Request) -> web.Response:
        self.requests.append((request.path, dict(request.query)))
        head = self.heads.get(request.query.get("did", ""))
        if head is None:
            return web.json_response({"error": "RepoNotFound"}, status=404)
        return web.json_response(head)


@pytest.fixture
async def serve() -> AsyncIterator:
    """Start fake hosts; yields a function returning each host's base URL."""
    servers: list[TestServer] = []

    async def start(host: RepoHost) -> str:
        server = TestServer(host.app())
        await server.start_server()
        servers.append(server)
        return str(server.make_url("")).rstrip("/")

    yield start
    for server in servers:
        await server.close()


@pytest.fixture
async def transport_factory() -> AsyncIterator:
    transports: list[HttpRepoTransport] = []

    def make(fallback: str, **kwargs) -> HttpRepoTransport:
        kwargs.setdefault("retry", NO_WAIT)
        transport = HttpRepoTransport(fallback, **kwargs)
        transports.append(transport)
        return transport

    yield make
    for transport in transports:
        await transport.close()


@pytest.mark.transport
@pytest.mark.tra("Transport.Download")
@pytest.mark.tier(2)
class TestDownload:
    """Tests for HttpRepoTransport.download()."""

    async def test_full_download_reports_progress(self, serve, transport_factory) -> None:
        data = build_car(
            {f"app.bsky.graph.block/{i}": block_payload(f"did:plc:{i}") for i in range(50)}
        )
        host = RepoHost(archives={DID: data})
        url = await serve(host)
        transport = transport_factory(url, chunk_size=256)
        progress = RecordingProgress()

        result = await transport.download(DID, progress=progress)

        assert result == data
        assert host.requests == [("/xrpc/com.atproto.sync.getRepo", {"did": DID})]
        assert progress.updates[-1] == (len(data), len(data))
        assert len(progress.updates) > 1
        assert progress.finished == [DID]
        assert progress.stages[-1][1].startswith("Downloading...")
        assert progress.stages[-1][1].endswith("(100%)")

    async def test_since_is_sent(self, serve, transport_factory) -> None:
        host = RepoHost(archives={DID: build_car({})})
        url = await serve(host)

        await transport_factory(url).download(DID, since="rev1")

        assert host.requests[0][1] == {"did": DID, "since": "rev1"}

    async def test_falls_back_after_primary_failure(self, serve, transport_factory) -> None:
        """A failing primary host is followed by the fallback host."""
        data = build_car({})
        primary = RepoHost(statuses=[500, 500, 500])
        fallback = RepoHost(archives={DID: data})
        primary_url = await serve(primary)
        fallback_url = await serve(fallback)

        result = await transport_factory(fallback_url).download(DID, primary_url)

        assert result == data
        assert len(primary.requests) == 3
        assert len(fallback.requests) == 1

    async def test_transient_error_is_retried_on_same_host(
        self, serve, transport_factory
    ) -> None:
        data = build_car({})
        host = RepoHost(archives={DID: data}, statuses=[503])
        url = await serve(host)

        assert await transport_factory(url).download(DID) == data
        assert len(host.requests) == 2

    async def test_not_found_is_not_retried(self, serve, transport_factory) -> None:
        host = RepoHost()
        url = await serve(host)

        with pytest.raises(HttpStatusError) as exc_info:
            await transport_factory(url).download(DID)

        assert exc_info.value.status == 404
        assert exc_info.value.endpoint == url
        assert len(host.requests) == 1

    async def test_rejected_since_raises_immediately(self, serve, transport_factory) -> None:
        """A 400 for a diff request is not retried on any other host."""
        primary = RepoHost(archives={DID: build_car({})}, reject_since=True)
        fallback = RepoHost(archives={DID: build_car({})})
        primary_url = await serve(primary)
        fallback_url = await serve(fallback)

        with pytest.raises(IncrementalUnsupportedError):
            await transport_factory(fallback_url).download(DID, primary_url, since="rev1")

        assert len(primary.requests) == 1
        assert fallback.requests == []

    async def test_deadline_exceeded(self, serve, transport_factory) -> None:
        """A stalled body fails at the deadline with the deadline recorded."""
        stall = asyncio.Event()
        host = RepoHost(archives={DID: build_car({})}, stall=stall)
        url = await serve(host)
        transport = transport_factory(url)

        try:
            with pytest.raises(DownloadTimeoutError) as exc_info:
                await transport.download(DID, deadline_ms=200)
        finally:
            stall.set()

        assert exc_info.value.deadline_ms == 200
        assert isinstance(exc_info.value, TimeoutError)
        assert len(host.requests) == 1

    async def test_timed_out_primary_falls_back_once(self, serve, transport_factory) -> None:
        """A primary past its deadline is not retried; the fallback answers."""
        data = build_car({"app.bsky.graph.block/1": block_payload("did:plc:a")})
        stall = asyncio.Event()
        primary = RepoHost(archives={DID: data}, stall=stall)
        fallback = RepoHost(archives={DID: data})
        primary_url = await serve(primary)
        fallback_url = await serve(fallback)
        transport = transport_factory(fallback_url)

        started = time.monotonic()
        try:
            result = await transport.download(DID, primary_url, deadline_ms=300)
        finally:
            stall.set()
        elapsed = time.monotonic() - started

        assert result == data
        assert len(primary.requests) == 1
        assert len(fallback.requests) == 1
        # One deadline spent on the primary, not one per retry attempt
        assert elapsed < 0.3 * NO_WAIT.max_attempts

    async def test_unreachable_host(self, transport_factory) -> None:
        """Connection failures surface as transport errors after retries."""
        from reposync.core.exceptions import NetworkFailureError

        transport = transport_factory("http://127.0.0.1:9", retry=RetryPolicy(2, base_delay=0))

        with pytest.raises(NetworkFailureError):
            await transport.download(DID)


@pytest.mark.transport
@pytest.mark.tra("Transport.LatestCommit")
@pytest.mark.tier(2)
class TestLatestCommit:
    """Tests for get_latest_commit() and estimate_size()."""

    async def test_head_from_primary(self, serve, transport_factory) -> None:
        host = RepoHost(heads={DID: {"cid": "bafyhead", "rev": "3kabc"}})
        url = await serve(host)

        latest = await transport_factory(url).get_latest_commit(DID)

        assert latest == LatestCommit(cid="bafyhead", rev="3kabc")

    async def test_falls_back_for_head(self, serve, transport_factory) -> None:
        primary_url = await serve(RepoHost())
        fallback_url = await serve(RepoHost(heads={DID: {"cid": "c", "rev": "r"}}))

        latest = await transport_factory(fallback_url).get_latest_commit(DID, primary_url)

        assert latest == LatestCommit("c", "r")

    async def test_no_answer_is_none(self, serve, transport_factory) -> None:
        url = await serve(RepoHost())
        assert await transport_factory(url).get_latest_commit(DID) is None

    async def test_malformed_head_is_none(self, serve, transport_factory) -> None:
        url = await serve(RepoHost(heads={DID: {"cid": "c"}}))
        assert await transport_factory(url).get_latest_commit(DID) is None

    async def test_estimate_size(self, serve, transport_factory) -> None:
        data = build_car({"app.bsky.graph.block/1": block_payload("did:plc:a")})
        url = await serve(RepoHost(archives={DID: data}))
        transport = transport_factory(url)

        assert await transport.estimate_size(DID) == len(data)
        assert await transport.estimate_size("did:plc:missing") is None
