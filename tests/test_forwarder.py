"""End-to-end forwarding through the aiohttp app.

Upstreams are either an httpx.MockTransport (for made-up hosts) or a real
aiohttp test server on localhost.
"""

import asyncio
import gzip

import aiohttp
import httpx
import pytest
from aiohttp import web
from multidict import CIMultiDict

from bodytap.formatters import InspectOptions
from bodytap.forwarder import (
    FORWARD_ERROR_TEXT,
    INVALID_TARGET_TEXT,
    ProxyForwarder,
    ProxyTransaction,
    TransactionStatus,
    outbound_headers,
)
from bodytap.server import CATCH_ALL_TEXT, create_app, find_free_port
from bodytap.target import resolve


class MockUpstream:
    """httpx.MockTransport handler that records what it was sent."""

    def __init__(self, status_code=201, content=b'{"id":5}', headers=None):
        self.status_code = status_code
        self.content = content
        self.headers = headers or {"content-type": "application/json"}
        self.requests: list[httpx.Request] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        # Passed as a stream so the proxy sees an unread body, like a real transport
        headers = {**self.headers, "content-length": str(len(self.content))}
        return httpx.Response(self.status_code, headers=headers, stream=httpx.ByteStream(self.content))

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


@pytest.fixture
def mock_upstream() -> MockUpstream:
    return MockUpstream()


@pytest.fixture
async def proxy(aiohttp_client, inspector, mock_upstream):
    forwarder = ProxyForwarder(inspector, InspectOptions(), transport=mock_upstream.transport)
    return await aiohttp_client(create_app(forwarder))


@pytest.fixture
async def live_proxy(aiohttp_client, inspector):
    """Proxy using the real network transport."""
    forwarder = ProxyForwarder(inspector, InspectOptions(), timeout=httpx.Timeout(5.0))
    return await aiohttp_client(create_app(forwarder))


async def test_post_is_relayed_and_inspected_once(proxy, inspector, mock_upstream):
    resp = await proxy.post(
        "/",
        params={"target_url": "https://example.test/posts"},
        data=b'{"a":1}',
        headers={"Content-Type": "application/json"},
    )

    assert resp.status == 201
    assert await resp.read() == b'{"id":5}'
    assert resp.headers["Content-Type"] == "application/json"

    assert len(mock_upstream.requests) == 1
    sent = mock_upstream.requests[0]
    assert sent.method == "POST"
    assert str(sent.url) == "https://example.test/posts"
    assert sent.headers["host"] == "example.test"
    assert sent.content == b'{"a":1}'

    await inspector.wait()
    assert len(inspector.calls) == 1
    request_body, response_body, metadata, options = inspector.calls[0]
    assert request_body == b'{"a":1}'
    assert response_body == b'{"id":5}'
    assert metadata.status_code == 201
    assert metadata.reason == "Created"
    assert metadata.target_url == "https://example.test/posts"
    assert options == InspectOptions()


async def test_invalid_target_is_rejected_without_forwarding(proxy, inspector, mock_upstream, log_templates):
    resp = await proxy.post("/", params={"target_url": "not-a-url"}, data=b'{"a":1}')

    assert resp.status == 400
    assert await resp.text() == INVALID_TARGET_TEXT
    await asyncio.sleep(0.05)
    assert mock_upstream.requests == []
    assert inspector.calls == []
    assert "Rejected target_url: {reason}" in log_templates()


async def test_missing_target_is_rejected(proxy, mock_upstream):
    resp = await proxy.post("/", data=b"{}")

    assert resp.status == 400
    assert mock_upstream.requests == []


async def test_unreachable_upstream_gives_500(live_proxy, inspector):
    target = f"http://127.0.0.1:{find_free_port()}/posts"

    resp = await live_proxy.post("/", params={"target_url": target}, data=b'{"a":1}')

    assert resp.status == 500
    assert await resp.text() == FORWARD_ERROR_TEXT
    await asyncio.sleep(0.05)
    assert inspector.calls == []


async def test_other_paths_get_the_informational_body(proxy, inspector, mock_upstream):
    resp = await proxy.get("/anything")

    assert resp.status == 200
    assert await resp.text() == CATCH_ALL_TEXT
    assert mock_upstream.requests == []
    assert inspector.calls == []


async def test_any_method_is_forwarded(proxy, mock_upstream):
    resp = await proxy.request("DELETE", "/", params={"target_url": "https://example.test/posts/1"})

    assert resp.status == 201
    assert mock_upstream.requests[0].method == "DELETE"


async def test_upstream_status_passes_through(aiohttp_client, inspector):
    upstream = MockUpstream(status_code=404, content=b"missing", headers={"content-type": "text/plain"})
    forwarder = ProxyForwarder(inspector, transport=upstream.transport)
    client = await aiohttp_client(create_app(forwarder))

    resp = await client.get("/", params={"target_url": "https://example.test/nope"})

    assert resp.status == 404
    assert await resp.text() == "missing"
    await inspector.wait()
    assert inspector.calls[0][2].status_code == 404


async def test_inspection_failure_does_not_touch_the_response(aiohttp_client, mock_upstream, log_templates):
    called = asyncio.Event()

    def broken_inspector(request_body, response_body, metadata, options):
        called.set()
        raise ValueError("formatter blew up")

    forwarder = ProxyForwarder(broken_inspector, transport=mock_upstream.transport)
    client = await aiohttp_client(create_app(forwarder))

    resp = await client.post("/", params={"target_url": "https://example.test/posts"}, data=b"{}")

    assert resp.status == 201
    assert await resp.read() == b'{"id":5}'
    await asyncio.wait_for(called.wait(), 2.0)
    await asyncio.sleep(0.05)
    assert "Inspection failed for {target}" in log_templates()


async def test_async_inspector_is_awaited(aiohttp_client, mock_upstream):
    done = asyncio.Event()

    async def async_inspector(request_body, response_body, metadata, options):
        await asyncio.sleep(0)
        done.set()

    forwarder = ProxyForwarder(async_inspector, transport=mock_upstream.transport)
    client = await aiohttp_client(create_app(forwarder))

    resp = await client.post("/", params={"target_url": "https://example.test/posts"}, data=b"{}")

    assert resp.status == 201
    await asyncio.wait_for(done.wait(), 2.0)


# -- Real upstream -----------------------------------------------------------


async def test_streamed_response_and_headers_round_trip(aiohttp_server, live_proxy, inspector):
    seen: dict = {}

    async def handler(request: web.Request) -> web.StreamResponse:
        seen["headers"] = request.headers.copy()
        seen["body"] = await request.read()
        resp = web.StreamResponse(status=200, headers={"Content-Type": "text/plain"})
        resp.headers.add("Set-Cookie", "a=1")
        resp.headers.add("Set-Cookie", "b=2")
        await resp.prepare(request)
        for part in (b"alpha ", b"beta ", b"gamma"):
            await resp.write(part)
        await resp.write_eof()
        return resp

    app = web.Application()
    app.router.add_post("/stream", handler)
    upstream = await aiohttp_server(app)
    target = str(upstream.make_url("/stream"))

    resp = await live_proxy.post(
        "/",
        params={"target_url": target},
        data=b"x" * 100_000,
        headers={"X-Trace": "abc123"},
    )

    assert resp.status == 200
    assert await resp.read() == b"alpha beta gamma"
    assert resp.headers.getall("Set-Cookie") == ["a=1", "b=2"]

    assert seen["body"] == b"x" * 100_000
    assert seen["headers"]["Host"] == f"127.0.0.1:{upstream.port}"
    assert seen["headers"]["X-Trace"] == "abc123"
    # The caller's own client headers go out, not httpx's defaults
    assert not seen["headers"]["User-Agent"].startswith("python-httpx")

    await inspector.wait()
    request_body, response_body, _, _ = inspector.calls[0]
    assert request_body == b"x" * 100_000
    assert response_body == b"alpha beta gamma"


async def test_bodiless_request_is_not_chunked(aiohttp_server, live_proxy, inspector):
    seen: dict = {}

    async def handler(request: web.Request) -> web.Response:
        seen["method"] = request.method
        seen["headers"] = request.headers.copy()
        return web.Response(text="ok")

    app = web.Application()
    app.router.add_get("/plain", handler)
    upstream = await aiohttp_server(app)

    resp = await live_proxy.get("/", params={"target_url": str(upstream.make_url("/plain"))})

    assert resp.status == 200
    assert await resp.text() == "ok"
    assert seen["method"] == "GET"
    assert "Transfer-Encoding" not in seen["headers"]

    await inspector.wait()
    assert inspector.calls[0][0] == b""
    assert inspector.calls[0][1] == b"ok"


async def test_compressed_body_is_relayed_untouched(aiohttp_server, live_proxy, inspector):
    payload = b'{"message": "' + b"z" * 2000 + b'"}'
    compressed = gzip.compress(payload)

    async def handler(request: web.Request) -> web.Response:
        return web.Response(
            body=compressed,
            headers={"Content-Encoding": "gzip", "Content-Type": "application/json"},
        )

    app = web.Application()
    app.router.add_get("/gz", handler)
    upstream = await aiohttp_server(app)

    resp = await live_proxy.get("/", params={"target_url": str(upstream.make_url("/gz"))})

    assert resp.status == 200
    assert resp.headers["Content-Encoding"] == "gzip"
    assert await resp.read() == payload

    await inspector.wait()
    assert inspector.calls[0][1] == compressed


async def test_upstream_failure_mid_stream_drops_the_connection(aiohttp_server, live_proxy, inspector):
    async def handler(request: web.Request) -> web.StreamResponse:
        resp = web.StreamResponse(status=200)
        resp.content_length = 100
        await resp.prepare(request)
        await resp.write(b"x" * 10)
        request.transport.close()
        return resp

    app = web.Application()
    app.router.add_get("/broken", handler)
    upstream = await aiohttp_server(app)

    resp = await live_proxy.get("/", params={"target_url": str(upstream.make_url("/broken"))})

    assert resp.status == 200
    with pytest.raises(aiohttp.ClientError):
        await resp.read()
    await asyncio.sleep(0.05)
    assert inspector.calls == []


# -- Pieces ------------------------------------------------------------------


def test_outbound_headers_copy_and_rewrite_host():
    inbound = CIMultiDict([("Host", "localhost:3000"), ("X-Dup", "first"), ("x-dup", "second"), ("Accept", "*/*")])

    headers = outbound_headers(inbound, resolve("https://example.test/posts"))

    assert dict(headers) == {"host": "example.test", "x-dup": "second", "accept": "*/*"}
    assert inbound["Host"] == "localhost:3000"
    with pytest.raises(TypeError):
        headers["host"] = "elsewhere"  # type: ignore[index]


def test_transaction_visits_one_terminal_state():
    txn = ProxyTransaction(method="POST")
    txn.advance(TransactionStatus.STREAMING)
    txn.advance(TransactionStatus.INSPECTED)

    assert txn.status.terminal
    with pytest.raises(RuntimeError):
        txn.advance(TransactionStatus.FAILED_UPSTREAM)


def test_validation_failure_is_terminal():
    txn = ProxyTransaction(method="POST")
    txn.advance(TransactionStatus.FAILED_VALIDATION)

    with pytest.raises(RuntimeError):
        txn.advance(TransactionStatus.STREAMING)
