"""ProxyForwarder - one inbound request, one upstream exchange.

For each request hitting the proxy:
1. Resolve the target_url query parameter (400 if it's no good)
2. Copy the inbound headers, pointing Host at the target
3. Stream the inbound body upstream through a StreamTee
4. Relay upstream status and headers, then stream the raw response body
   back through a second StreamTee
5. Hand both captured bodies to the inspector

The response is relayed byte for byte (aiter_raw, no decompression), so
Content-Encoding and Content-Length stay truthful. Only the hop-by-hop
framing headers are dropped because aiohttp frames the response itself.

Each transaction gets its own httpx client. Nothing is shared between
requests, and leaving the async-with blocks closes every upstream socket
whether the exchange finished, failed, or got cancelled.
"""

import asyncio
import enum
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

import httpx
import logfire
from aiohttp import web

from .formatters import InspectOptions, ResponseMetadata
from .inspection import ConsoleInspector, Inspector
from .target import InvalidTarget, TargetDescriptor, resolve
from .tee import StreamTee

TARGET_PARAM = "target_url"

DEFAULT_TIMEOUT = httpx.Timeout(300.0, connect=10.0)

# Hop-by-hop headers that aiohttp re-frames on its own
SKIP_RESPONSE_HEADERS = {
    "connection",
    "keep-alive",
    "transfer-encoding",
}

INVALID_TARGET_TEXT = "Invalid target_url query parameter"
FORWARD_ERROR_TEXT = "Error forwarding the request"


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    STREAMING = "streaming"
    INSPECTED = "inspected"
    FAILED_VALIDATION = "failed_validation"
    FAILED_UPSTREAM = "failed_upstream"
    ABORTED = "aborted"

    @property
    def terminal(self) -> bool:
        return self not in (TransactionStatus.PENDING, TransactionStatus.STREAMING)


_TRANSITIONS = {
    TransactionStatus.PENDING: {
        TransactionStatus.STREAMING,
        TransactionStatus.FAILED_VALIDATION,
        TransactionStatus.FAILED_UPSTREAM,
        TransactionStatus.ABORTED,
    },
    TransactionStatus.STREAMING: {
        TransactionStatus.INSPECTED,
        TransactionStatus.FAILED_UPSTREAM,
        TransactionStatus.ABORTED,
    },
}


@dataclass
class ProxyTransaction:
    """State of one inbound request. Owned by the forwarder driving it."""

    method: str
    headers: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    target: TargetDescriptor | None = None
    request_tee: StreamTee | None = None
    response_tee: StreamTee | None = None
    status_code: int | None = None
    status: TransactionStatus = TransactionStatus.PENDING

    def advance(self, new_status: TransactionStatus) -> None:
        if new_status not in _TRANSITIONS.get(self.status, ()):
            raise RuntimeError(
                f"Illegal transaction transition: {self.status.value} -> {new_status.value}"
            )
        self.status = new_status


def outbound_headers(inbound: Mapping[str, str], target: TargetDescriptor) -> Mapping[str, str]:
    """Copy inbound headers for the upstream request.

    Keys are lower-cased and the last value wins on duplicates. The Host
    header is replaced so virtual-hosted upstreams route correctly.
    Returns a read-only mapping, never the inbound object.
    """
    headers = {key.lower(): value for key, value in inbound.items()}
    headers["host"] = target.host
    return MappingProxyType(headers)


class ProxyForwarder:
    """Forwards requests to caller-chosen targets and captures both bodies.

    Usage:
        forwarder = ProxyForwarder(ConsoleInspector(), InspectOptions())
        app.router.add_route("*", "/", forwarder.handle)
    """

    def __init__(
        self,
        inspector: Inspector | None = None,
        options: InspectOptions | None = None,
        *,
        timeout: httpx.Timeout = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
        verify: bool = True,
    ):
        """Initialize the forwarder.

        Args:
            inspector: Receives captured bodies after each completed exchange
            options: Passed through to the inspector untouched
            timeout: Bounds for upstream connect/read/write
            transport: Custom httpx transport (tests use httpx.MockTransport)
            verify: Verify upstream TLS certificates
        """
        self.inspector = inspector if inspector is not None else ConsoleInspector()
        self.options = options if options is not None else InspectOptions()
        self.timeout = timeout
        self.transport = transport
        self.verify = verify

    async def handle(self, request: web.Request) -> web.StreamResponse:
        """aiohttp handler for the forwarding route."""
        return await self.forward(request, request.query.get(TARGET_PARAM))

    async def forward(self, request: web.Request, target_raw: str | None) -> web.StreamResponse:
        """Run one proxy transaction and return the response for the caller."""
        txn = ProxyTransaction(method=request.method)

        try:
            txn.target = resolve(target_raw)
        except InvalidTarget as e:
            txn.advance(TransactionStatus.FAILED_VALIDATION)
            logfire.warning(
                "Rejected target_url: {reason}",
                reason=e.reason,
                target_url=e.raw,
            )
            return web.Response(status=400, text=INVALID_TARGET_TEXT)

        txn.headers = outbound_headers(request.headers, txn.target)

        with logfire.span(
            "proxy.forward {method} {target}",
            method=txn.method,
            target=txn.target.url,
        ) as span:
            response = await self._exchange(request, txn, span)
            span.set_attribute("outcome", txn.status.value)
            return response

    def _client(self) -> httpx.AsyncClient:
        client = httpx.AsyncClient(
            timeout=self.timeout,
            transport=self.transport,
            verify=self.verify,
            follow_redirects=False,
            trust_env=False,  # the caller picked the target; no env proxies or .netrc
        )
        # No default User-Agent/Accept-Encoding etc: only the caller's headers go out
        client.headers.clear()
        return client

    async def _exchange(
        self,
        request: web.Request,
        txn: ProxyTransaction,
        span: logfire.LogfireSpan,
    ) -> web.StreamResponse:
        """Stream the request upstream and the response back."""
        target = txn.target
        txn.request_tee = StreamTee(request.content.iter_any(), name="request")

        content = txn.request_tee
        if not request.body_exists:
            # Bodiless request: don't let httpx invent a chunked body
            await txn.request_tee.drain()
            content = None

        resp: web.StreamResponse | None = None
        metadata: ResponseMetadata | None = None

        try:
            async with self._client() as client:
                async with client.stream(
                    txn.method,
                    target.url,
                    headers=dict(txn.headers),
                    content=content,
                ) as upstream:
                    txn.status_code = upstream.status_code or 500
                    span.set_attribute("status_code", txn.status_code)

                    resp = web.StreamResponse(
                        status=txn.status_code,
                        reason=upstream.reason_phrase or None,
                    )
                    for raw_key, raw_value in upstream.headers.raw:
                        key = raw_key.decode("latin-1")
                        if key.lower() not in SKIP_RESPONSE_HEADERS:
                            resp.headers.add(key, raw_value.decode("latin-1"))

                    await resp.prepare(request)
                    txn.advance(TransactionStatus.STREAMING)

                    txn.response_tee = StreamTee(upstream.aiter_raw(), name="response")
                    await txn.response_tee.pump(resp.write)

                    metadata = ResponseMetadata(
                        status_code=txn.status_code,
                        reason=upstream.reason_phrase,
                        headers=upstream.headers,
                        target_url=target.url,
                        method=txn.method,
                        request_headers=txn.headers,
                    )

            await resp.write_eof()
        except asyncio.CancelledError:
            txn.advance(TransactionStatus.ABORTED)
            logfire.info("Inbound connection closed, aborted {target}", target=target.url)
            raise
        except Exception as e:
            return self._fail(request, txn, resp, e)

        span.set_attribute("request_bytes", len(txn.request_tee.accumulator))
        span.set_attribute("response_bytes", len(txn.response_tee.accumulator))
        logfire.debug(
            "Relayed {status_code} from {target}",
            status_code=txn.status_code,
            target=target.url,
        )

        await self._inspect(txn, metadata)
        return resp

    def _fail(
        self,
        request: web.Request,
        txn: ProxyTransaction,
        resp: web.StreamResponse | None,
        error: Exception,
    ) -> web.StreamResponse:
        """Turn an exchange failure into whatever the caller can still get."""
        # httpx wraps its own socket errors, so a bare reset came from the inbound side
        if isinstance(error, ConnectionResetError):
            txn.advance(TransactionStatus.ABORTED)
            logfire.info(
                "Inbound connection lost while forwarding to {target}: {error}",
                target=txn.target.url,
                error=repr(error),
            )
        else:
            txn.advance(TransactionStatus.FAILED_UPSTREAM)
            logfire.error(
                "Proxy request error for {target}: {error}",
                target=txn.target.url,
                error=repr(error),
            )

        if resp is None or not resp.prepared:
            return web.Response(status=500, text=FORWARD_ERROR_TEXT)

        # Status and headers are already out; dropping the connection is all that's left
        if request.transport is not None:
            request.transport.close()
        return resp

    async def _inspect(self, txn: ProxyTransaction, metadata: ResponseMetadata) -> None:
        """Feed the inspector. Nothing raised here reaches the caller."""
        try:
            if not txn.request_tee.done:
                raise RuntimeError("Request body was not fully consumed by the upstream exchange")
            request_body = txn.request_tee.accumulator.getvalue()
            response_body = txn.response_tee.accumulator.getvalue()

            result = self.inspector(request_body, response_body, metadata, self.options)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logfire.exception("Inspection failed for {target}", target=txn.target.url)
        finally:
            txn.advance(TransactionStatus.INSPECTED)
