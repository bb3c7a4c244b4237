"""aiohttp front door for the forwarder.

Routes:
    *  /              forwarded to ?target_url=...
    *  /{anything}    fixed informational body, nothing is forwarded

The server runs with handler cancellation on, so a caller hanging up
cancels its transaction (and closes the upstream connection with it).
Request bodies are not decompressed on the way in, so a gzip upload
reaches the target byte for byte with its Content-Encoding intact.
"""

import socket

import logfire
from aiohttp import web

from .forwarder import TARGET_PARAM, ProxyForwarder

CATCH_ALL_TEXT = f"Nothing to see here. Try POST /?{TARGET_PARAM}=<absolute url>"

SAMPLE_TARGET = "https://jsonplaceholder.typicode.com/posts"


def find_free_port() -> int:
    """Find an available port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("", 0))
        return s.getsockname()[1]


async def catch_all(request: web.Request) -> web.Response:
    logfire.info(
        "Hitting catch all route: {method} {path}",
        method=request.method,
        path=request.path,
    )
    return web.Response(text=CATCH_ALL_TEXT)


def create_app(forwarder: ProxyForwarder) -> web.Application:
    """Build the application. Routes match in registration order."""
    app = web.Application()
    app.router.add_route("*", "/", forwarder.handle)
    app.router.add_route("*", "/{path:.*}", catch_all)
    return app


class TapServer:
    """Owns the listening socket for a ProxyForwarder.

    Usage:
        server = TapServer(forwarder, port=3000)
        await server.start()
        print(server.banner())
        ...
        await server.stop()
    """

    def __init__(self, forwarder: ProxyForwarder, host: str = "127.0.0.1", port: int = 3000):
        """Initialize the server.

        Args:
            forwarder: Handles every request on the forwarding route
            host: Interface to bind
            port: Port to bind (0 picks a free one)
        """
        self.forwarder = forwarder
        self.host = host

        self._port = port
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None

    async def start(self) -> int:
        """Start listening.

        Returns:
            The port number the server is listening on.
        """
        if not self._port:
            self._port = find_free_port()

        self._app = create_app(self.forwarder)

        # auto_decompress off: compressed request bodies go upstream as sent
        self._runner = web.AppRunner(
            self._app,
            handler_cancellation=True,
            access_log=None,
            auto_decompress=False,
        )
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self.host, self._port)
        await self._site.start()

        logfire.info("bodytap listening on {base_url}", base_url=self.base_url)
        return self._port

    async def stop(self) -> None:
        """Stop listening and finish in-flight requests."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

        self._site = None
        self._app = None

        logfire.debug("bodytap stopped")

    @property
    def base_url(self) -> str:
        """Get the base URL for this server."""
        if self._runner is None:
            raise RuntimeError("Server not started")
        return f"http://{self.host}:{self._port}"

    @property
    def port(self) -> int | None:
        """Get the port number (None until started with port 0)."""
        return self._port or None

    def banner(self) -> str:
        """Startup text with a request to try."""
        return (
            f"Server running on {self.base_url}\n"
            f"Try sending a cURL request:\n\n"
            f"curl -X POST \\\n"
            f"{self.base_url}/?{TARGET_PARAM}={SAMPLE_TARGET} \\\n"
            f"-d '{{\"title\": \"foo\", \"body\": \"bar\", \"userId\": 1}}'"
        )
