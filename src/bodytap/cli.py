"""Command line entry point.

    bodytap [--port 3000] [--raw] [--max-body 2000] [--show-headers] ...

Starts the proxy and prints one report per completed exchange to stdout
until interrupted.
"""

import argparse
import asyncio

from . import __version__
from .config import Settings
from .formatters import InspectOptions
from .forwarder import ProxyForwarder
from .inspection import ConsoleInspector
from .observability import configure
from .server import TapServer


def _positive_int(value: str) -> int:
    number = int(value)
    if number <= 0:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {value}")
    return number


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    defaults = Settings()
    parser = argparse.ArgumentParser(
        prog="bodytap",
        description="Forwarding proxy that prints the request and response bodies it relays.",
    )
    parser.add_argument("--host", default=defaults.host, help=f"Interface to listen on (default: {defaults.host})")
    parser.add_argument("--port", type=int, default=defaults.port, help=f"Port to listen on (default: {defaults.port})")
    parser.add_argument("--raw", action="store_true", help="Print bodies as received, no JSON pretty-printing")
    parser.add_argument(
        "--max-body",
        type=_positive_int,
        default=None,
        metavar="CHARS",
        help="Truncate printed bodies after this many characters",
    )
    parser.add_argument("--show-headers", action="store_true", help="Also print request and response headers")
    parser.add_argument(
        "--no-stream-summary",
        action="store_true",
        help="List every server-sent event instead of assembling streamed content",
    )
    parser.add_argument("--insecure", action="store_true", help="Don't verify upstream TLS certificates")
    parser.add_argument(
        "--connect-timeout",
        type=float,
        default=defaults.connect_timeout,
        metavar="SECONDS",
        help=f"Upstream connect timeout (default: {defaults.connect_timeout:g})",
    )
    parser.add_argument(
        "--read-timeout",
        type=float,
        default=defaults.read_timeout,
        metavar="SECONDS",
        help=f"Upstream read/write timeout (default: {defaults.read_timeout:g})",
    )
    parser.add_argument("--debug", action="store_true", default=defaults.debug, help="Debug logging on the console")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def settings_from_args(args: argparse.Namespace) -> Settings:
    return Settings(
        host=args.host,
        port=args.port,
        connect_timeout=args.connect_timeout,
        read_timeout=args.read_timeout,
        verify_tls=not args.insecure,
        debug=args.debug,
        inspect=InspectOptions(
            pretty=not args.raw,
            max_body_chars=args.max_body,
            show_headers=args.show_headers,
            stream_summary=not args.no_stream_summary,
        ),
    )


async def serve(settings: Settings, stop: asyncio.Event | None = None) -> None:
    """Run the proxy until `stop` is set (or forever)."""
    forwarder = ProxyForwarder(
        ConsoleInspector(),
        settings.inspect,
        timeout=settings.timeout,
        verify=settings.verify_tls,
    )
    server = TapServer(forwarder, settings.host, settings.port)
    await server.start()
    print(server.banner())

    try:
        await (stop or asyncio.Event()).wait()
    finally:
        await server.stop()


def main(argv: list[str] | None = None) -> None:
    settings = settings_from_args(parse_args(argv))
    configure(debug=settings.debug)
    try:
        asyncio.run(serve(settings))
    except KeyboardInterrupt:
        print("\nShutting down proxy")
