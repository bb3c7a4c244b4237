"""Target URL resolution.

The caller picks the upstream with the ``target_url`` query parameter.
Before any outbound I/O happens the raw string is validated here and turned
into a TargetDescriptor. Only absolute http/https URLs with a host pass.
"""

from dataclasses import dataclass

import httpx

ALLOWED_SCHEMES = ("http", "https")


class InvalidTarget(ValueError):
    """The target_url parameter is missing or not an absolute http(s) URL."""

    def __init__(self, raw: str | None, reason: str):
        super().__init__(f"{reason}: {raw!r}")
        self.raw = raw
        self.reason = reason


@dataclass(frozen=True)
class TargetDescriptor:
    """Where one inbound request is going."""

    scheme: str
    host: str  # authority for the Host header: hostname[:port]
    path: str  # raw path including any query string
    raw: str
    url: str  # normalized form sent upstream
    hostname: str
    port: int | None = None

    @property
    def is_tls(self) -> bool:
        return self.scheme == "https"

    def __str__(self) -> str:
        return self.url


def resolve(raw: str | None) -> TargetDescriptor:
    """Validate a raw target URL string.

    Args:
        raw: Value of the target_url query parameter (may be None)

    Returns:
        The parsed TargetDescriptor

    Raises:
        InvalidTarget: If the string is absent, relative, uses another scheme,
            has no host, or does not parse at all
    """
    if raw is None:
        raise InvalidTarget(raw, "missing target_url")

    raw = raw.strip()
    if not raw:
        raise InvalidTarget(raw, "empty target_url")

    try:
        url = httpx.URL(raw)
    except (httpx.InvalidURL, TypeError, ValueError) as e:
        raise InvalidTarget(raw, f"unparseable URL ({e})") from e

    if not url.scheme:
        raise InvalidTarget(raw, "not an absolute URL")
    if url.scheme not in ALLOWED_SCHEMES:
        raise InvalidTarget(raw, f"unsupported scheme {url.scheme!r}")
    if not url.host:
        raise InvalidTarget(raw, "missing host")

    return TargetDescriptor(
        scheme=url.scheme,
        host=url.netloc.decode("ascii"),
        path=url.raw_path.decode("ascii") or "/",
        raw=raw,
        url=str(url),
        hostname=url.host,
        port=url.port,
    )
