"""Runtime configuration.

Defaults come from the environment; command-line flags override them.

Environment:
    BODYTAP_HOST            - Interface to listen on (default 127.0.0.1)
    BODYTAP_PORT            - Port to listen on (default 3000, 0 = any free port)
    BODYTAP_CONNECT_TIMEOUT - Upstream connect timeout in seconds (default 10)
    BODYTAP_READ_TIMEOUT    - Upstream read/write timeout in seconds (default 300)
    BODYTAP_DEBUG           - 1/true/yes for debug logging on the console
"""

import os
from dataclasses import dataclass, field

import httpx

from .formatters import InspectOptions


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").lower() in ("1", "true", "yes")


DEFAULT_HOST = os.environ.get("BODYTAP_HOST", "127.0.0.1")
DEFAULT_PORT = int(os.environ.get("BODYTAP_PORT", "3000"))
DEFAULT_CONNECT_TIMEOUT = float(os.environ.get("BODYTAP_CONNECT_TIMEOUT", "10"))
DEFAULT_READ_TIMEOUT = float(os.environ.get("BODYTAP_READ_TIMEOUT", "300"))
DEBUG = _env_flag("BODYTAP_DEBUG")


@dataclass
class Settings:
    """Everything the server and forwarder need at startup."""

    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    read_timeout: float = DEFAULT_READ_TIMEOUT
    verify_tls: bool = True
    debug: bool = DEBUG
    inspect: InspectOptions = field(default_factory=InspectOptions)

    @property
    def timeout(self) -> httpx.Timeout:
        # read_timeout also bounds writes and pool waits
        return httpx.Timeout(self.read_timeout, connect=self.connect_timeout)
