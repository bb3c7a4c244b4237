"""bodytap - forwarding proxy that captures what it relays.

Architecture:
- TargetResolver (target.py) validates the caller's target_url
- StreamTee (tee.py) forwards a byte stream while keeping a copy
- ProxyForwarder (forwarder.py) runs one request/response exchange
- Inspectors (inspection.py, formatters.py) render the captured bodies
"""

__version__ = "0.1.0"

from .formatters import InspectOptions, ResponseMetadata, format_request_body, format_response_body
from .forwarder import ProxyForwarder, ProxyTransaction, TransactionStatus
from .inspection import ConsoleInspector, Inspector
from .observability import configure as configure_observability
from .server import TapServer, create_app
from .target import InvalidTarget, TargetDescriptor, resolve
from .tee import ByteAccumulator, StreamAborted, StreamTee

__all__ = [
    # Forwarding
    "ProxyForwarder",
    "ProxyTransaction",
    "TransactionStatus",
    "TapServer",
    "create_app",
    # Targets
    "InvalidTarget",
    "TargetDescriptor",
    "resolve",
    # Tee
    "ByteAccumulator",
    "StreamAborted",
    "StreamTee",
    # Inspection
    "ConsoleInspector",
    "Inspector",
    "InspectOptions",
    "ResponseMetadata",
    "format_request_body",
    "format_response_body",
    # Observability
    "configure_observability",
]
