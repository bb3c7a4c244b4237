"""Inspection sink - what happens to captured bodies after a transaction.

The forwarder hands every completed exchange to an Inspector. The default,
ConsoleInspector, renders a report with the formatters and passes it to an
injected emit function (print, unless told otherwise).

Inspectors run after the caller already has every byte of the response.
Whatever they raise is logged by the forwarder and otherwise ignored.
"""

from typing import Awaitable, Callable, Protocol

from .formatters import (
    InspectOptions,
    ResponseMetadata,
    format_request_body,
    format_response_body,
)

RULE = "─" * 52
SUCCESS_ICON = "✅️"
FAILURE_ICON = "❌️"

# Upstream header naming the interceptor that handled the call (if any)
INTERCEPTOR_HEADER = "elastic-interceptor"


class Inspector(Protocol):
    """Anything that accepts a completed exchange. May return an awaitable."""

    def __call__(
        self,
        request_body: bytes,
        response_body: bytes,
        metadata: ResponseMetadata,
        options: InspectOptions,
    ) -> Awaitable[None] | None: ...


class ConsoleInspector:
    """Render a human-readable report per exchange and emit it."""

    def __init__(self, emit: Callable[[str], None] = print):
        self.emit = emit

    def __call__(
        self,
        request_body: bytes,
        response_body: bytes,
        metadata: ResponseMetadata,
        options: InspectOptions,
    ) -> None:
        self.emit(self.render(request_body, response_body, metadata, options))

    def render(
        self,
        request_body: bytes,
        response_body: bytes,
        metadata: ResponseMetadata,
        options: InspectOptions,
    ) -> str:
        lines = [RULE, f"🌍  Target URL: {metadata.target_url}", RULE, ""]

        interceptor = metadata.headers.get(INTERCEPTOR_HEADER)
        if interceptor:
            lines.append(f"🚀  Interceptor: {interceptor}")

        icon = SUCCESS_ICON if metadata.is_success else FAILURE_ICON
        lines.append(f"{icon} {metadata.status_code} {metadata.reason}".rstrip())
        lines.append("")

        if options.show_headers:
            lines.append("===== Request Headers =====")
            lines.extend(f"{key}: {value}" for key, value in metadata.request_headers.items())
            lines.append("")
            lines.append("===== Response Headers =====")
            lines.extend(f"{key}: {value}" for key, value in metadata.headers.multi_items())
            lines.append("")

        lines.append("===== Request Body =====")
        lines.append(format_request_body(request_body, options, metadata.request_headers))
        lines.append("")
        lines.append("===== Response Body =====")
        lines.append(format_response_body(response_body, metadata, options))
        return "\n".join(lines)
