"""Human-readable rendering of captured request/response bodies.

These never touch the proxied bytes. They get a copy after the exchange
finished and turn it into text:
- JSON is pretty-printed (unless options.pretty is off)
- gzip/deflate bodies (either direction) are decompressed first
- server-sent-event streams of chat-completion chunks are collapsed into
  the assembled assistant text
- anything that isn't UTF-8 is summarized as "<binary, N bytes>"
"""

import gzip
import json
import zlib
from dataclasses import dataclass, field
from typing import Mapping

import httpx


@dataclass(frozen=True)
class InspectOptions:
    """Knobs for the inspection report (set from the command line)."""

    pretty: bool = True
    max_body_chars: int | None = None
    show_headers: bool = False
    stream_summary: bool = True


@dataclass(frozen=True)
class ResponseMetadata:
    """What the inspector knows about a completed exchange besides the bodies."""

    status_code: int
    reason: str
    headers: httpx.Headers
    target_url: str
    method: str
    request_headers: Mapping[str, str] = field(default_factory=dict)

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300


def format_request_body(
    raw: bytes,
    options: InspectOptions,
    headers: Mapping[str, str] | None = None,
) -> str:
    """Render a captured request body.

    headers are the request headers as sent upstream (lower-case keys); a
    content-encoding among them is undone before rendering.
    """
    encoding = (headers or {}).get("content-encoding", "")
    decoded = _undo_encoding(raw, encoding)
    if isinstance(decoded, str):
        return decoded
    return _render(decoded, options)


def format_response_body(raw: bytes, metadata: ResponseMetadata, options: InspectOptions) -> str:
    """Render a captured response body.

    Args:
        raw: The bytes exactly as relayed to the caller (possibly compressed)
        metadata: Status and headers of the upstream response
        options: Report options

    Returns:
        Text for the "Response Body" section of the report
    """
    decoded = _undo_encoding(raw, metadata.headers.get("content-encoding", ""))
    if isinstance(decoded, str):
        return decoded
    raw = decoded

    content_type = metadata.headers.get("content-type", "").lower()
    if options.stream_summary and content_type.startswith("text/event-stream"):
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError:
            return f"<binary, {len(raw)} bytes>"
        return _summarize_events(text, options)

    return _render(raw, options)


def _undo_encoding(raw: bytes, encoding: str) -> bytes | str:
    """Decompressed bytes, or a summary line when they can't be had."""
    encoding = encoding.strip().lower()
    if not encoding or encoding == "identity":
        return raw
    try:
        return _decompress(raw, encoding)
    except (OSError, EOFError, zlib.error):
        return f"<{len(raw)} bytes, undecodable {encoding} body>"
    except LookupError:
        return f"<{len(raw)} bytes, {encoding}-encoded>"


def _decompress(raw: bytes, encoding: str) -> bytes:
    if not raw:
        return raw
    if encoding in ("gzip", "x-gzip"):
        return gzip.decompress(raw)
    if encoding == "deflate":
        try:
            return zlib.decompress(raw)
        except zlib.error:
            # Some servers send raw deflate without the zlib header
            return zlib.decompress(raw, -zlib.MAX_WBITS)
    raise LookupError(encoding)


def _render(raw: bytes, options: InspectOptions) -> str:
    if not raw:
        return "<empty>"
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError:
        return f"<binary, {len(raw)} bytes>"
    return _truncate(_pretty(text, options), options)


def _pretty(text: str, options: InspectOptions) -> str:
    if not options.pretty:
        return text
    try:
        parsed = json.loads(text)
    except ValueError:
        return text
    return json.dumps(parsed, indent=2, ensure_ascii=False)


def _truncate(text: str, options: InspectOptions) -> str:
    limit = options.max_body_chars
    if limit is None or len(text) <= limit:
        return text
    return f"{text[:limit]}\n... [{len(text) - limit} more characters]"


def _summarize_events(text: str, options: InspectOptions) -> str:
    """Collapse an SSE body.

    OpenAI-style chat completion streams carry the answer in
    choices[].delta.content; when any of that is present the pieces are
    joined. Otherwise every event's data is listed in order.
    """
    events: list[str] = []
    for block in text.replace("\r\n", "\n").split("\n\n"):
        data_lines = [
            line[5:].removeprefix(" ")
            for line in block.split("\n")
            if line.startswith("data:")
        ]
        if data_lines:
            events.append("\n".join(data_lines))

    if not events:
        return _truncate(text, options) if text else "<empty>"

    pieces: list[str] = []
    for data in events:
        if data == "[DONE]":
            continue
        try:
            payload = json.loads(data)
        except ValueError:
            continue
        if not isinstance(payload, dict):
            continue
        for choice in payload.get("choices") or []:
            if not isinstance(choice, dict):
                continue
            delta = choice.get("delta") or {}
            content = delta.get("content") if isinstance(delta, dict) else None
            if isinstance(content, str):
                pieces.append(content)

    if pieces:
        header = f"<{len(events)} stream events, assembled content>"
        return f"{header}\n{_truncate(''.join(pieces), options)}"

    rendered = "\n".join(_pretty(data, options) for data in events)
    return _truncate(rendered, options)
