"""StreamTee - forward a byte stream and keep a copy of it.

A tee sits between a source (an async iterable of byte chunks) and a sink.
Every chunk goes to the sink unchanged and in order, and lands in a
ByteAccumulator once the sink has taken it. When the source ends the
accumulator is finalized and the tee signals completion.

Two kinds of sink are supported:
- pull sinks iterate the tee directly (httpx pulls a request body this way)
- push sinks are driven with pump(write) (aiohttp's StreamResponse.write)

Either way the tee only reads the next source chunk after the sink came back
for more, so a slow consumer slows the producer instead of growing a buffer.
"""

import asyncio
from contextlib import aclosing
from typing import AsyncIterable, AsyncIterator, Awaitable, Callable

import logfire

# Push-style sink: awaits until the chunk has been accepted
Write = Callable[[bytes], Awaitable[None]]


class StreamAborted(ConnectionError):
    """The consumer stopped reading before the source ended."""


class ByteAccumulator:
    """Append-only byte buffer, finalized or failed exactly once."""

    def __init__(self) -> None:
        self._buffer = bytearray()
        self._data: bytes | None = None
        self._error: BaseException | None = None

    @property
    def finalized(self) -> bool:
        return self._data is not None

    @property
    def failed(self) -> bool:
        return self._error is not None

    @property
    def error(self) -> BaseException | None:
        return self._error

    def __len__(self) -> int:
        if self._data is not None:
            return len(self._data)
        return len(self._buffer)

    def append(self, chunk: bytes) -> None:
        if self._data is not None or self._error is not None:
            raise RuntimeError("Accumulator is closed")
        self._buffer += chunk

    def finalize(self) -> bytes:
        if self._error is not None:
            raise RuntimeError("Accumulator already failed")
        if self._data is None:
            self._data = bytes(self._buffer)
            self._buffer = bytearray()
        return self._data

    def fail(self, error: BaseException) -> None:
        """Mark the stream failed. Partial bytes are dropped."""
        if self._data is not None or self._error is not None:
            return
        self._error = error
        self._buffer = bytearray()

    def getvalue(self) -> bytes:
        """Return the finalized bytes, or raise the error that failed the stream."""
        if self._error is not None:
            raise self._error
        if self._data is None:
            raise RuntimeError("Accumulator is not finalized yet")
        return self._data


class StreamTee:
    """Duplicating pipe for one byte stream.

    Usage (pull sink):
        tee = StreamTee(request.content.iter_any(), name="request")
        await client.post(url, content=tee)
        body = await tee.wait()

    Usage (push sink):
        tee = StreamTee(response.aiter_raw(), name="response")
        body = await tee.pump(resp.write)

    A tee can be consumed once.
    """

    def __init__(self, source: AsyncIterable[bytes], name: str = "body"):
        self.name = name
        self.accumulator = ByteAccumulator()
        self._source = source
        self._started = False
        self._done = asyncio.Event()

    @property
    def done(self) -> bool:
        """True once the accumulator is finalized or failed."""
        return self._done.is_set()

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._relay()

    async def _relay(self) -> AsyncIterator[bytes]:
        if self._started:
            raise RuntimeError(f"StreamTee {self.name!r} was already consumed")
        self._started = True

        try:
            async for chunk in self._source:
                if not chunk:
                    continue
                yield chunk
                # The consumer asked for more, so the chunk was delivered
                self.accumulator.append(chunk)
        except GeneratorExit:
            self._fail(StreamAborted(f"{self.name} consumer stopped before end of stream"))
            raise
        except BaseException as e:
            self._fail(e)
            raise

        self.accumulator.finalize()
        self._done.set()
        logfire.debug(
            "Tee {name} finished ({size} bytes)",
            name=self.name,
            size=len(self.accumulator),
        )

    def _fail(self, error: BaseException) -> None:
        if self.done:
            return
        self.accumulator.fail(error)
        self._done.set()
        logfire.debug("Tee {name} failed: {error}", name=self.name, error=repr(error))

    async def pump(self, write: Write) -> bytes:
        """Drive a push sink until the source ends.

        Args:
            write: Coroutine function accepting one chunk; the next chunk is
                not read until it returns

        Returns:
            The finalized bytes

        Raises:
            Whatever the source or the sink raised. The accumulator is failed
            in both cases.
        """
        async with aclosing(self._relay()) as chunks:
            async for chunk in chunks:
                try:
                    await write(chunk)
                except BaseException as e:
                    # Record the sink's error before closing the relay marks it aborted
                    self._fail(e)
                    raise
        return self.accumulator.getvalue()

    async def drain(self) -> bytes:
        """Consume the source with no sink attached."""
        return await self.pump(_discard)

    async def wait(self) -> bytes:
        """Wait for completion and return the finalized bytes."""
        await self._done.wait()
        return self.accumulator.getvalue()


async def _discard(chunk: bytes) -> None:
    return None
