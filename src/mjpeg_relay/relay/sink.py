"""
Response Sinks
==============

Write-side abstraction over a downstream client connection.

The relay engine only needs three things from a client connection:
    - write the response head once
    - write byte chunks without blocking
    - tell it when the connection closes

StreamSink implements this on top of a bounded asyncio.Queue so that an
HTTP framework can stream the queued chunks out as a response body.

Design Rules:
    - write() never blocks and never awaits
    - a sink that falls too far behind closes itself
    - close callbacks fire exactly once, synchronously, from close()
"""

import asyncio
import logging
from typing import AsyncIterator, Callable, Dict, List, Optional, Protocol


logger = logging.getLogger(__name__)


class SinkError(Exception):
    """Base class for failed writes to a client sink."""


class SinkClosed(SinkError):
    """Write attempted on a sink whose connection already closed."""


class SinkOverflow(SinkError):
    """Client fell too far behind; the sink was closed."""


class ResponseSink(Protocol):
    """
    Protocol for client connections the relay writes to.

    Implementations must be safe to call from the event loop thread
    without awaiting.
    """

    def write_head(self, status: int, headers: Dict[str, str]) -> None:
        ...

    def write(self, data: bytes) -> None:
        ...

    def add_close_callback(self, callback: Callable[[], None]) -> None:
        ...

    def close(self) -> None:
        ...


class StreamSink:
    """
    Queue-backed sink consumed as an async byte iterator.

    Attributes:
        status: Response status set by write_head
        headers: Response headers set by write_head
        max_pending: Chunks that may wait in the queue before overflow

    Example:
        sink = StreamSink(max_pending=256)
        engine.add_consumer(sink)
        return StreamingResponse(
            sink.iter_bytes(),
            status_code=sink.status,
            headers=sink.headers,
        )
    """

    def __init__(self, max_pending: int = 256) -> None:
        if max_pending < 1:
            raise ValueError("max_pending must be >= 1")

        self.max_pending = max_pending
        self.status: int = 200
        self.headers: Dict[str, str] = {}

        # One extra slot so the close sentinel always fits
        self._queue: "asyncio.Queue[Optional[bytes]]" = asyncio.Queue(
            maxsize=max_pending + 1
        )
        self._closed: bool = False
        self._close_callbacks: List[Callable[[], None]] = []

    @property
    def closed(self) -> bool:
        """Whether the connection has closed."""
        return self._closed

    @property
    def pending(self) -> int:
        """Chunks queued but not yet sent."""
        return self._queue.qsize()

    def write_head(self, status: int, headers: Dict[str, str]) -> None:
        self.status = status
        self.headers = dict(headers)

    def write(self, data: bytes) -> None:
        """
        Queue a chunk for the client.

        Raises:
            SinkClosed: If the sink is already closed
            SinkOverflow: If the queue is full (the sink is closed first)
        """
        if self._closed:
            raise SinkClosed("write after close")

        if self._queue.qsize() >= self.max_pending:
            self.close()
            raise SinkOverflow(f"client fell {self.max_pending} chunks behind")

        self._queue.put_nowait(data)

    def add_close_callback(self, callback: Callable[[], None]) -> None:
        if self._closed:
            callback()
            return
        self._close_callbacks.append(callback)

    def close(self) -> None:
        """Mark the connection closed and notify listeners. Idempotent."""
        if self._closed:
            return
        self._closed = True

        # Drop anything not yet sent, then wake the reader
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
        self._queue.put_nowait(None)

        callbacks, self._close_callbacks = self._close_callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.error(f"Close callback failed: {e}")

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        """
        Yield queued chunks until the sink is closed.

        Closing happens in ``finally`` so a client disconnect (which
        cancels this generator) removes the consumer immediately.
        """
        try:
            while True:
                chunk = await self._queue.get()
                if chunk is None:
                    break
                yield chunk
        finally:
            self.close()
