"""
Relay Engine
============

Fans a single upstream MJPEG stream out to any number of clients.

The engine combines three cooperating parts:
    - UpstreamFetcher: one outbound connection feeding handle_chunk()
    - Broadcaster: forwards chunks to consumers, joining each new consumer
      at a frame boundary so it never sees a truncated leading frame
    - Watchdog: a fixed-interval tick that restarts a stalled upstream and
      injects still frames while no live frames are flowing

Stall Counter:
    Every tick adds one. Every chunk containing ``--<boundary>`` resets it
    to zero. Above ``stall_threshold`` the upstream is restarted and the
    counter drops to ``-cooldown_ticks``, so the new connection gets the
    cooldown window to deliver its first frame. While the counter is
    negative (or the relay is off-air) each tick injects one still frame.

Concurrency:
    All state is mutated on the event loop thread: upstream chunks, tick
    callbacks and sink close callbacks are never interleaved mid-call.

Example:
    engine = RelayEngine(
        upstream_url="http://camera.local/video",
        still_frames=[offline_jpeg],
    )
    await engine.start()
    consumer = engine.add_consumer(StreamSink(), client="10.0.0.7:5123")
    ...
    await engine.stop()
"""

import asyncio
import contextlib
import logging
import math
from typing import List, Optional, Sequence

import httpx

from mjpeg_relay.config import ConfigurationError, Settings
from mjpeg_relay.relay.boundary import MalformedContentType, boundary_marker
from mjpeg_relay.relay.sink import ResponseSink, SinkError
from mjpeg_relay.relay.state import RelayMetrics, RelayState
from mjpeg_relay.relay.upstream import UpstreamFetcher


logger = logging.getLogger(__name__)


RESPONSE_HEADERS = {
    "Expires": "Mon, 01 Jul 1980 00:00:00 GMT",
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
}


class Consumer:
    """
    One downstream client connection.

    Attributes:
        sink: Where chunks for this client are written
        client: Peer description for logging
        is_live: Whether a boundary-aligned chunk has been delivered
        removed: Set once the connection has closed
    """

    __slots__ = ("sink", "client", "is_live", "removed")

    def __init__(self, sink: ResponseSink, client: str = "unknown") -> None:
        self.sink = sink
        self.client = client
        self.is_live = False
        self.removed = False

    def __repr__(self) -> str:
        return f"Consumer(client={self.client!r}, is_live={self.is_live})"


class RelayEngine:
    """
    Single-upstream MJPEG relay with stall failover.

    Attributes:
        upstream_url: Source MJPEG URL
        boundary: Current multipart boundary token
        still_frames: JPEG images rotated through during failover
        tick_interval_ms: Watchdog tick interval
        stall_threshold: Ticks without a boundary before restarting
        cooldown_ticks: Ticks granted to a restarted upstream
        frames_missed: Stall counter
        metrics: Operational counters
    """

    def __init__(
        self,
        upstream_url: Optional[str],
        still_frames: Sequence[bytes] = (),
        tick_interval_ms: int = 240,
        stall_window_ms: int = 1000,
        cooldown_window_ms: int = 10000,
        boundary: str = "ipcamera",
        connect_timeout: float = 5.0,
        chunk_size: Optional[int] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """
        Initialize the relay engine.

        Args:
            upstream_url: Source MJPEG URL (required)
            still_frames: Ordered JPEG images for failover (may be empty)
            tick_interval_ms: Watchdog tick interval
            stall_window_ms: Time without a boundary before restarting
            cooldown_window_ms: Grace period after a restart
            boundary: Boundary used until the upstream announces one
            connect_timeout: Upstream connect timeout in seconds
            chunk_size: Upstream read size (None = as received)
            client: Shared HTTP client. Created on start() when omitted.

        Raises:
            ConfigurationError: If no upstream URL is given or the
                timing values are not positive
        """
        if not upstream_url:
            raise ConfigurationError("Please provide a source MJPEG URL")
        if tick_interval_ms <= 0 or stall_window_ms <= 0 or cooldown_window_ms <= 0:
            raise ConfigurationError("Watchdog timings must be positive")

        self.upstream_url = upstream_url
        self.still_frames: List[bytes] = list(still_frames)
        self.boundary = boundary
        self.connect_timeout = connect_timeout

        self.tick_interval_ms = tick_interval_ms
        self.stall_threshold: float = stall_window_ms / tick_interval_ms
        self.cooldown_ticks: int = math.ceil(cooldown_window_ms / tick_interval_ms)

        # First tick exceeds the threshold and opens the upstream
        self.frames_missed: float = self.stall_threshold
        self.still_frame_idx: int = -1
        self.metrics = RelayMetrics()

        self._on_air: bool = True
        self._consumers: List[Consumer] = []
        self._client = client
        self._owns_client = False
        self._watchdog_task: Optional[asyncio.Task] = None

        self.fetcher = UpstreamFetcher(
            url=upstream_url,
            client=client,
            on_boundary=self.set_boundary,
            on_chunk=self.handle_chunk,
            on_error=self._on_upstream_error,
            chunk_size=chunk_size,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        still_frames: Sequence[bytes] = (),
        client: Optional[httpx.AsyncClient] = None,
    ) -> "RelayEngine":
        """Build an engine from loaded settings."""
        return cls(
            upstream_url=settings.upstream.url,
            still_frames=still_frames,
            tick_interval_ms=settings.watchdog.tick_interval_ms,
            stall_window_ms=settings.watchdog.stall_window_ms,
            cooldown_window_ms=settings.watchdog.cooldown_window_ms,
            boundary=settings.upstream.default_boundary,
            connect_timeout=settings.upstream.connect_timeout_seconds,
            chunk_size=settings.upstream.chunk_size,
            client=client,
        )

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def consumers(self) -> List[Consumer]:
        """Snapshot of the connected consumers."""
        return list(self._consumers)

    @property
    def on_air(self) -> bool:
        """Whether live upstream chunks are relayed."""
        return self._on_air

    @on_air.setter
    def on_air(self, value: bool) -> None:
        if value != self._on_air:
            logger.info(f"Relay is now {'on' if value else 'off'} air")
        self._on_air = value

    @property
    def state(self) -> RelayState:
        if self._on_air and self.frames_missed >= 0:
            return RelayState.LIVE
        return RelayState.STALLED

    @property
    def running(self) -> bool:
        return self._watchdog_task is not None and not self._watchdog_task.done()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Start the watchdog; its first tick opens the upstream."""
        if self.running:
            return

        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(
                    connect=self.connect_timeout,
                    read=None,
                    write=self.connect_timeout,
                    pool=self.connect_timeout,
                ),
                follow_redirects=True,
            )
            self._owns_client = True
            self.fetcher.client = self._client

        logger.info(
            f"RelayEngine starting: upstream={self.upstream_url}, "
            f"tick={self.tick_interval_ms}ms, stills={len(self.still_frames)}"
        )
        self._watchdog_task = asyncio.create_task(self._watchdog(), name="relay_watchdog")

    async def stop(self) -> None:
        """Stop the watchdog, drop the upstream and close every consumer."""
        logger.info("RelayEngine stopping...")

        if self._watchdog_task is not None:
            self._watchdog_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._watchdog_task
            self._watchdog_task = None

        await self.fetcher.aclose()

        for consumer in reversed(self.consumers):
            consumer.sink.close()
        for consumer in self._consumers:
            consumer.removed = True
        self._consumers.clear()

        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

        logger.info("RelayEngine stopped")

    async def _watchdog(self) -> None:
        interval = self.tick_interval_ms / 1000.0
        while True:
            await asyncio.sleep(interval)
            try:
                self.tick()
            except Exception as e:
                logger.error(f"Watchdog tick failed: {e}")

    # =========================================================================
    # Upstream
    # =========================================================================

    def set_boundary(self, boundary: str) -> None:
        """Adopt the boundary announced by a new upstream response."""
        if boundary != self.boundary:
            logger.info(f"Boundary changed: {self.boundary!r} -> {boundary!r}")
        self.boundary = boundary

    def restart_upstream(self) -> None:
        """Tear down the current upstream connection and open a new one."""
        self.fetcher.stop()
        self.fetcher.start()
        self.metrics.upstream_restarts += 1

    def _on_upstream_error(self, error: Exception) -> None:
        if isinstance(error, MalformedContentType):
            self.metrics.boundary_parse_errors += 1
        else:
            self.metrics.upstream_errors += 1

    # =========================================================================
    # Broadcaster
    # =========================================================================

    def handle_chunk(self, chunk: bytes) -> None:
        """
        Forward one upstream chunk to the consumers.

        Consumers that are not live yet only receive data from the first
        boundary marker on; chunks without a marker are withheld from them.
        """
        self.metrics.chunks_received += 1
        self.metrics.bytes_received += len(chunk)

        p = chunk.find(boundary_marker(self.boundary))
        if p >= 0:
            self.frames_missed = 0
            self.metrics.boundaries_seen += 1

        if not self._on_air:
            return

        for consumer in reversed(self.consumers):
            if consumer.is_live:
                self._write(consumer, chunk)
            elif p >= 0:
                if self._write(consumer, chunk[p:]):
                    consumer.is_live = True
                    logger.debug(f"Consumer {consumer.client} joined at boundary")

    def _write(self, consumer: Consumer, data: bytes) -> bool:
        # Removed consumers are skipped even within the current fan-out
        if consumer.removed:
            return False
        try:
            consumer.sink.write(data)
            return True
        except SinkError as e:
            self.metrics.write_errors += 1
            logger.debug(f"Write to consumer {consumer.client} failed: {e}")
        except Exception as e:
            self.metrics.write_errors += 1
            logger.warning(f"Unexpected write error for consumer {consumer.client}: {e}")
        return False

    # =========================================================================
    # Consumers
    # =========================================================================

    def add_consumer(self, sink: ResponseSink, client: str = "unknown") -> Consumer:
        """
        Register a new client connection.

        Writes the multipart response head and subscribes to the sink's
        close event, which is the only way a consumer is removed.
        """
        headers = dict(RESPONSE_HEADERS)
        headers["Content-Type"] = f"multipart/x-mixed-replace;boundary={self.boundary}"
        sink.write_head(200, headers)

        consumer = Consumer(sink, client)
        self._consumers.append(consumer)
        self.metrics.consumers_joined += 1
        logger.info(f"Consumer connected: {client} ({len(self._consumers)} total)")

        sink.add_close_callback(lambda: self._remove_consumer(consumer))
        return consumer

    def _remove_consumer(self, consumer: Consumer) -> None:
        consumer.removed = True
        for i, c in enumerate(self._consumers):
            if c is consumer:
                del self._consumers[i]
                self.metrics.consumers_left += 1
                logger.info(
                    f"Consumer disconnected: {consumer.client} "
                    f"({len(self._consumers)} total)"
                )
                return

    # =========================================================================
    # Watchdog / failover
    # =========================================================================

    def tick(self) -> None:
        """One watchdog step: detect stalls, restart, inject still frames."""
        self.frames_missed += 1

        if self.frames_missed > self.stall_threshold:
            self.frames_missed = -self.cooldown_ticks
            logger.warning("No frames received - restarting upstream request")
            self.restart_upstream()

        if self._on_air and self.frames_missed >= 0:
            return

        self.inject_still_frame()

    def next_still_frame(self) -> bytes:
        """Advance the rotation and return the still frame to send."""
        self.still_frame_idx += 1
        if self.still_frame_idx >= len(self.still_frames):
            self.still_frame_idx = 0

        if not self.still_frames:
            return b""
        return self.still_frames[self.still_frame_idx]

    def build_still_part(self, frame: bytes) -> bytes:
        """Wrap a JPEG in a multipart part using the current boundary."""
        header = (
            f"\r\n--{self.boundary}\r\n"
            f"Content-Type: image/jpeg\r\n"
            f"Content-Length: {len(frame)}\r\n\r\n"
        )
        return header.encode("latin-1") + frame

    def inject_still_frame(self) -> None:
        """Broadcast the next still frame to every consumer and mark all live."""
        part = self.build_still_part(self.next_still_frame())
        self.metrics.stills_injected += 1

        for consumer in reversed(self.consumers):
            self._write(consumer, part)
            consumer.is_live = True
