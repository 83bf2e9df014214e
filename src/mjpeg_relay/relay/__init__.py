"""
Relay Module
============

Single-upstream MJPEG fan-out with stall failover.

This module provides the relay core:
    - RelayEngine: broadcaster, consumer registry and watchdog
    - UpstreamFetcher: the one outbound connection to the source
    - StreamSink: queue-backed client sink for streaming responses
    - extract_boundary: multipart boundary parsing

Example:
    from mjpeg_relay.relay import RelayEngine, StreamSink

    engine = RelayEngine("http://camera.local/video", still_frames=[jpeg])
    await engine.start()

    sink = StreamSink()
    engine.add_consumer(sink)
    async for chunk in sink.iter_bytes():
        ...
"""

from mjpeg_relay.relay.boundary import MalformedContentType, extract_boundary
from mjpeg_relay.relay.sink import (
    ResponseSink,
    SinkClosed,
    SinkError,
    SinkOverflow,
    StreamSink,
)
from mjpeg_relay.relay.state import RelayMetrics, RelayState
from mjpeg_relay.relay.upstream import UpstreamFetcher
from mjpeg_relay.relay.engine import Consumer, RelayEngine


__all__ = [
    "Consumer",
    "MalformedContentType",
    "RelayEngine",
    "RelayMetrics",
    "RelayState",
    "ResponseSink",
    "SinkClosed",
    "SinkError",
    "SinkOverflow",
    "StreamSink",
    "UpstreamFetcher",
    "extract_boundary",
]
