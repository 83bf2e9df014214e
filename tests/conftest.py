"""
Test Configuration
==================

Pytest fixtures and test doubles for the relay.
"""

from typing import Callable, Dict, List, Optional

import pytest

from mjpeg_relay.relay import RelayEngine, SinkClosed


class FakeSink:
    """Records everything the engine writes to it."""

    def __init__(self, fail_with: Optional[Exception] = None) -> None:
        self.status: Optional[int] = None
        self.headers: Dict[str, str] = {}
        self.writes: List[bytes] = []
        self.closed = False
        self.fail_with = fail_with
        self.on_write: Optional[Callable[[bytes], None]] = None
        self._close_callbacks: List[Callable[[], None]] = []

    @property
    def data(self) -> bytes:
        return b"".join(self.writes)

    def write_head(self, status: int, headers: Dict[str, str]) -> None:
        self.status = status
        self.headers = dict(headers)

    def write(self, data: bytes) -> None:
        if self.closed:
            raise SinkClosed("write after close")
        if self.fail_with is not None:
            raise self.fail_with
        self.writes.append(data)
        if self.on_write is not None:
            self.on_write(data)

    def add_close_callback(self, callback: Callable[[], None]) -> None:
        self._close_callbacks.append(callback)

    def close(self) -> None:
        """Simulate the client socket closing."""
        if self.closed:
            return
        self.closed = True
        for callback in self._close_callbacks:
            callback()


class FakeFetcher:
    """Stands in for UpstreamFetcher; counts start/stop calls."""

    def __init__(self) -> None:
        self.starts = 0
        self.stops = 0
        self.streaming = False

    @property
    def connected(self) -> bool:
        return self.starts > self.stops

    def start(self) -> None:
        self.starts += 1

    def stop(self) -> None:
        self.stops += 1

    async def aclose(self) -> None:
        self.stop()


@pytest.fixture
def fake_fetcher():
    return FakeFetcher()


@pytest.fixture
def make_engine(fake_fetcher):
    """Build an engine with round timing numbers and a fake fetcher."""

    def _make(**kwargs) -> RelayEngine:
        params = dict(
            upstream_url="http://camera.test/video",
            tick_interval_ms=250,
            stall_window_ms=1000,
            cooldown_window_ms=10000,
        )
        params.update(kwargs)
        engine = RelayEngine(**params)
        engine.fetcher = fake_fetcher
        return engine

    return _make


@pytest.fixture
def engine(make_engine):
    return make_engine()


@pytest.fixture
def jpeg_frames():
    """Three distinguishable fake JPEG payloads."""
    return [
        b"\xff\xd8AAAA\xff\xd9",
        b"\xff\xd8BBBBBB\xff\xd9",
        b"\xff\xd8CC\xff\xd9",
    ]


@pytest.fixture
def frame_chunk():
    """Upstream chunk holding the tail of one frame and the start of the next."""
    return (
        b"tail-of-previous-frame"
        b"\r\n--ipcamera\r\n"
        b"Content-Type: image/jpeg\r\n"
        b"Content-Length: 6\r\n\r\n"
        b"\xff\xd8JP"
    )
