"""
Relay Engine Tests
==================

Broadcaster, consumer registration and watchdog behaviour, driven
synchronously through handle_chunk() and tick().
"""

import asyncio

import pytest

from mjpeg_relay.config import ConfigurationError, Settings
from mjpeg_relay.relay import RelayEngine, RelayState, SinkClosed

from conftest import FakeSink


NO_BOUNDARY = b"\x00middle-of-a-jpeg\x00"


class TestConstruction:
    """Engine construction and derived timing."""

    @pytest.mark.parametrize("url", [None, ""])
    def test_missing_url_is_fatal(self, url):
        with pytest.raises(ConfigurationError):
            RelayEngine(url)

    def test_non_positive_interval_is_fatal(self):
        with pytest.raises(ConfigurationError):
            RelayEngine("http://camera.test/video", tick_interval_ms=0)

    def test_thresholds_follow_interval(self):
        engine = RelayEngine("http://camera.test/video", tick_interval_ms=240)
        assert engine.stall_threshold == pytest.approx(1000 / 240)
        assert engine.cooldown_ticks == 42

    def test_from_settings(self):
        settings = Settings.model_validate({
            "upstream": {"url": "http://camera.test/video", "default_boundary": "frame"},
            "watchdog": {"tick_interval_ms": 100},
        })
        engine = RelayEngine.from_settings(settings, still_frames=[b"x"])
        assert engine.upstream_url == "http://camera.test/video"
        assert engine.boundary == "frame"
        assert engine.stall_threshold == 10
        assert engine.cooldown_ticks == 100
        assert engine.still_frames == [b"x"]


class TestAddConsumer:
    """Consumer registration."""

    def test_writes_multipart_head(self, engine):
        sink = FakeSink()
        engine.add_consumer(sink)

        assert sink.status == 200
        assert sink.headers["Content-Type"] == "multipart/x-mixed-replace;boundary=ipcamera"
        assert sink.headers["Cache-Control"] == "no-cache, no-store, must-revalidate"
        assert sink.headers["Pragma"] == "no-cache"
        assert sink.headers["Expires"] == "Mon, 01 Jul 1980 00:00:00 GMT"

    def test_head_uses_current_boundary(self, engine):
        engine.set_boundary("myboundary")
        sink = FakeSink()
        engine.add_consumer(sink)
        assert sink.headers["Content-Type"].endswith("boundary=myboundary")

    def test_new_consumer_not_live(self, engine):
        consumer = engine.add_consumer(FakeSink(), client="1.2.3.4:5")
        assert consumer.is_live is False
        assert engine.consumers == [consumer]
        assert engine.metrics.consumers_joined == 1

    def test_close_removes_consumer(self, engine):
        sink = FakeSink()
        engine.add_consumer(sink)
        sink.close()
        assert engine.consumers == []
        assert engine.metrics.consumers_left == 1

    def test_close_removes_by_identity(self, engine):
        first, second = FakeSink(), FakeSink()
        engine.add_consumer(first)
        kept = engine.add_consumer(second)
        first.close()
        assert engine.consumers == [kept]

    def test_close_marks_consumer_removed(self, engine):
        sink = FakeSink()
        consumer = engine.add_consumer(sink)
        assert consumer.removed is False

        sink.close()

        assert consumer.removed is True

    def test_stop_marks_every_consumer_removed(self, engine):
        consumers = [engine.add_consumer(FakeSink()) for _ in range(3)]

        asyncio.run(engine.stop())

        assert all(c.removed for c in consumers)
        assert engine.consumers == []


class TestHandleChunk:
    """Boundary-aware fan-out."""

    def test_boundary_resets_stall_counter(self, engine, frame_chunk):
        engine.frames_missed = 3
        engine.handle_chunk(frame_chunk)
        assert engine.frames_missed == 0
        assert engine.metrics.boundaries_seen == 1

    def test_new_consumer_joins_at_boundary(self, engine, frame_chunk):
        sink = FakeSink()
        consumer = engine.add_consumer(sink)

        engine.handle_chunk(frame_chunk)

        p = frame_chunk.index(b"--ipcamera")
        assert sink.writes == [frame_chunk[p:]]
        assert sink.data.startswith(b"--ipcamera\r\n")
        assert consumer.is_live is True

    def test_new_consumer_waits_for_boundary(self, engine):
        sink = FakeSink()
        consumer = engine.add_consumer(sink)

        engine.handle_chunk(NO_BOUNDARY)
        engine.handle_chunk(NO_BOUNDARY)

        assert sink.writes == []
        assert consumer.is_live is False

    def test_live_consumer_gets_chunks_verbatim(self, engine, frame_chunk):
        sink = FakeSink()
        engine.add_consumer(sink)
        engine.handle_chunk(frame_chunk)

        engine.handle_chunk(NO_BOUNDARY)
        engine.handle_chunk(frame_chunk)

        assert sink.writes[1:] == [NO_BOUNDARY, frame_chunk]

    def test_chunks_forwarded_in_order(self, engine, frame_chunk):
        sink = FakeSink()
        engine.add_consumer(sink)
        chunks = [frame_chunk] + [bytes([i]) * 4 for i in range(1, 6)]
        for chunk in chunks:
            engine.handle_chunk(chunk)

        p = frame_chunk.index(b"--ipcamera")
        assert sink.writes == [frame_chunk[p:]] + chunks[1:]

    def test_join_before_and_after_boundary_chunk(self, engine, frame_chunk):
        """Early consumer gets full chunks, late one waits for the next boundary."""
        early = FakeSink()
        engine.add_consumer(early)
        engine.handle_chunk(frame_chunk)

        engine.handle_chunk(frame_chunk)
        late = FakeSink()
        late_consumer = engine.add_consumer(late)
        engine.handle_chunk(NO_BOUNDARY)

        assert early.writes[1:] == [frame_chunk, NO_BOUNDARY]
        assert late.writes == []
        assert late_consumer.is_live is False

        engine.handle_chunk(frame_chunk)
        p = frame_chunk.index(b"--ipcamera")
        assert late.writes == [frame_chunk[p:]]
        assert early.writes[-1] == frame_chunk

    def test_uses_announced_boundary(self, engine):
        engine.set_boundary("other")
        sink = FakeSink()
        engine.add_consumer(sink)

        engine.handle_chunk(b"xx--ipcamera\r\n")
        assert sink.writes == []

        engine.handle_chunk(b"xx--other\r\n")
        assert sink.writes == [b"--other\r\n"]

    def test_off_air_drops_chunks_but_tracks_boundaries(self, engine, frame_chunk):
        sink = FakeSink()
        engine.add_consumer(sink)
        engine.on_air = False
        engine.frames_missed = 2

        engine.handle_chunk(frame_chunk)

        assert sink.writes == []
        assert engine.frames_missed == 0

    def test_closed_consumer_receives_nothing(self, engine, frame_chunk):
        sink = FakeSink()
        engine.add_consumer(sink)
        engine.handle_chunk(frame_chunk)
        sink.close()

        engine.handle_chunk(frame_chunk)

        assert len(sink.writes) == 1

    def test_close_during_fan_out(self, engine, frame_chunk):
        """A consumer closed mid-broadcast is skipped for that same chunk."""
        first, second = FakeSink(), FakeSink()
        engine.add_consumer(first)
        engine.add_consumer(second)
        engine.handle_chunk(frame_chunk)

        # Fan-out runs in reverse order, so second is written before first
        second.on_write = lambda data: first.close()
        engine.handle_chunk(NO_BOUNDARY)

        assert second.writes[-1] == NO_BOUNDARY
        assert NO_BOUNDARY not in first.writes
        assert len(engine.consumers) == 1

    def test_write_failure_is_isolated(self, engine, frame_chunk):
        broken = FakeSink(fail_with=OSError("broken pipe"))
        healthy = FakeSink()
        engine.add_consumer(healthy)
        broken_consumer = engine.add_consumer(broken)

        engine.handle_chunk(frame_chunk)
        engine.handle_chunk(NO_BOUNDARY)

        assert len(healthy.writes) == 2
        assert broken_consumer.is_live is False
        assert engine.metrics.write_errors == 1

    def test_sink_error_is_isolated(self, engine, frame_chunk):
        gone = FakeSink(fail_with=SinkClosed("gone"))
        healthy = FakeSink()
        engine.add_consumer(gone)
        engine.add_consumer(healthy)

        engine.handle_chunk(frame_chunk)

        assert len(healthy.writes) == 1
        assert engine.metrics.write_errors == 1


class TestWatchdog:
    """Stall detection, restart and cooldown."""

    def test_first_tick_opens_upstream(self, engine, fake_fetcher):
        engine.tick()
        assert fake_fetcher.starts == 1
        assert engine.frames_missed == -engine.cooldown_ticks
        assert engine.state is RelayState.STALLED

    def test_no_restart_while_frames_flow(self, engine, fake_fetcher, frame_chunk):
        for _ in range(100):
            engine.handle_chunk(frame_chunk)
            engine.tick()
        assert fake_fetcher.starts == 0
        assert engine.state is RelayState.LIVE

    def test_restart_after_stall_window(self, engine, fake_fetcher, frame_chunk):
        engine.handle_chunk(frame_chunk)

        for _ in range(4):
            engine.tick()
        assert fake_fetcher.starts == 0

        engine.tick()
        assert fake_fetcher.stops == 1
        assert fake_fetcher.starts == 1
        assert engine.metrics.upstream_restarts == 1
        assert engine.frames_missed == -40

    def test_cooldown_prevents_second_restart(self, engine, fake_fetcher, frame_chunk):
        engine.handle_chunk(frame_chunk)
        for _ in range(5):
            engine.tick()
        assert fake_fetcher.starts == 1

        for _ in range(44):
            engine.tick()
        assert fake_fetcher.starts == 1

        engine.tick()
        assert fake_fetcher.starts == 2

    def test_boundary_after_restart_returns_to_live(self, engine, frame_chunk):
        engine.tick()
        assert engine.state is RelayState.STALLED

        engine.handle_chunk(frame_chunk)
        assert engine.state is RelayState.LIVE

    def test_healthy_tick_injects_nothing(self, engine, frame_chunk):
        sink = FakeSink()
        engine.add_consumer(sink)
        engine.handle_chunk(frame_chunk)

        engine.tick()

        assert len(sink.writes) == 1
        assert engine.metrics.stills_injected == 0


class TestStillFrames:
    """Failover still-frame injection."""

    def test_part_format(self, engine):
        part = engine.build_still_part(b"\xff\xd8JPEG\xff\xd9")
        assert part == (
            b"\r\n--ipcamera\r\n"
            b"Content-Type: image/jpeg\r\n"
            b"Content-Length: 8\r\n\r\n"
            b"\xff\xd8JPEG\xff\xd9"
        )

    def test_rotation_wraps(self, make_engine, jpeg_frames):
        engine = make_engine(still_frames=jpeg_frames)
        sink = FakeSink()
        engine.add_consumer(sink)

        for _ in range(5):
            engine.tick()

        a, b, c = jpeg_frames
        assert sink.writes == [engine.build_still_part(f) for f in (a, b, c, a, b)]
        assert engine.metrics.stills_injected == 5

    def test_one_part_per_tick_to_every_consumer(self, make_engine, jpeg_frames):
        engine = make_engine(still_frames=jpeg_frames)
        sinks = [FakeSink() for _ in range(3)]
        for sink in sinks:
            engine.add_consumer(sink)

        engine.tick()
        engine.tick()

        for sink in sinks:
            assert len(sink.writes) == 2

    def test_injection_marks_everyone_live(self, make_engine, jpeg_frames):
        engine = make_engine(still_frames=jpeg_frames)
        sink = FakeSink()
        consumer = engine.add_consumer(sink)

        engine.tick()
        assert consumer.is_live is True

        # Already live, so a chunk without a boundary is passed through
        engine.handle_chunk(NO_BOUNDARY)
        assert sink.writes[-1] == NO_BOUNDARY

    def test_empty_still_set_sends_empty_parts(self, engine):
        sink = FakeSink()
        engine.add_consumer(sink)

        engine.tick()

        assert sink.writes == [
            b"\r\n--ipcamera\r\nContent-Type: image/jpeg\r\nContent-Length: 0\r\n\r\n"
        ]

    def test_off_air_injects_every_tick(self, make_engine, jpeg_frames, frame_chunk):
        engine = make_engine(still_frames=jpeg_frames)
        sink = FakeSink()
        engine.add_consumer(sink)
        engine.handle_chunk(frame_chunk)
        engine.on_air = False

        for _ in range(3):
            engine.handle_chunk(frame_chunk)
            engine.tick()

        assert engine.state is RelayState.STALLED
        assert sink.writes[1:] == [engine.build_still_part(f) for f in jpeg_frames]

    def test_injection_skips_closed_consumers(self, make_engine, jpeg_frames):
        engine = make_engine(still_frames=jpeg_frames)
        gone, kept = FakeSink(), FakeSink()
        engine.add_consumer(gone)
        engine.add_consumer(kept)
        gone.close()

        engine.tick()

        assert gone.writes == []
        assert len(kept.writes) == 1

    def test_injection_survives_write_failure(self, make_engine, jpeg_frames):
        engine = make_engine(still_frames=jpeg_frames)
        engine.add_consumer(FakeSink(fail_with=OSError("reset")))
        healthy = FakeSink()
        engine.add_consumer(healthy)

        engine.tick()

        assert len(healthy.writes) == 1
        assert engine.metrics.write_errors == 1
