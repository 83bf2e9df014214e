"""
MJPEG Relay Main Application
============================

FastAPI entry point for the relay.

Endpoints:
    GET  <stream_path> - Relayed multipart MJPEG stream (default "/")
    GET  /info         - Service information
    GET  /health       - Liveness probe (is process alive?)
    GET  /ready        - Readiness probe (upstream streaming + LIVE?)
    GET  /metrics      - Relay counters
    POST /on-air       - Resume relaying live frames
    POST /off-air      - Suppress live frames, send still frames only
"""

import argparse
import logging
import sys
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional, Union

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask

from mjpeg_relay.config import (
    ConfigurationError,
    Settings,
    load_config,
    settings,
    setup_logging,
)
from mjpeg_relay.relay import RelayEngine, RelayState, StreamSink
from mjpeg_relay.stills import load_still_frames


logger = logging.getLogger(__name__)


# =============================================================================
# Global State
# =============================================================================

# Settings in effect; the CLI may replace them before the server starts
_settings: Settings = settings

_engine: Optional[RelayEngine] = None
_startup_time: float = 0.0


def get_engine() -> Optional[RelayEngine]:
    return _engine


# =============================================================================
# Lifespan Management
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan manager with graceful shutdown."""
    global _engine, _startup_time

    _startup_time = time.time()
    logger.info(f"Starting {_settings.relay.name} {_settings.relay.version}")

    app.version = _settings.relay.version
    mount_stream_route(app, _settings.server.stream_path)

    still_frames = load_still_frames(_settings.stills.paths)
    _engine = RelayEngine.from_settings(_settings, still_frames=still_frames)
    await _engine.start()

    yield

    logger.info("Shutting down gracefully...")
    await _engine.stop()
    _engine = None
    logger.info("Shutdown complete")


# =============================================================================
# FastAPI Application
# =============================================================================

app = FastAPI(
    title="MJPEG Relay",
    description="Re-broadcasts one upstream MJPEG stream to many clients",
    version=settings.relay.version,
    lifespan=lifespan,
)


def _not_ready() -> JSONResponse:
    return JSONResponse({"error": "Relay not started"}, status_code=503)


# =============================================================================
# HTTP Endpoints
# =============================================================================

async def stream(request: Request) -> Union[StreamingResponse, JSONResponse]:
    """Attach the caller as a consumer of the relayed stream."""
    engine = get_engine()
    if engine is None:
        return _not_ready()

    peer = f"{request.client.host}:{request.client.port}" if request.client else "unknown"
    sink = StreamSink(max_pending=_settings.consumers.max_pending_chunks)
    engine.add_consumer(sink, client=peer)

    return StreamingResponse(
        sink.iter_bytes(),
        status_code=sink.status,
        headers=sink.headers,
        background=BackgroundTask(sink.close),
    )


def mount_stream_route(application: FastAPI, path: str) -> None:
    """Register the stream endpoint at ``path``, replacing any earlier mount."""
    application.router.routes[:] = [
        route for route in application.router.routes
        if getattr(route, "endpoint", None) is not stream
    ]
    application.add_api_route(path, stream, methods=["GET"], response_model=None)
    application.openapi_schema = None


mount_stream_route(app, settings.server.stream_path)


@app.get("/info")
async def info() -> JSONResponse:
    """Service information endpoint."""
    engine = get_engine()
    return JSONResponse({
        "service": _settings.relay.name,
        "version": _settings.relay.version,
        "upstream": _settings.upstream.url,
        "stream_path": _settings.server.stream_path,
        "state": engine.state.value if engine else None,
    })


@app.get("/health")
async def health() -> JSONResponse:
    """
    Liveness probe - is the process alive?

    Always returns 200 if the service is running.
    """
    return JSONResponse({
        "status": "healthy",
        "uptime_seconds": round(time.time() - _startup_time, 1),
    })


@app.get("/ready")
async def ready() -> JSONResponse:
    """
    Readiness probe - is live video flowing?

    Returns 200 if the upstream is streaming and the relay is LIVE,
    503 otherwise (clients still get still frames in that case).
    """
    engine = get_engine()
    if engine is None:
        return _not_ready()

    upstream_streaming = engine.fetcher.streaming
    body = {
        "upstream_streaming": upstream_streaming,
        "state": engine.state.value,
        "consumers": len(engine.consumers),
    }

    if upstream_streaming and engine.state is RelayState.LIVE:
        return JSONResponse({"status": "ready", **body})
    return JSONResponse({"status": "not_ready", **body}, status_code=503)


@app.get("/metrics")
async def metrics() -> JSONResponse:
    """Detailed metrics for observability."""
    engine = get_engine()
    if engine is None:
        return _not_ready()

    return JSONResponse({
        "uptime_seconds": round(time.time() - _startup_time, 1),
        "state": engine.state.value,
        "on_air": engine.on_air,
        "boundary": engine.boundary,
        "frames_missed": engine.frames_missed,
        "consumers": len(engine.consumers),
        "live_consumers": sum(1 for c in engine.consumers if c.is_live),
        **engine.metrics.to_dict(),
    })


@app.post("/on-air")
async def go_on_air() -> JSONResponse:
    engine = get_engine()
    if engine is None:
        return _not_ready()
    engine.on_air = True
    return JSONResponse({"on_air": True, "state": engine.state.value})


@app.post("/off-air")
async def go_off_air() -> JSONResponse:
    engine = get_engine()
    if engine is None:
        return _not_ready()
    engine.on_air = False
    return JSONResponse({"on_air": False, "state": engine.state.value})


# =============================================================================
# Main Entry Point
# =============================================================================

def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Relay one MJPEG stream to many HTTP clients"
    )
    parser.add_argument("--config", help="Path to config.yaml")
    parser.add_argument("--url", help="Source MJPEG URL")
    parser.add_argument(
        "--still",
        action="append",
        default=None,
        help="Still JPEG shown while the source is down (repeatable)",
    )
    parser.add_argument("--host", help="Bind host")
    parser.add_argument("--port", type=int, help="Bind port")
    parser.add_argument("--tick-interval-ms", type=int, help="Watchdog tick interval")
    return parser.parse_args(argv)


def apply_args(base: Settings, args: argparse.Namespace) -> Settings:
    """Overlay command-line options on loaded settings."""
    data = base.model_dump()
    if args.url:
        data["upstream"]["url"] = args.url
    if args.still:
        data["stills"]["paths"] = list(args.still)
    if args.host:
        data["server"]["host"] = args.host
    if args.port:
        data["server"]["port"] = args.port
    if args.tick_interval_ms:
        data["watchdog"]["tick_interval_ms"] = args.tick_interval_ms
    return Settings.model_validate(data)


def build_settings(argv: Optional[List[str]] = None) -> Settings:
    """
    Resolve settings from the config file, environment and command line.

    Raises:
        ConfigurationError: If no source URL is configured
    """
    args = parse_args(argv)
    base = load_config(args.config) if args.config else settings
    resolved = apply_args(base, args)

    if not resolved.upstream.url:
        raise ConfigurationError(
            "Please provide a source MJPEG URL (--url or MJPEG_RELAY_UPSTREAM_URL)"
        )
    return resolved


def run(argv: Optional[List[str]] = None) -> None:
    """Command-line entry point."""
    import uvicorn

    global _settings

    try:
        _settings = build_settings(argv)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(2)

    setup_logging(_settings)
    mount_stream_route(app, _settings.server.stream_path)

    uvicorn.run(
        app,
        host=_settings.server.host,
        port=_settings.server.port,
        reload=False,
    )


if __name__ == "__main__":
    run()
