"""
mjpeg-relay
===========

Relays one upstream MJPEG (multipart/x-mixed-replace) stream to any number
of HTTP clients without fetching the source once per client.

When the source stalls, the relay restarts the upstream request in the
background and keeps clients fed with a rotating set of still images until
live frames return.

Components:
    - relay: boundary parsing, upstream fetcher, broadcaster, watchdog
    - stills: loading failover images from disk
    - config: YAML/environment settings and logging setup
    - main: FastAPI application and command-line entry point

Example:
    mjpeg-relay --url http://camera.local/video --still offline.jpg
"""

__version__ = "0.1.0"

__all__ = [
    "__version__",
]
