"""
Relay State
===========

Discrete relay state and operational counters.

States:
    LIVE:    upstream frames are flowing and relayed to consumers
    STALLED: no boundary seen within the stall window (or the relay is
             off-air); still frames are injected every tick

Transitions:
    LIVE -> STALLED:  stall counter exceeds threshold (upstream restarted)
    STALLED -> LIVE:  a boundary is observed in an upstream chunk
"""

from enum import Enum


class RelayState(str, Enum):
    """
    Discrete states of the relay engine.

    Attributes:
        LIVE: Relaying real upstream frames
        STALLED: Injecting still frames while the upstream recovers
    """

    LIVE = "LIVE"
    STALLED = "STALLED"


class RelayMetrics:
    """Metrics for RelayEngine observability."""

    __slots__ = (
        "chunks_received",
        "bytes_received",
        "boundaries_seen",
        "upstream_restarts",
        "upstream_errors",
        "boundary_parse_errors",
        "stills_injected",
        "consumers_joined",
        "consumers_left",
        "write_errors",
    )

    def __init__(self) -> None:
        self.chunks_received: int = 0
        self.bytes_received: int = 0
        self.boundaries_seen: int = 0
        self.upstream_restarts: int = 0
        self.upstream_errors: int = 0
        self.boundary_parse_errors: int = 0
        self.stills_injected: int = 0
        self.consumers_joined: int = 0
        self.consumers_left: int = 0
        self.write_errors: int = 0

    def to_dict(self) -> dict:
        """Export metrics as dict."""
        return {name: getattr(self, name) for name in self.__slots__}
