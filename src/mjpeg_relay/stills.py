"""
Still Image Loading
===================

Reads the failover still images from disk into memory once at startup.
"""

import logging
from pathlib import Path
from typing import Iterable, List

from mjpeg_relay.config import ConfigurationError


logger = logging.getLogger(__name__)


JPEG_SOI = b"\xff\xd8"


def load_still_frames(paths: Iterable[str]) -> List[bytes]:
    """
    Load still images in the given order.

    Args:
        paths: JPEG file paths

    Returns:
        Raw file contents, one entry per path

    Raises:
        ConfigurationError: If a file is missing or unreadable
    """
    frames: List[bytes] = []
    for raw_path in paths:
        path = Path(raw_path)
        try:
            data = path.read_bytes()
        except OSError as e:
            raise ConfigurationError(f"Cannot read still image {path}: {e}") from e

        if not data.startswith(JPEG_SOI):
            logger.warning(f"Still image {path} does not look like a JPEG")

        frames.append(data)
        logger.info(f"Loaded still image {path} ({len(data)} bytes)")

    if not frames:
        logger.warning("No still images configured, failover will send empty parts")

    return frames
