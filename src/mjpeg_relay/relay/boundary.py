"""
Boundary Extraction
===================

Parses the multipart boundary token out of an upstream Content-Type header.

Rules:
    - The token starts right after ``boundary=``
    - It runs until the next ``;``; when there is none, until a ``\\r``
      (mjpeg-streamer terminates header lines that way); else to the end
    - Quote characters are stripped
    - The token must be non-empty ASCII

Example:
    >>> extract_boundary("multipart/x-mixed-replace;boundary=myboundary")
    'myboundary'
"""

from typing import Optional


BOUNDARY_PARAM = "boundary="


class MalformedContentType(ValueError):
    """Raised when a Content-Type header carries no usable boundary."""


def extract_boundary(content_type: Optional[str]) -> str:
    """
    Extract the multipart boundary token from a Content-Type value.

    Args:
        content_type: Raw Content-Type header value

    Returns:
        Boundary token without quotes

    Raises:
        MalformedContentType: If there is no ``boundary=`` parameter,
            or it is empty or not ASCII
    """
    if not content_type:
        raise MalformedContentType("no boundary found: missing content-type")

    start = content_type.find(BOUNDARY_PARAM)
    if start == -1:
        raise MalformedContentType(f"no boundary found in {content_type!r}")

    end = content_type.find(";", start)
    if end == -1:
        end = content_type.find("\r", start)
        if end == -1:
            end = len(content_type)

    token = content_type[start + len(BOUNDARY_PARAM):end].replace('"', "")
    if not token:
        raise MalformedContentType(f"empty boundary in {content_type!r}")
    if not token.isascii():
        raise MalformedContentType(f"non-ASCII boundary in {content_type!r}")
    return token


def boundary_marker(boundary: str) -> bytes:
    """Byte sequence that opens every part delimited by ``boundary``."""
    return b"--" + boundary.encode("latin-1")
