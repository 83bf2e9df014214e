#!/usr/bin/env python3
"""
Relay Probe Script
==================

Standalone script that connects to a running relay as an ordinary client.

This script:
    1. Opens the relayed stream and checks the response headers
    2. Checks that the first bytes received start at a part boundary
    3. Counts parts for a configurable duration
    4. Logs part rate every few seconds and reports a final summary

Prerequisites:
    - The relay must be running at the given URL
    - Install the package: pip install -e .

Usage:
    python scripts/probe_relay.py --duration 60
    python scripts/probe_relay.py --url http://localhost:8080/
"""

import argparse
import asyncio
import logging
import os
import sys
import time

import httpx

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from mjpeg_relay.relay import MalformedContentType, extract_boundary


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%S",
)
logger = logging.getLogger(__name__)


async def run_probe(url: str, duration: int, report_interval: int) -> dict:
    """
    Consume the relayed stream and collect statistics.

    Args:
        url: Relay stream URL
        duration: Probe duration in seconds
        report_interval: Seconds between progress reports

    Returns:
        Final statistics dict
    """
    logger.info("=" * 60)
    logger.info(f"Probing relay at {url} for {duration}s")
    logger.info("=" * 60)

    parts = 0
    total_bytes = 0
    aligned = None
    boundary = None

    start_time = time.time()
    last_report_time = start_time
    last_parts = 0

    timeout = httpx.Timeout(connect=5.0, read=10.0, write=5.0, pool=5.0)
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            async with client.stream("GET", url) as response:
                content_type = response.headers.get("content-type", "")
                logger.info(f"HTTP {response.status_code}, content-type: {content_type}")
                logger.info(f"Cache-Control: {response.headers.get('cache-control')}")

                boundary = extract_boundary(content_type)
                marker = b"--" + boundary.encode("latin-1")
                tail = b""

                async for chunk in response.aiter_raw():
                    if aligned is None:
                        aligned = chunk.lstrip(b"\r\n").startswith(marker)
                        if not aligned:
                            logger.error(f"First bytes not at a boundary: {chunk[:32]!r}")

                    window = tail + chunk
                    parts += window.count(marker)
                    tail = window[-(len(marker) - 1):]
                    total_bytes += len(chunk)

                    now = time.time()
                    if now - last_report_time >= report_interval:
                        rate = (parts - last_parts) / (now - last_report_time)
                        logger.info(f"  Parts: {parts} ({rate:.1f}/s), bytes: {total_bytes}")
                        last_report_time = now
                        last_parts = parts

                    if now - start_time >= duration:
                        break

    except MalformedContentType as e:
        logger.error(f"Relay did not announce a boundary: {e}")
    except httpx.HTTPError as e:
        logger.error(f"Probe failed: {type(e).__name__}: {e}")

    total_time = time.time() - start_time

    logger.info("=" * 60)
    logger.info("FINAL SUMMARY")
    logger.info("=" * 60)
    logger.info(f"Boundary: {boundary}")
    logger.info(f"Boundary aligned start: {aligned}")
    logger.info(f"Parts received: {parts}")
    logger.info(f"Average parts/s: {parts / total_time if total_time > 0 else 0:.1f}")
    logger.info(f"Bytes received: {total_bytes}")
    logger.info("=" * 60)

    return {
        "duration": total_time,
        "boundary": boundary,
        "aligned": bool(aligned),
        "parts": parts,
        "bytes": total_bytes,
    }


def main():
    parser = argparse.ArgumentParser(description="Probe a running MJPEG relay")
    parser.add_argument(
        "--url",
        type=str,
        default=os.environ.get("MJPEG_RELAY_PROBE_URL", "http://localhost:8080/"),
        help="Relay stream URL",
    )
    parser.add_argument(
        "--duration",
        type=int,
        default=30,
        help="Probe duration in seconds (default: 30)",
    )
    parser.add_argument(
        "--report-interval",
        type=int,
        default=5,
        help="Seconds between progress reports (default: 5)",
    )

    args = parser.parse_args()

    result = asyncio.run(run_probe(
        url=args.url,
        duration=args.duration,
        report_interval=args.report_interval,
    ))

    sys.exit(0 if result["parts"] > 0 and result["aligned"] else 1)


if __name__ == "__main__":
    main()
