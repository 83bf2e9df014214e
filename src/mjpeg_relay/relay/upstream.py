"""
Upstream Fetcher
================

Holds the single outbound connection to the source MJPEG endpoint.

This module provides the UpstreamFetcher class which:
    - Issues one streaming GET to the configured URL
    - Extracts the multipart boundary from the response headers
    - Hands every body chunk to a callback, in arrival order
    - Logs transport errors, handler faults and stream end

Design Rules:
    - Does NOT retry; restarting is the watchdog's job
    - Does NOT parse or buffer the body
    - stop() is synchronous: after it returns, no chunk from the old
      connection is delivered
"""

import asyncio
import logging
from typing import Callable, Optional, Set

import httpx

from mjpeg_relay.relay.boundary import MalformedContentType, extract_boundary


logger = logging.getLogger(__name__)


class UpstreamFetcher:
    """
    Reactive plumbing between the upstream socket and the broadcaster.

    At most one request/response pair is active at a time.

    Attributes:
        url: Source MJPEG URL
        chunk_size: Read size for body chunks (None = as received)

    Example:
        fetcher = UpstreamFetcher(
            url="http://camera.local/video",
            client=httpx.AsyncClient(),
            on_boundary=engine.set_boundary,
            on_chunk=engine.handle_chunk,
        )
        fetcher.start()
        ...
        await fetcher.aclose()
    """

    def __init__(
        self,
        url: str,
        client: Optional[httpx.AsyncClient],
        on_boundary: Callable[[str], None],
        on_chunk: Callable[[bytes], None],
        on_error: Optional[Callable[[Exception], None]] = None,
        chunk_size: Optional[int] = None,
    ) -> None:
        self.url = url
        self.chunk_size = chunk_size

        self.client = client
        self._on_boundary = on_boundary
        self._on_chunk = on_chunk
        self._on_error = on_error

        self._task: Optional[asyncio.Task] = None
        self._response: Optional[httpx.Response] = None
        # Cancelled tasks still unwinding their response
        self._stopping: Set[asyncio.Task] = set()

    @property
    def connected(self) -> bool:
        """Whether a request is in flight or a response is streaming."""
        return self._task is not None and not self._task.done()

    @property
    def streaming(self) -> bool:
        """Whether response headers have been received."""
        return self.connected and self._response is not None

    def start(self) -> None:
        """Issue a new upstream request. Any previous one is stopped first."""
        if self._task is not None:
            self.stop()

        logger.info(f"Requesting upstream stream: {self.url}")
        self._task = asyncio.create_task(self._run(), name="upstream_fetch")

    def stop(self) -> None:
        """Tear down the current connection, if any."""
        if self._task is None:
            return

        if self._response is not None:
            logger.info("Destroying upstream response")
        elif not self._task.done():
            logger.info("Aborting upstream request")

        self._task.cancel()
        if not self._task.done():
            self._stopping.add(self._task)
            self._task.add_done_callback(self._stopping.discard)
        self._task = None
        self._response = None

    async def aclose(self) -> None:
        """Stop the current connection and wait for every cancelled task to unwind."""
        self.stop()
        if self._stopping:
            await asyncio.gather(*self._stopping, return_exceptions=True)

    async def _run(self) -> None:
        """Stream one upstream response into the chunk callback."""
        me = asyncio.current_task()

        try:
            async with self.client.stream("GET", self.url) as response:
                if self._task is not me:
                    return
                self._response = response

                if not response.is_success:
                    logger.warning(
                        f"Upstream returned HTTP {response.status_code}, "
                        f"waiting for watchdog restart"
                    )
                    self._report(httpx.HTTPStatusError(
                        f"HTTP {response.status_code}",
                        request=response.request,
                        response=response,
                    ))
                    return

                self._handle_headers(response)

                async for chunk in response.aiter_raw(self.chunk_size):
                    if self._task is not me:
                        break
                    self._on_chunk(chunk)

            logger.warning("Upstream stream ended")

        except httpx.HTTPError as e:
            logger.error(f"Error on upstream: {type(e).__name__}: {e}")
            self._report(e)
        except Exception as e:
            logger.exception(f"Upstream handler failed: {e}")
            self._report(e)
        finally:
            if self._task is me:
                self._response = None

    def _handle_headers(self, response: httpx.Response) -> None:
        content_type = response.headers.get("content-type")
        try:
            boundary = extract_boundary(content_type)
        except MalformedContentType as e:
            logger.warning(f"Keeping previous boundary: {e}")
            self._report(e)
            return

        logger.info(f"Upstream connected, boundary={boundary!r}")
        self._on_boundary(boundary)

    def _report(self, error: Exception) -> None:
        if self._on_error is not None:
            self._on_error(error)
