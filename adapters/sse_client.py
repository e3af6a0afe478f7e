"""
sse_client.py — httpx transport adapter for the SSE decoder

Opens a streaming GET/POST with event-stream headers, checks that the server
actually answered with text/event-stream, and pipes response bytes through
one SSEDecoder per connection.

Usage:
    with httpx.Client() as client:
        with connect_sse(client, "GET", url) as source:
            for event in source.iter_sse():
                ...
        # source.last_event_id / source.reconnection_time feed the caller's
        # own reconnect policy; this module never retries.
"""

import contextlib
import logging
from typing import Any, AsyncIterator, Iterator, Optional

import httpx

from sse_config import DecoderConfig, redact_headers
from sse_decoder import SSEDecoder, SSEEvent, decode_step
from sse_errors import TransportError

logger = logging.getLogger("sse.client")

EVENT_STREAM = "text/event-stream"

# Statuses worth reconnecting on
RETRYABLE_STATUS = {429, 500, 502, 503, 504}


class EventSource:
    """One event stream over an open httpx response."""

    def __init__(self, response: httpx.Response, config: Optional[DecoderConfig] = None):
        self._response = response
        self._decoder = SSEDecoder(config)

    @property
    def response(self) -> httpx.Response:
        return self._response

    @property
    def last_event_id(self) -> Optional[str]:
        """Value for the Last-Event-ID header on reconnect."""
        return self._decoder.last_event_id

    @property
    def reconnection_time(self) -> Optional[int]:
        """Server-requested reconnect delay in milliseconds, if any."""
        return self._decoder.reconnection_time

    def check_response(self) -> None:
        """Raise TransportError unless this is a 2xx text/event-stream response."""
        status = self._response.status_code
        if not 200 <= status < 300:
            logger.warning("SSE request failed: HTTP %d", status)
            raise TransportError(
                f"HTTP {status} while opening event stream",
                status_code=status,
                retryable=status in RETRYABLE_STATUS,
            )

        content_type = self._response.headers.get("content-type", "")
        media_type = content_type.partition(";")[0].strip().lower()
        if media_type != EVENT_STREAM:
            logger.warning("Response is not an event stream: %r", content_type)
            raise TransportError(
                f"Expected Content-Type {EVENT_STREAM}, got {content_type!r}",
                status_code=status,
            )

    def iter_sse(self) -> Iterator[SSEEvent]:
        """Yield events until the server closes the stream."""
        self.check_response()
        try:
            for chunk in self._response.iter_bytes():
                events, error = decode_step(self._decoder, chunk)
                yield from events
                if error is not None:
                    raise error
        except httpx.TransportError as e:
            raise TransportError(f"Stream read failed: {e}", retryable=True) from e

        events, error = decode_step(self._decoder, None)
        yield from events
        if error is not None:
            raise error

    async def aiter_sse(self) -> AsyncIterator[SSEEvent]:
        """Async counterpart of iter_sse()."""
        self.check_response()
        try:
            async for chunk in self._response.aiter_bytes():
                events, error = decode_step(self._decoder, chunk)
                for event in events:
                    yield event
                if error is not None:
                    raise error
        except httpx.TransportError as e:
            raise TransportError(f"Stream read failed: {e}", retryable=True) from e

        events, error = decode_step(self._decoder, None)
        for event in events:
            yield event
        if error is not None:
            raise error


def build_headers(headers: Any = None, last_event_id: Optional[str] = None) -> httpx.Headers:
    """Merge caller headers with the event-stream request headers."""
    merged = httpx.Headers(headers)
    merged["Accept"] = EVENT_STREAM
    merged["Cache-Control"] = "no-store"
    if last_event_id is not None:
        merged["Last-Event-ID"] = last_event_id
    return merged


@contextlib.contextmanager
def connect_sse(
    client: httpx.Client,
    method: str,
    url: str,
    *,
    last_event_id: Optional[str] = None,
    config: Optional[DecoderConfig] = None,
    **kwargs: Any,
) -> Iterator[EventSource]:
    """Open an event stream; the response is closed on exit.

    Builds the request and sends it with stream=True, which is what
    client.stream() does, but keeps connection failures apart from errors
    raised while the caller reads the body.
    """
    headers = build_headers(kwargs.pop("headers", None), last_event_id)
    request = client.build_request(method, url, headers=headers, **kwargs)
    logger.info("Opening SSE stream %s %s (last_event_id=%s)", method, url, last_event_id)
    logger.debug("SSE request headers: %s", redact_headers(dict(headers)))

    try:
        response = client.send(request, stream=True)
    except httpx.TransportError as e:
        raise TransportError(f"Connection failed: {e}", retryable=True) from e

    try:
        yield EventSource(response, config)
    finally:
        response.close()


@contextlib.asynccontextmanager
async def aconnect_sse(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    last_event_id: Optional[str] = None,
    config: Optional[DecoderConfig] = None,
    **kwargs: Any,
) -> AsyncIterator[EventSource]:
    """Async counterpart of connect_sse()."""
    headers = build_headers(kwargs.pop("headers", None), last_event_id)
    request = client.build_request(method, url, headers=headers, **kwargs)
    logger.info("Opening SSE stream %s %s (last_event_id=%s)", method, url, last_event_id)
    logger.debug("SSE request headers: %s", redact_headers(dict(headers)))

    try:
        response = await client.send(request, stream=True)
    except httpx.TransportError as e:
        raise TransportError(f"Connection failed: {e}", retryable=True) from e

    try:
        yield EventSource(response, config)
    finally:
        await response.aclose()
