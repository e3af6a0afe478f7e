"""
sse_decoder.py — Incremental Server-Sent Events decoder

Consumes arbitrarily chunked bytes from a transport and reconstructs SSE
events. Two halves:

  iter_lines()  — line splitter over a bytearray: \\r\\n, \\r and \\n are each
                  one boundary; a trailing \\r is held back until the next
                  byte (or end-of-stream) says whether it starts a \\r\\n.
  SSEDecoder    — field state machine: event / data / id / retry, comments,
                  unknown fields; dispatches on a blank line.

Each decode call consumes the fully processed prefix of the buffer and leaves
the unterminated tail in place, so decoding a stream in any number of chunks
yields the same events as decoding it in one call.

See: https://html.spec.whatwg.org/multipage/server-sent-events.html#parsing-an-event-stream
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import (
    Any,
    AsyncGenerator,
    AsyncIterable,
    Iterable,
    Iterator,
    List,
    Optional,
    Tuple,
)

from sse_config import DecoderConfig
from sse_errors import (
    DecoderClosedError,
    InvalidUtf8Error,
    MalformedFieldError,
    SSEError,
)

logger = logging.getLogger("sse.decoder")

UTF8_BOM = b"\xef\xbb\xbf"
DEFAULT_EVENT_TYPE = "message"

_CR = 0x0D
_LF = 0x0A
_LINE_END_RE = re.compile(rb"[\r\n]")
_RETRY_RE = re.compile(r"[0-9]+")


@dataclass
class SSEEvent:
    """A single Server-Sent Event."""
    event_type: str = DEFAULT_EVENT_TYPE
    data: Optional[str] = None
    id: Optional[str] = None
    retry: Optional[int] = None

    def json(self) -> Any:
        """Parse the data field as JSON."""
        if self.data is None:
            raise ValueError(f"Event {self.event_type!r} has no data")
        return json.loads(self.data)


# --- Line Splitter ---


def iter_lines(
    buffer: bytearray,
    final: bool = False,
    max_line_bytes: Optional[int] = None,
    start: int = 0,
) -> Iterator[str]:
    """Yield complete lines from buffer.

    A line's bytes are removed from buffer only when the consumer asks for
    the next line, so a consumer that raises while handling a line leaves
    that line in the buffer.

    The terminator is stripped. A lone \\r at the very end of the buffer is
    only a boundary when final is True; otherwise it stays in the buffer.
    Whatever follows the last boundary is left untouched. start skips a
    prefix already known to hold no terminator.

    Raises InvalidUtf8Error for a complete line that is not UTF-8. The
    offending line is left in the buffer.
    """
    while True:
        match = _LINE_END_RE.search(buffer, min(start, len(buffer)))
        if match is None:
            return
        start = 0

        end = match.start()
        advance = end + 1
        if buffer[end] == _CR:
            if advance == len(buffer):
                if not final:
                    return
            elif buffer[advance] == _LF:
                advance += 1

        if max_line_bytes is not None and end > max_line_bytes:
            raise MalformedFieldError(
                f"Line of {end} bytes exceeds max_line_bytes={max_line_bytes}"
            )

        try:
            line = buffer[:end].decode("utf-8")
        except UnicodeDecodeError as e:
            raise InvalidUtf8Error(
                f"Line is not valid UTF-8: {e.reason} at byte {e.start}",
                offset=e.start,
            ) from e

        yield line
        del buffer[:advance]


# --- Event Accumulator ---


class SSEDecoder:
    """Stateful SSE decoder for one stream.

    Create one per connection and drop it when the stream ends: the last
    event id and reconnection time are stream-scoped and must not leak into
    an unrelated stream.

    Not safe for concurrent use; feed it from a single reader.
    """

    def __init__(self, config: Optional[DecoderConfig] = None):
        self._config = config or DecoderConfig()
        self._pending = bytearray()
        self._bom_checked = False
        self._data_lines: List[str] = []
        self._event_type = ""
        self._last_event_id: Optional[str] = None
        self._reconnection_time: Optional[int] = None
        self._retry_updated = False
        self._closed = False
        # Held-back prefix of _scan_buffer already searched for a terminator
        self._scan_buffer: Optional[bytearray] = None
        self._scanned = 0

    @property
    def config(self) -> DecoderConfig:
        return self._config

    @property
    def last_event_id(self) -> Optional[str]:
        return self._last_event_id

    @property
    def reconnection_time(self) -> Optional[int]:
        """Last valid retry value in milliseconds, or None."""
        return self._reconnection_time

    @property
    def pending(self) -> int:
        """Bytes held back in the decoder-owned buffer used by feed()."""
        return len(self._pending)

    @property
    def closed(self) -> bool:
        return self._closed

    def feed(self, chunk: bytes) -> List[SSEEvent]:
        """Append chunk to the decoder-owned buffer and decode it."""
        self._check_open()
        self._pending.extend(chunk)
        return self.decode(self._pending)

    def decode(self, buffer: bytearray) -> List[SSEEvent]:
        """Decode every complete line in buffer.

        The processed prefix is removed from buffer in place; an
        unterminated tail stays for the next call. Returns the events
        dispatched by this call, in arrival order. An empty list means more
        bytes are needed.

        Raises InvalidUtf8Error, or MalformedFieldError in strict mode or
        past max_line_bytes. Both close the decoder, leave the offending line
        in buffer, and carry the events dispatched before the failure in
        their `events` attribute.
        """
        self._check_open()
        return self._decode(buffer, final=False)

    def finish(self, buffer: Optional[bytearray] = None) -> List[SSEEvent]:
        """End-of-stream: process what is complete, then drop the rest.

        A held-back trailing \\r counts as a boundary here. The unterminated
        remainder is discarded without dispatch unless flush_on_eof is set.
        Defaults to the decoder-owned buffer used by feed(). Closes the
        decoder.
        """
        self._check_open()
        if buffer is None:
            buffer = self._pending

        events = self._decode(buffer, final=True)

        tail = bytes(buffer)
        del buffer[:]
        try:
            text = tail.decode("utf-8")
        except UnicodeDecodeError as e:
            error = InvalidUtf8Error(
                f"Stream ended inside an invalid UTF-8 sequence: {e.reason} at byte {e.start}",
                offset=e.start,
                events=events,
            )
            self._fail(error)
            raise error from e

        if self._config.flush_on_eof:
            try:
                if text:
                    self._process_line(text)
                event = self._dispatch()
            except MalformedFieldError as e:
                e.events = events
                self._fail(e)
                raise
            if event is not None:
                events.append(event)
        elif tail:
            logger.info("Discarding %d unterminated bytes at end of stream", len(tail))

        self._closed = True
        return events

    # --- internals ---

    def _check_open(self) -> None:
        if self._closed:
            raise DecoderClosedError(
                "Decoder is closed (stream ended or failed); create a new decoder per stream"
            )

    def _fail(self, error: SSEError) -> None:
        self._closed = True
        logger.warning("SSE decode failed (%s): %s", error.code, error)

    def _decode(self, buffer: bytearray, final: bool) -> List[SSEEvent]:
        events: List[SSEEvent] = []

        if not self._bom_checked and not self._strip_bom(buffer, final):
            return events

        max_line_bytes = self._config.max_line_bytes
        start = self._scanned if buffer is self._scan_buffer else 0
        try:
            for line in iter_lines(
                buffer, final=final, max_line_bytes=max_line_bytes, start=start
            ):
                event = self._process_line(line)
                if event is not None:
                    events.append(event)

            if max_line_bytes is not None:
                held = len(buffer) - (1 if buffer.endswith(b"\r") else 0)
                if held > max_line_bytes:
                    raise MalformedFieldError(
                        f"Unterminated line of {held} bytes exceeds max_line_bytes={max_line_bytes}"
                    )
        except (InvalidUtf8Error, MalformedFieldError) as e:
            e.events = events
            self._fail(e)
            raise

        self._scan_buffer = buffer
        self._scanned = len(buffer) - (1 if buffer.endswith(b"\r") else 0)
        if buffer:
            logger.debug("Holding back %d bytes until more input", len(buffer))
        return events

    def _strip_bom(self, buffer: bytearray, final: bool) -> bool:
        """Inspect the stream start once. False while it is still undecided."""
        if not final and len(buffer) < len(UTF8_BOM) and UTF8_BOM.startswith(buffer):
            return False

        if buffer.startswith(UTF8_BOM):
            del buffer[:len(UTF8_BOM)]
            logger.debug("Stripped UTF-8 BOM at stream start")
        self._bom_checked = True
        return True

    def _process_line(self, line: str) -> Optional[SSEEvent]:
        if not line:
            return self._dispatch()

        if line.startswith(":"):
            # Comment
            return None

        field_name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]  # Strip single leading space

        if field_name == "event":
            self._event_type = value
        elif field_name == "data":
            self._data_lines.append(value)
        elif field_name == "id":
            if "\0" in value:
                self._ignore(field_name, value, "id contains NUL")
            else:
                self._last_event_id = value
        elif field_name == "retry":
            if _RETRY_RE.fullmatch(value):
                self._reconnection_time = int(value)
                self._retry_updated = True
            else:
                self._ignore(field_name, value, "retry is not a decimal integer")
        else:
            logger.debug("Ignoring unknown field %r", field_name)
        return None

    def _ignore(self, field_name: str, value: str, reason: str) -> None:
        if self._config.strict:
            raise MalformedFieldError(
                f"Malformed {field_name} field: {reason}",
                field=field_name,
                value=value,
            )
        logger.debug("Ignoring %s field: %s", field_name, reason)

    def _dispatch(self) -> Optional[SSEEvent]:
        if not self._data_lines:
            self._event_type = ""
            return None

        event = SSEEvent(
            event_type=self._event_type or DEFAULT_EVENT_TYPE,
            data="\n".join(self._data_lines),
            id=self._last_event_id,
            retry=self._reconnection_time if self._retry_updated else None,
        )
        # id and reconnection time persist per W3C spec
        self._data_lines = []
        self._event_type = ""
        self._retry_updated = False

        logger.debug(
            "Dispatch event type=%s id=%s data_len=%d",
            event.event_type,
            event.id,
            len(event.data),
        )
        return event


# --- Transport glue ---


def decode_step(
    decoder: SSEDecoder,
    chunk: Optional[bytes],
) -> Tuple[List[SSEEvent], Optional[SSEError]]:
    """Feed one chunk (None = end of stream), keeping events that precede a failure."""
    try:
        if chunk is None:
            return decoder.finish(), None
        return decoder.feed(chunk), None
    except (InvalidUtf8Error, MalformedFieldError) as e:
        return e.events, e


async def sse_decode(
    stream: AsyncIterable[bytes],
    config: Optional[DecoderConfig] = None,
) -> AsyncGenerator[SSEEvent, None]:
    """Decode SSE events from an async byte stream (httpx response.aiter_bytes()).

    Yields events as they complete. When the stream is exhausted the
    unterminated tail is dropped. A decode error is raised after the events
    that preceded it have been yielded.
    """
    decoder = SSEDecoder(config)
    async for chunk in stream:
        events, error = decode_step(decoder, chunk)
        for event in events:
            yield event
        if error is not None:
            raise error

    events, error = decode_step(decoder, None)
    for event in events:
        yield event
    if error is not None:
        raise error


def iter_sse_events(
    chunks: Iterable[bytes],
    config: Optional[DecoderConfig] = None,
) -> Iterator[SSEEvent]:
    """Synchronous counterpart of sse_decode()."""
    decoder = SSEDecoder(config)
    for chunk in chunks:
        events, error = decode_step(decoder, chunk)
        yield from events
        if error is not None:
            raise error

    events, error = decode_step(decoder, None)
    yield from events
    if error is not None:
        raise error
