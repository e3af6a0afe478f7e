"""sse_errors.py — Structured errors for the SSE decoder and its transport adapter.

Taxonomy:
  invalid_utf8     — a complete line is not valid UTF-8 (fatal for the stream)
  malformed_field  — a bad field in strict mode, or a line past max_line_bytes
  decoder_closed   — decode called after a fatal error or after finish()
  transport_error  — the HTTP response is not a usable event stream
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class SSEError(Exception):
    """Structured error with code and retryable flag."""

    code = "sse_error"

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "code": self.code,
            "message": str(self),
            "retryable": self.retryable,
        }


class InvalidUtf8Error(SSEError):
    """A line delivered by the transport is not decodable as UTF-8.

    `events` holds whatever was dispatched earlier in the same decode call,
    so a caller that treats this as a connection failure still receives them.
    """

    code = "invalid_utf8"

    def __init__(
        self,
        message: str,
        offset: int = 0,
        events: Optional[List[Any]] = None,
    ):
        super().__init__(message, retryable=False)
        self.offset = offset
        self.events = list(events or [])

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["offset"] = self.offset
        return result


class MalformedFieldError(SSEError):
    """A field the tolerant rules would ignore, surfaced in strict mode.

    Also raised in any mode when a line grows past max_line_bytes; field and
    value are empty then.
    """

    code = "malformed_field"

    def __init__(
        self,
        message: str,
        field: str = "",
        value: str = "",
        events: Optional[List[Any]] = None,
    ):
        super().__init__(message, retryable=False)
        self.field = field
        self.value = value
        self.events = list(events or [])

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["field"] = self.field
        return result


class DecoderClosedError(SSEError):
    code = "decoder_closed"


class TransportError(SSEError):
    """The HTTP side failed or did not deliver text/event-stream."""

    code = "transport_error"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retryable: bool = False,
    ):
        super().__init__(message, retryable=retryable)
        self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["status_code"] = self.status_code
        return result
