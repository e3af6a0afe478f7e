"""Tests for the SSE error taxonomy."""

import os
import sys

import pytest

# Ensure adapters/ is on path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from sse_errors import (
    DecoderClosedError,
    InvalidUtf8Error,
    MalformedFieldError,
    SSEError,
    TransportError,
)


@pytest.mark.parametrize(
    "error_cls, code",
    [
        (InvalidUtf8Error, "invalid_utf8"),
        (MalformedFieldError, "malformed_field"),
        (DecoderClosedError, "decoder_closed"),
        (TransportError, "transport_error"),
    ],
)
def test_codes(error_cls, code):
    error = error_cls("boom")
    assert isinstance(error, SSEError)
    assert error.code == code
    assert error.to_dict()["code"] == code
    assert error.to_dict()["message"] == "boom"


def test_decode_errors_are_not_retryable():
    assert InvalidUtf8Error("x").retryable is False
    assert MalformedFieldError("x").retryable is False


def test_invalid_utf8_to_dict():
    error = InvalidUtf8Error("bad line", offset=4, events=["e"])
    assert error.to_dict() == {
        "error": "InvalidUtf8Error",
        "code": "invalid_utf8",
        "message": "bad line",
        "retryable": False,
        "offset": 4,
    }
    assert error.events == ["e"]


def test_malformed_field_keeps_field_and_value():
    error = MalformedFieldError("bad retry", field="retry", value="soon")
    assert error.field == "retry"
    assert error.value == "soon"
    assert error.to_dict()["field"] == "retry"
    assert error.events == []
