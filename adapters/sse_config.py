"""SSE decoder configuration — env loading, deep merge, validation.

Provides:
- DecoderConfig: the per-stream decoder switches
- SSE_DECODER_* environment variables
- Deep merge of layered overrides on top of the environment
- Header redaction for safe request logging

Every switch defaults to the tolerant, discard-at-EOF behaviour; a decoder
built with no config at all behaves exactly like DecoderConfig().
"""

from __future__ import annotations

import copy
import logging
import os
import re
from dataclasses import asdict, dataclass
from typing import Any, Dict, Mapping, Optional

logger = logging.getLogger("sse.config")

REDACTED = "***REDACTED***"

ENV_STRICT = "SSE_DECODER_STRICT"
ENV_FLUSH_ON_EOF = "SSE_DECODER_FLUSH_ON_EOF"
ENV_MAX_LINE_BYTES = "SSE_DECODER_MAX_LINE_BYTES"

_TRUE_STRINGS = {"1", "true", "yes", "on"}
_FALSE_STRINGS = {"0", "false", "no", "off", ""}

_SENSITIVE_KEY_RE = re.compile(
    r"(auth|key|secret|token|password|credential|bearer|cookie)",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class DecoderConfig:
    """Switches for one SSEDecoder instance.

    strict:         raise MalformedFieldError where the tolerant rules
                    would ignore a field (bad retry, id containing NUL).
    flush_on_eof:   at end-of-stream, treat an unterminated trailing line
                    as if a blank line followed it and dispatch.
    max_line_bytes: fail the stream when an unterminated line grows past
                    this many bytes. None means unbounded.
    """

    strict: bool = False
    flush_on_eof: bool = False
    max_line_bytes: Optional[int] = None

    def __post_init__(self):
        if self.max_line_bytes is not None:
            if isinstance(self.max_line_bytes, bool) or not isinstance(self.max_line_bytes, int):
                raise ValueError(
                    f"max_line_bytes must be an integer, got {self.max_line_bytes!r}"
                )
            if self.max_line_bytes <= 0:
                raise ValueError(
                    f"max_line_bytes must be positive, got {self.max_line_bytes}"
                )

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "DecoderConfig":
        """Build from SSE_DECODER_* environment variables."""
        env = os.environ if environ is None else environ
        return cls.from_dict(_env_overrides(env))

    @classmethod
    def from_dict(cls, config: Mapping[str, Any]) -> "DecoderConfig":
        """Build from a config mapping.

        Accepts either flat keys or a nested {"sse": {"decoder": {...}}}
        section. Unknown keys are rejected.
        """
        section = config
        if "sse" in config:
            sse = config["sse"]
            if not isinstance(sse, Mapping):
                raise ValueError(f"Config 'sse' must be a mapping, got {sse!r}")
            section = sse.get("decoder", {})
            if not isinstance(section, Mapping):
                raise ValueError(f"Config 'sse.decoder' must be a mapping, got {section!r}")

        known = {"strict", "flush_on_eof", "max_line_bytes"}
        unknown = set(section) - known
        if unknown:
            raise ValueError(f"Unknown decoder config keys: {sorted(unknown)}")

        kwargs: Dict[str, Any] = {}
        for key in ("strict", "flush_on_eof"):
            if key in section:
                kwargs[key] = _parse_bool(key, section[key])
        if "max_line_bytes" in section:
            kwargs["max_line_bytes"] = _parse_limit("max_line_bytes", section["max_line_bytes"])
        return cls(**kwargs)

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _parse_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    raise ValueError(f"Config '{key}' must be a boolean, got {value!r}")


def _parse_limit(key: str, value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return None
        if not stripped.isascii() or not stripped.isdigit():
            raise ValueError(f"Config '{key}' must be a positive integer, got {value!r}")
        value = int(stripped)
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValueError(f"Config '{key}' must be a positive integer, got {value!r}")
    return value


def _env_overrides(env: Mapping[str, str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if ENV_STRICT in env:
        overrides["strict"] = env[ENV_STRICT]
    if ENV_FLUSH_ON_EOF in env:
        overrides["flush_on_eof"] = env[ENV_FLUSH_ON_EOF]
    if ENV_MAX_LINE_BYTES in env:
        overrides["max_line_bytes"] = env[ENV_MAX_LINE_BYTES]
    return overrides


# ── Deep merge ────────────────────────────────────────────────────────


def deep_merge(base: Dict[str, Any], overlay: Mapping[str, Any]) -> Dict[str, Any]:
    """Deep merge overlay into base. Overlay values win.

    Returns a new dict (base and overlay are not modified).
    """
    result = copy.deepcopy(base)
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, Mapping):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def load_config(
    overrides: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> DecoderConfig:
    """Environment first, then overrides on top.

    overrides may be flat or nested under sse.decoder, like from_dict().
    """
    env = os.environ if environ is None else environ
    layered = {"sse": {"decoder": _env_overrides(env)}}
    if overrides:
        if "sse" in overrides:
            layered = deep_merge(layered, overrides)
        else:
            layered = deep_merge(layered, {"sse": {"decoder": dict(overrides)}})

    config = DecoderConfig.from_dict(layered)
    logger.debug("Decoder config: %s", config.as_dict())
    return config


# ── Redaction ─────────────────────────────────────────────────────────


def redact_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    """Return a copy of headers with sensitive values redacted."""
    redacted = {}
    for key, value in headers.items():
        if _SENSITIVE_KEY_RE.search(key):
            redacted[key] = REDACTED
        else:
            redacted[key] = value
    return redacted
