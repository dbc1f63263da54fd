"""Centralized error codes and status mappings."""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Final, Optional


class ErrorCode(str, Enum):
    """Stable error identifiers surfaced to clients and logs."""

    # session (ERR100x)
    SESSION_ID_INVALID = "ERR1001"
    SESSION_NOT_FOUND = "ERR1002"
    SESSION_IDLE_TIMEOUT = "ERR1003"
    CONNECTION_RATE_LIMITED = "ERR1004"
    CONNECTION_FORBIDDEN = "ERR1005"

    # audio (ERR200x)
    AUDIO_EMPTY = "ERR2001"
    AUDIO_TOO_SMALL = "ERR2002"
    AUDIO_ODD_LENGTH = "ERR2003"
    AUDIO_DEGENERATE = "ERR2004"
    AUDIO_CHANNELS_UNSUPPORTED = "ERR2005"
    AUDIO_FORMAT_INVALID = "ERR2006"

    # services (ERR300x)
    RECOGNITION_FAILED = "ERR3001"
    REPLY_FAILED = "ERR3002"
    SYNTHESIS_FAILED = "ERR3003"
    PIPELINE_UNEXPECTED = "ERR3004"

    # protocol (ERR400x)
    MESSAGE_UNPARSABLE = "ERR4001"
    MESSAGE_HANDLER_FAILED = "ERR4002"
    AUDIO_PAYLOAD_INVALID = "ERR4003"

    # chat (ERR500x)
    CHAT_REQUEST_INVALID = "ERR5001"
    CHAT_RATE_LIMITED = "ERR5002"
    CHAT_UNEXPECTED = "ERR5003"


@dataclass(frozen=True)
class ErrorSpec:
    """Maps an error code to an HTTP status and message."""

    code: ErrorCode
    http_status: int
    message: str


ERROR_SPECS: Final[dict[ErrorCode, ErrorSpec]] = {
    ErrorCode.SESSION_ID_INVALID: ErrorSpec(
        ErrorCode.SESSION_ID_INVALID, 400, "session id is invalid"
    ),
    ErrorCode.SESSION_NOT_FOUND: ErrorSpec(
        ErrorCode.SESSION_NOT_FOUND, 404, "session not found"
    ),
    ErrorCode.SESSION_IDLE_TIMEOUT: ErrorSpec(
        ErrorCode.SESSION_IDLE_TIMEOUT, 408, "Session closed due to inactivity"
    ),
    ErrorCode.CONNECTION_RATE_LIMITED: ErrorSpec(
        ErrorCode.CONNECTION_RATE_LIMITED, 429, "too many connection attempts"
    ),
    ErrorCode.CONNECTION_FORBIDDEN: ErrorSpec(
        ErrorCode.CONNECTION_FORBIDDEN, 403, "client address not allowed"
    ),
    ErrorCode.AUDIO_EMPTY: ErrorSpec(ErrorCode.AUDIO_EMPTY, 400, "Empty audio buffer"),
    ErrorCode.AUDIO_TOO_SMALL: ErrorSpec(
        ErrorCode.AUDIO_TOO_SMALL, 400, "Audio buffer too small"
    ),
    ErrorCode.AUDIO_ODD_LENGTH: ErrorSpec(
        ErrorCode.AUDIO_ODD_LENGTH,
        400,
        "Invalid PCM data: buffer length must be even",
    ),
    ErrorCode.AUDIO_DEGENERATE: ErrorSpec(
        ErrorCode.AUDIO_DEGENERATE,
        400,
        "Audio data appears to be invalid (too few unique values)",
    ),
    ErrorCode.AUDIO_CHANNELS_UNSUPPORTED: ErrorSpec(
        ErrorCode.AUDIO_CHANNELS_UNSUPPORTED, 400, "unsupported channel conversion"
    ),
    ErrorCode.AUDIO_FORMAT_INVALID: ErrorSpec(
        ErrorCode.AUDIO_FORMAT_INVALID, 400, "invalid audio format"
    ),
    ErrorCode.RECOGNITION_FAILED: ErrorSpec(
        ErrorCode.RECOGNITION_FAILED, 502, "speech recognition failed"
    ),
    ErrorCode.REPLY_FAILED: ErrorSpec(
        ErrorCode.REPLY_FAILED, 502, "reply generation failed"
    ),
    ErrorCode.SYNTHESIS_FAILED: ErrorSpec(
        ErrorCode.SYNTHESIS_FAILED, 502, "speech synthesis failed"
    ),
    ErrorCode.PIPELINE_UNEXPECTED: ErrorSpec(
        ErrorCode.PIPELINE_UNEXPECTED, 500, "Failed to process audio"
    ),
    ErrorCode.MESSAGE_UNPARSABLE: ErrorSpec(
        ErrorCode.MESSAGE_UNPARSABLE, 400, "Failed to process message"
    ),
    ErrorCode.MESSAGE_HANDLER_FAILED: ErrorSpec(
        ErrorCode.MESSAGE_HANDLER_FAILED, 500, "Failed to handle message"
    ),
    ErrorCode.AUDIO_PAYLOAD_INVALID: ErrorSpec(
        ErrorCode.AUDIO_PAYLOAD_INVALID, 400, "Failed to process audio data"
    ),
    ErrorCode.CHAT_REQUEST_INVALID: ErrorSpec(
        ErrorCode.CHAT_REQUEST_INVALID, 400, "Invalid request data"
    ),
    ErrorCode.CHAT_RATE_LIMITED: ErrorSpec(
        ErrorCode.CHAT_RATE_LIMITED,
        429,
        "Rate limit exceeded. Please wait before sending another message.",
    ),
    ErrorCode.CHAT_UNEXPECTED: ErrorSpec(
        ErrorCode.CHAT_UNEXPECTED, 500, "Internal server error"
    ),
}

ERROR_HTTP_STATUS_MAP: Final[dict[ErrorCode, int]] = {
    code: spec.http_status for code, spec in ERROR_SPECS.items()
}


def spec_for(code: ErrorCode) -> ErrorSpec:
    """Return the ErrorSpec for a given error code."""
    return ERROR_SPECS[code]


def http_status_for(code: ErrorCode) -> int:
    """Return the HTTP status associated with an error code."""
    return ERROR_SPECS[code].http_status


def format_error(code: ErrorCode, detail: Optional[str] = None) -> str:
    """Format an error code and optional detail into a message."""
    spec = ERROR_SPECS[code]
    message = detail if detail else spec.message
    return f"{spec.code.value} {message}"


def http_payload_for(code: ErrorCode, detail: Optional[str] = None) -> dict[str, str]:
    """Build an HTTP error payload for a given error code."""
    spec = ERROR_SPECS[code]
    message = detail if detail else spec.message
    return {"code": spec.code.value, "message": message}


def ws_payload_for(
    code: ErrorCode, detail: Optional[str] = None, **extra: Any
) -> dict[str, Any]:
    """Build a WebSocket ``error`` message for a given error code."""
    spec = ERROR_SPECS[code]
    payload: dict[str, Any] = {
        "type": "error",
        "code": spec.code.value,
        "error": detail if detail else spec.message,
        "timestamp": int(time.time() * 1000),
    }
    payload.update(extra)
    return payload


class VoiceError(RuntimeError):
    """Raised for application-defined errors with status metadata."""

    def __init__(self, code: ErrorCode, detail: Optional[str] = None) -> None:
        self.code = code
        self.http_status = http_status_for(code)
        self.detail = detail or ERROR_SPECS[code].message
        super().__init__(format_error(code, detail))


class AudioValidationError(VoiceError):
    """Raised when an audio buffer fails format validation."""


class RateLimitExceededError(VoiceError):
    """Raised when a session exceeds its chat message allowance."""

    def __init__(
        self, remaining: int, reset_time: int, detail: Optional[str] = None
    ) -> None:
        super().__init__(ErrorCode.CHAT_RATE_LIMITED, detail)
        self.remaining = remaining
        self.reset_time = reset_time

    def rate_limit_info(self) -> dict[str, int]:
        return {"remaining": self.remaining, "resetTime": self.reset_time}


__all__ = [
    "AudioValidationError",
    "ErrorCode",
    "ErrorSpec",
    "ERROR_SPECS",
    "ERROR_HTTP_STATUS_MAP",
    "RateLimitExceededError",
    "VoiceError",
    "format_error",
    "http_payload_for",
    "http_status_for",
    "spec_for",
    "ws_payload_for",
]
