"""Message catalogue and framing for the voice WebSocket protocol."""

from __future__ import annotations

import base64
import binascii
import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from voice_server.errors import ErrorCode, VoiceError


class MessageType(str, Enum):
    SESSION_INIT = "session_init"
    CONNECTION_ESTABLISHED = "connection_established"
    AUDIO_DATA = "audio_data"
    AUDIO_RECEIVED = "audio_received"
    START_STREAMING = "start_streaming"
    STREAMING_STARTED = "streaming_started"
    STOP_STREAMING = "stop_streaming"
    STREAMING_STOPPED = "streaming_stopped"
    TRANSCRIPTION = "transcription"
    AUDIO_RESPONSE = "audio_response"
    PING = "ping"
    PONG = "pong"
    ERROR = "error"


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class InboundMessage:
    """One parsed client message; ``type`` is kept raw so unknown types survive."""

    type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    binary: Optional[bytes] = None

    @property
    def session_id(self) -> Optional[str]:
        value = self.payload.get("sessionId") or self.payload.get("session_id")
        return str(value) if value else None

    def known_type(self) -> Optional[MessageType]:
        try:
            return MessageType(self.type)
        except ValueError:
            return None


def parse_text_frame(text: str) -> InboundMessage:
    """Decode a JSON text frame; raises ``VoiceError(MESSAGE_UNPARSABLE)``."""
    try:
        data = json.loads(text)
    except (TypeError, ValueError) as exc:
        raise VoiceError(ErrorCode.MESSAGE_UNPARSABLE, f"Invalid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise VoiceError(ErrorCode.MESSAGE_UNPARSABLE, "Message must be a JSON object")
    message_type = data.get("type")
    if not isinstance(message_type, str) or not message_type:
        raise VoiceError(ErrorCode.MESSAGE_UNPARSABLE, "Message type is required")
    return InboundMessage(type=message_type, payload=data)


def binary_frame(data: bytes) -> InboundMessage:
    """Raw binary frames are always audio."""
    return InboundMessage(type=MessageType.AUDIO_DATA.value, binary=bytes(data))


def decode_audio_payload(message: InboundMessage) -> bytes:
    """Extract PCM bytes from an ``audio_data`` message.

    Accepts a binary frame, a base64 string, or a list of byte values under
    ``data`` (or ``audio``).
    """
    if message.binary is not None:
        return message.binary
    raw = message.payload.get("data")
    if raw is None:
        raw = message.payload.get("audio")
    if isinstance(raw, str):
        try:
            return base64.b64decode(raw, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise VoiceError(
                ErrorCode.AUDIO_PAYLOAD_INVALID, "Audio data is not valid base64"
            ) from exc
    if isinstance(raw, list):
        try:
            return bytes(raw)
        except (TypeError, ValueError) as exc:
            raise VoiceError(
                ErrorCode.AUDIO_PAYLOAD_INVALID, "Audio data must be byte values 0-255"
            ) from exc
    raise VoiceError(ErrorCode.AUDIO_PAYLOAD_INVALID, "Audio data is missing")


def build_message(message_type: MessageType, **fields: Any) -> Dict[str, Any]:
    """Outbound message with ``type`` and a millisecond ``timestamp``."""
    message: Dict[str, Any] = {"type": message_type.value, "timestamp": now_ms()}
    message.update({key: value for key, value in fields.items() if value is not None})
    return message


__all__ = [
    "InboundMessage",
    "MessageType",
    "binary_frame",
    "build_message",
    "decode_audio_payload",
    "now_ms",
    "parse_text_frame",
]
