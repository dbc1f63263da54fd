"""Component layer helpers for the voice server."""

from .session_buffer import (
    AudioChunk,
    ChunkValidation,
    SessionAudioBuffer,
    SessionBufferHooks,
    SessionBufferRegistry,
)

__all__ = [
    "AudioChunk",
    "ChunkValidation",
    "SessionAudioBuffer",
    "SessionBufferHooks",
    "SessionBufferRegistry",
]
