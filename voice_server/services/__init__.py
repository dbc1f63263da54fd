"""Service registry for recognition, synthesis and completion backends."""

from __future__ import annotations

from typing import TYPE_CHECKING

from voice_server.services.base import (
    CompletionBackend,
    ReplyGenerator,
    SpeechRecognizer,
    SpeechSynthesizer,
    SynthesisResult,
    TranscriptionResult,
)
from voice_server.services.http import (
    EchoCompletionBackend,
    HttpSpeechRecognizer,
    HttpSpeechSynthesizer,
    OpenAICompletionBackend,
)

if TYPE_CHECKING:
    from voice_server.backend.runtime.config import ServiceRuntimeConfig


def get_recognizer(config: ServiceRuntimeConfig) -> SpeechRecognizer:
    """Resolve a recognizer implementation by name."""
    normalized = (config.recognizer or "http").lower()
    if normalized in {"http", "rest"}:
        return HttpSpeechRecognizer(
            config.recognizer_url,
            api_key=config.recognizer_api_key,
            language_code=config.language_code,
            timeout_sec=config.request_timeout_sec,
        )
    raise ValueError(f"Unknown recognizer backend: {config.recognizer}")


def get_synthesizer(
    config: ServiceRuntimeConfig, sample_rate: int = 44100
) -> SpeechSynthesizer:
    """Resolve a synthesizer implementation by name."""
    normalized = (config.synthesizer or "http").lower()
    if normalized in {"http", "rest"}:
        return HttpSpeechSynthesizer(
            config.synthesizer_url,
            api_key=config.synthesizer_api_key,
            voice_id=config.voice_id,
            sample_rate=sample_rate,
            timeout_sec=config.request_timeout_sec,
        )
    raise ValueError(f"Unknown synthesizer backend: {config.synthesizer}")


def get_completion_backend(config: ServiceRuntimeConfig) -> CompletionBackend:
    """Resolve a completion backend by name."""
    normalized = (config.completion or "echo").lower()
    if normalized in {"openai", "openai_compatible", "openai-compatible"}:
        return OpenAICompletionBackend(
            config.completion_base_url,
            api_key=config.completion_api_key,
            model=config.completion_model,
            max_tokens=config.max_tokens,
            temperature=config.temperature,
            timeout_sec=config.request_timeout_sec,
        )
    if normalized == "echo":
        return EchoCompletionBackend()
    raise ValueError(f"Unknown completion backend: {config.completion}")


__all__ = [
    "CompletionBackend",
    "ReplyGenerator",
    "SpeechRecognizer",
    "SpeechSynthesizer",
    "SynthesisResult",
    "TranscriptionResult",
    "get_completion_backend",
    "get_recognizer",
    "get_synthesizer",
]
