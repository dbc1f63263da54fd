"""HTTP adapters for speech and completion services.

Requests are blocking, so every call is pushed to a worker thread to keep the
event loop free while the round-trip is in flight.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

import requests

from voice_server.services.base import (
    SynthesisResult,
    TranscriptionAlternative,
    TranscriptionResult,
)

LOGGER = logging.getLogger("voice_server.services.http")

_SAMPLE_RATE_HEADER = "x-sample-rate"


def _auth_headers(api_key: str, header: str = "authorization") -> Dict[str, str]:
    if not api_key:
        return {}
    if header == "authorization":
        return {"Authorization": f"Bearer {api_key}"}
    return {header: api_key}


class HttpSpeechRecognizer:
    """POSTs raw LINEAR16 audio and expects ``{"transcript", "confidence"}`` back."""

    def __init__(
        self,
        url: str,
        api_key: str = "",
        language_code: str = "en-US",
        timeout_sec: float = 30.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not url:
            raise ValueError("recognizer url is required")
        self._url = url
        self._api_key = api_key
        self._language_code = language_code
        self._timeout_sec = timeout_sec
        self._session = session or requests.Session()

    async def transcribe(
        self, audio: bytes, sample_rate: int
    ) -> Optional[TranscriptionResult]:
        return await asyncio.to_thread(self._transcribe, audio, sample_rate)

    def _transcribe(self, audio: bytes, sample_rate: int) -> Optional[TranscriptionResult]:
        headers = {
            "Content-Type": f"audio/l16; rate={sample_rate}; channels=1",
            "x-language-code": self._language_code,
            **_auth_headers(self._api_key),
        }
        response = self._session.post(
            self._url, data=audio, headers=headers, timeout=self._timeout_sec
        )
        response.raise_for_status()
        body = response.json()
        if not isinstance(body, dict):
            return None
        transcript = str(body.get("transcript") or "")
        if not transcript:
            return None
        alternatives = tuple(
            TranscriptionAlternative(
                str(alt.get("transcript") or ""), float(alt.get("confidence") or 0.0)
            )
            for alt in body.get("alternatives") or []
            if isinstance(alt, dict)
        )
        return TranscriptionResult(
            transcript=transcript,
            confidence=float(body.get("confidence") or 0.0),
            is_final=bool(body.get("isFinal", True)),
            alternatives=alternatives,
        )


class HttpSpeechSynthesizer:
    """POSTs ``{"text", "voice_id"}`` and reads raw PCM16 back."""

    def __init__(
        self,
        url: str,
        api_key: str = "",
        voice_id: str = "",
        sample_rate: int = 44100,
        timeout_sec: float = 30.0,
        voice_settings: Optional[Dict[str, Any]] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not url:
            raise ValueError("synthesizer url is required")
        self._url = url
        self._api_key = api_key
        self._voice_id = voice_id
        self._sample_rate = sample_rate
        self._timeout_sec = timeout_sec
        self._voice_settings = dict(voice_settings or {})
        self._session = session or requests.Session()

    async def synthesize(self, text: str) -> SynthesisResult:
        return await asyncio.to_thread(self._synthesize, text)

    def _synthesize(self, text: str) -> SynthesisResult:
        payload: Dict[str, Any] = {
            "text": text,
            "voice_id": self._voice_id,
            "output_format": f"pcm_{self._sample_rate}",
        }
        if self._voice_settings:
            payload["voice_settings"] = self._voice_settings
        response = self._session.post(
            self._url,
            json=payload,
            headers=_auth_headers(self._api_key, "xi-api-key"),
            timeout=self._timeout_sec,
        )
        response.raise_for_status()
        sample_rate = self._sample_rate
        raw_rate = response.headers.get(_SAMPLE_RATE_HEADER)
        if raw_rate:
            try:
                sample_rate = int(raw_rate)
            except ValueError:
                LOGGER.warning("Ignoring invalid %s header: %s", _SAMPLE_RATE_HEADER, raw_rate)
        return SynthesisResult(audio=response.content, sample_rate=sample_rate)


class OpenAICompletionBackend:
    """Chat-completions client for OpenAI-compatible endpoints."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        model: str = "gpt-3.5-turbo",
        max_tokens: int = 500,
        temperature: float = 0.7,
        timeout_sec: float = 30.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._url = base_url.rstrip("/") + "/chat/completions"
        self._api_key = api_key
        self._model = model
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._timeout_sec = timeout_sec
        self._session = session or requests.Session()

    async def complete(self, messages: List[Dict[str, str]]) -> Optional[str]:
        return await asyncio.to_thread(self._complete, messages)

    def _complete(self, messages: List[Dict[str, str]]) -> Optional[str]:
        response = self._session.post(
            self._url,
            json={
                "model": self._model,
                "messages": messages,
                "max_tokens": self._max_tokens,
                "temperature": self._temperature,
            },
            headers=_auth_headers(self._api_key),
            timeout=self._timeout_sec,
        )
        response.raise_for_status()
        choices = response.json().get("choices") or []
        if not choices:
            return None
        content = (choices[0].get("message") or {}).get("content")
        return content or None


class EchoCompletionBackend:
    """Replies with the last user message; handy for smoke tests."""

    def __init__(self, prefix: str = "You said: ") -> None:
        self._prefix = prefix

    async def complete(self, messages: List[Dict[str, str]]) -> Optional[str]:
        for message in reversed(messages):
            if message.get("role") == "user" and message.get("content"):
                return f"{self._prefix}{message['content']}"
        return None
