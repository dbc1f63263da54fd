import asyncio
from typing import Dict, List, Optional

import numpy as np
import pytest

from voice_server.backend.runtime.config import (
    ChatRuntimeConfig,
    PipelineRuntimeConfig,
    VoiceRuntimeConfig,
)
from voice_server.backend.runtime.runtime import ApplicationRuntime
from voice_server.services.base import SynthesisResult, TranscriptionResult
from voice_server.services.http import EchoCompletionBackend


def make_pcm(duration_ms: float, sample_rate: int = 16000, channels: int = 1, seed: int = 0) -> bytes:
    """Noise-like PCM16 that passes chunk validation."""
    samples = int(sample_rate * duration_ms / 1000) * channels
    rng = np.random.default_rng(seed)
    return rng.integers(-3000, 3000, samples, dtype=np.int16).astype("<i2").tobytes()


class FakeRecognizer:
    def __init__(self, transcript: Optional[str] = "hello", confidence: float = 0.9):
        self.transcript = transcript
        self.confidence = confidence
        self.calls: List[tuple] = []
        self.error: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None

    async def transcribe(self, audio: bytes, sample_rate: int) -> Optional[TranscriptionResult]:
        self.calls.append((audio, sample_rate))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        if self.transcript is None:
            return None
        return TranscriptionResult(self.transcript, self.confidence)


class FakeSynthesizer:
    def __init__(self, sample_rate: int = 22050, duration_ms: float = 100):
        self.sample_rate = sample_rate
        self.duration_ms = duration_ms
        self.calls: List[str] = []
        self.error: Optional[Exception] = None

    async def synthesize(self, text: str) -> SynthesisResult:
        self.calls.append(text)
        if self.error is not None:
            raise self.error
        return SynthesisResult(
            audio=make_pcm(self.duration_ms, self.sample_rate, seed=7),
            sample_rate=self.sample_rate,
        )


class FakeReplyGenerator:
    def __init__(self, reply: Optional[str] = "hi there"):
        self.reply = reply
        self.calls: List[tuple] = []
        self.error: Optional[Exception] = None

    async def generate_reply(self, text: str, session_id: str) -> Optional[str]:
        self.calls.append((text, session_id))
        if self.error is not None:
            raise self.error
        return self.reply


class RecordingCompletionBackend:
    def __init__(self, reply: Optional[str] = "assistant reply"):
        self.reply = reply
        self.requests: List[List[Dict[str, str]]] = []
        self.error: Optional[Exception] = None

    async def complete(self, messages: List[Dict[str, str]]) -> Optional[str]:
        self.requests.append([dict(m) for m in messages])
        if self.error is not None:
            raise self.error
        return self.reply


class ManualClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def pcm():
    return make_pcm


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def recognizer() -> FakeRecognizer:
    return FakeRecognizer()


@pytest.fixture
def reply_generator() -> FakeReplyGenerator:
    return FakeReplyGenerator()


@pytest.fixture
def completion_backend() -> RecordingCompletionBackend:
    return RecordingCompletionBackend()


@pytest.fixture
def synthesizer() -> FakeSynthesizer:
    return FakeSynthesizer()


@pytest.fixture
def build_runtime(recognizer, synthesizer):
    """Factory for a runtime wired to in-process fakes."""

    def _build(
        pipeline: Optional[PipelineRuntimeConfig] = None,
        chat: Optional[ChatRuntimeConfig] = None,
        completion_backend=None,
        **transport_overrides,
    ) -> ApplicationRuntime:
        config = VoiceRuntimeConfig(
            pipeline=pipeline or PipelineRuntimeConfig(),
            chat=chat or ChatRuntimeConfig(),
        )
        for key, value in transport_overrides.items():
            setattr(config.transport, key, value)
        return ApplicationRuntime(
            config,
            recognizer=recognizer,
            synthesizer=synthesizer,
            completion_backend=completion_backend or EchoCompletionBackend(),
        )

    return _build
