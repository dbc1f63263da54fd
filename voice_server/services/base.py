"""Interfaces for the recognition, synthesis and completion collaborators."""

from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Tuple


@dataclass(frozen=True)
class TranscriptionAlternative:
    transcript: str
    confidence: float


@dataclass(frozen=True)
class TranscriptionResult:
    """Recognizer output for one buffer of 16 kHz mono PCM16."""

    transcript: str
    confidence: float = 0.0
    is_final: bool = True
    alternatives: Tuple[TranscriptionAlternative, ...] = ()


@dataclass(frozen=True)
class SynthesisResult:
    """Synthesized speech as PCM16."""

    audio: bytes
    sample_rate: int = 44100
    channels: int = 1


class SpeechRecognizer(Protocol):
    """Speech-to-text service."""

    async def transcribe(
        self, audio: bytes, sample_rate: int
    ) -> Optional[TranscriptionResult]:
        """Return a transcript, or None when nothing was recognized."""
        raise NotImplementedError


class SpeechSynthesizer(Protocol):
    """Text-to-speech service."""

    async def synthesize(self, text: str) -> SynthesisResult:
        raise NotImplementedError


class CompletionBackend(Protocol):
    """Produces an assistant reply from a chat transcript."""

    async def complete(self, messages: List[Dict[str, str]]) -> Optional[str]:
        raise NotImplementedError


class ReplyGenerator(Protocol):
    """Given user text and its session, returns the reply text or None."""

    async def generate_reply(self, text: str, session_id: str) -> Optional[str]:
        raise NotImplementedError
