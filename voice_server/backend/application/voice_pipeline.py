"""Voice processing pipeline: accumulate, recognize, reply, synthesize."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from voice_server.backend.component.session_buffer import (
    AudioChunk,
    ChunkValidation,
    SessionAudioBuffer,
    SessionBufferHooks,
    SessionBufferRegistry,
)
from voice_server.backend.runtime.config import PipelineRuntimeConfig
from voice_server.backend.runtime.metrics import Metrics
from voice_server.errors import (
    AudioValidationError,
    ErrorCode,
    RateLimitExceededError,
    VoiceError,
    spec_for,
)
from voice_server.services.base import (
    ReplyGenerator,
    SpeechRecognizer,
    SpeechSynthesizer,
)
from voice_server.utils import audio
from voice_server.utils.audio import RECOGNITION_FORMAT, AudioFormat
from voice_server.utils.logger import (
    LOGGER,
    TRANSCRIPT_LOGGER,
    clear_session_id,
    set_session_id,
)

SELF_TEST_SESSION_ID = "self-test"


class PipelinePhase(str, Enum):
    """Where a session sits between cycles."""

    IDLE = "idle"
    ACCUMULATING = "accumulating"
    PROCESSING = "processing"


@dataclass
class ProcessingResult:
    """Outcome of one processing cycle.

    A cycle can end early and still carry partial output: a transcript
    without reply audio, or an error next to the transcript it produced.
    """

    session_id: str
    transcript: str = ""
    confidence: float = 0.0
    reply: Optional[str] = None
    audio: Optional[bytes] = None
    sample_rate: int = 0
    processing_time_ms: float = 0.0
    error_code: Optional[ErrorCode] = None
    error_detail: Optional[str] = None
    error_fields: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.error_code is None

    def fail(self, error: VoiceError, **fields: Any) -> "ProcessingResult":
        self.error_code = error.code
        self.error_detail = error.detail
        self.error_fields.update(fields)
        return self

    @property
    def error_message(self) -> Optional[str]:
        if self.error_code is None:
            return None
        return self.error_detail or spec_for(self.error_code).message


@dataclass(frozen=True)
class IngestOutcome:
    """Result of buffering one inbound chunk.

    When ``cycle_ready`` is set, ``buffer`` is the session state whose
    processing flag was claimed; pass it to ``run_cycle``.
    """

    chunk: AudioChunk
    buffered_ms: float
    cycle_ready: bool
    buffer: SessionAudioBuffer


class VoicePipeline:
    """Owns per-session audio buffers and drives their processing cycles.

    ``ingest`` buffers a chunk and, once enough audio is queued, claims the
    session's processing flag; the caller then runs ``run_cycle`` (typically
    as a task) while further chunks keep arriving. Only the claimed chunks
    are consumed by that cycle.
    """

    def __init__(
        self,
        recognizer: SpeechRecognizer,
        reply_generator: ReplyGenerator,
        synthesizer: SpeechSynthesizer,
        config: PipelineRuntimeConfig | None = None,
        metrics: Metrics | None = None,
    ) -> None:
        self._recognizer = recognizer
        self._reply_generator = reply_generator
        self._synthesizer = synthesizer
        self._config = config or PipelineRuntimeConfig()
        self._metrics = metrics
        self._capture_format = AudioFormat(
            sample_rate=self._config.sample_rate, channels=self._config.channels
        )
        self._buffers = SessionBufferRegistry(
            default_format=self._capture_format,
            validation=ChunkValidation(
                min_bytes=self._config.min_chunk_bytes,
                min_unique_bytes=self._config.min_unique_bytes,
            ),
            stats_window=self._config.stats_window,
            hooks=SessionBufferHooks(
                on_create=self._on_buffer_created,
                on_remove=self._on_buffer_removed,
            ),
        )

    @property
    def config(self) -> PipelineRuntimeConfig:
        return self._config

    @property
    def buffers(self) -> SessionBufferRegistry:
        return self._buffers

    def open_session(
        self, session_id: str, audio_format: AudioFormat | None = None
    ) -> SessionAudioBuffer:
        """Create the session state if missing; optionally update its capture format."""
        return self._buffers.get_or_create(session_id, audio_format)

    def clear_session(self, session_id: str) -> None:
        """Drop buffered audio, processing flag and stats for a session."""
        if self._buffers.clear(session_id) is not None:
            LOGGER.info("Session %s cleared", session_id)

    def phase(self, session_id: str) -> PipelinePhase:
        buffer = self._buffers.get(session_id)
        if buffer is None:
            return PipelinePhase.IDLE
        if buffer.is_processing:
            return PipelinePhase.PROCESSING
        if buffer.buffered_chunk_count():
            return PipelinePhase.ACCUMULATING
        return PipelinePhase.IDLE

    def ingest(self, session_id: str, data: bytes) -> IngestOutcome:
        """Buffer a chunk and report whether a cycle was claimed for it.

        Raises ``AudioValidationError`` for rejected chunks; the session keeps
        its buffered audio.
        """
        buffer = self._buffers.get_or_create(session_id)
        try:
            chunk = buffer.append(data)
        except AudioValidationError as exc:
            if self._metrics is not None:
                self._metrics.record_chunk(len(data), accepted=False)
            LOGGER.debug("Rejected chunk (%d bytes): %s", len(data), exc.detail)
            raise
        if self._metrics is not None:
            self._metrics.record_chunk(len(chunk.data), accepted=True)
        buffered_ms = buffer.total_duration_ms()
        cycle_ready = False
        if buffered_ms >= self._config.min_process_ms:
            cycle_ready = buffer.try_begin_processing()
            if cycle_ready:
                if self._metrics is not None:
                    self._metrics.cycle_started()
            elif self._metrics is not None:
                self._metrics.record_cycle_deferred()
        LOGGER.trace(  # type: ignore[attr-defined]
            "Buffered %.1f ms for session %s (cycle_ready=%s)",
            buffered_ms,
            session_id,
            cycle_ready,
        )
        return IngestOutcome(
            chunk=chunk, buffered_ms=buffered_ms, cycle_ready=cycle_ready, buffer=buffer
        )

    async def process_chunk(
        self, session_id: str, data: bytes
    ) -> Optional[ProcessingResult]:
        """Ingest a chunk and run the cycle inline when one was claimed."""
        outcome = self.ingest(session_id, data)
        if not outcome.cycle_ready:
            return None
        return await self.run_cycle(outcome.buffer)

    async def run_cycle(self, buffer: SessionAudioBuffer) -> ProcessingResult:
        """Run one cycle on a buffer whose processing flag the caller claimed.

        Never raises: failures are folded into the returned result, and the
        claimed audio plus the flag are released on every path. A buffer
        cleared before the cycle starts yields ``SESSION_NOT_FOUND`` without
        calling any service.
        """
        session_id = buffer.session_id
        result = ProcessingResult(session_id=session_id)
        set_session_id(session_id)
        started = time.perf_counter()
        try:
            await self._execute_cycle(buffer, result)
        except AudioValidationError as exc:
            LOGGER.warning("Cycle aborted, buffered audio invalid: %s", exc.detail)
            self._reset_result(result).fail(exc)
        except VoiceError as exc:
            LOGGER.error("Cycle failed: %s", exc)
            self._reset_result(result).fail(exc)
        except Exception as exc:
            LOGGER.exception("Unexpected error in processing cycle")
            self._reset_result(result).fail(
                VoiceError(ErrorCode.PIPELINE_UNEXPECTED, f"Failed to process audio: {exc}")
            )
        finally:
            buffer.drain_and_end_processing()
            elapsed_ms = (time.perf_counter() - started) * 1000.0
            result.processing_time_ms = elapsed_ms
            buffer.record_processing_time(elapsed_ms)
            if self._metrics is not None:
                self._metrics.cycle_finished(elapsed_ms / 1000.0, success=result.ok)
                if result.error_code is not None:
                    self._metrics.record_error(result.error_code.value)
            clear_session_id()
        LOGGER.info(
            "Cycle finished in %.1f ms (transcript=%s, audio=%s, error=%s)",
            result.processing_time_ms,
            bool(result.transcript),
            result.audio is not None,
            result.error_code.value if result.error_code else None,
        )
        return result

    async def _execute_cycle(
        self, buffer: SessionAudioBuffer, result: ProcessingResult
    ) -> None:
        if buffer.closed:
            raise VoiceError(
                ErrorCode.SESSION_NOT_FOUND, "Session closed before its cycle ran"
            )
        merged = buffer.pending_audio()
        audio_format = buffer.audio_format
        audio.validate_pcm16_chunk(
            merged,
            min_bytes=self._config.min_chunk_bytes,
            min_unique_bytes=self._config.min_unique_bytes,
            channels=audio_format.channels,
        )
        prepared = self.optimize_for_recognition(merged, audio_format)

        stage_started = time.perf_counter()
        try:
            transcription = await self._recognizer.transcribe(
                prepared, RECOGNITION_FORMAT.sample_rate
            )
        except Exception as exc:
            LOGGER.exception("Recognition failed")
            raise VoiceError(ErrorCode.RECOGNITION_FAILED, str(exc) or None) from exc
        self._record_stage("recognition", stage_started)
        if transcription is None or not transcription.transcript.strip():
            LOGGER.debug("No speech recognized in %d bytes", len(prepared))
            return

        result.transcript = transcription.transcript.strip()
        result.confidence = float(transcription.confidence)
        if self._metrics is not None:
            self._metrics.record_transcript()
        if self._config.log_transcripts:
            TRANSCRIPT_LOGGER.info(
                "transcript (confidence=%.2f): %s", result.confidence, result.transcript
            )

        stage_started = time.perf_counter()
        try:
            reply = await self._reply_generator.generate_reply(
                result.transcript, buffer.session_id
            )
        except RateLimitExceededError as exc:
            result.fail(exc, **exc.rate_limit_info())
            return
        except VoiceError as exc:
            LOGGER.warning("Reply generation failed: %s", exc)
            result.fail(exc)
            return
        except Exception as exc:
            LOGGER.exception("Reply generation failed")
            result.fail(VoiceError(ErrorCode.REPLY_FAILED, str(exc) or None))
            return
        self._record_stage("reply", stage_started)
        if not reply:
            LOGGER.info("No reply generated; delivering transcript only")
            return
        result.reply = reply

        stage_started = time.perf_counter()
        try:
            synthesis = await self._synthesizer.synthesize(reply)
        except Exception as exc:
            LOGGER.exception("Speech synthesis failed")
            result.fail(VoiceError(ErrorCode.SYNTHESIS_FAILED, str(exc) or None))
            return
        self._record_stage("synthesis", stage_started)
        if not synthesis.audio:
            result.fail(VoiceError(ErrorCode.SYNTHESIS_FAILED, "Synthesizer returned no audio"))
            return
        result.audio = self.optimize_for_playback(
            synthesis.audio, synthesis.sample_rate, synthesis.channels
        )
        result.sample_rate = self._config.playback_sample_rate
        if self._metrics is not None:
            self._metrics.record_audio_response()

    def optimize_for_recognition(
        self, buffer: bytes, audio_format: AudioFormat | None = None
    ) -> bytes:
        """Shape captured audio into 16 kHz mono PCM16 for the recognizer."""
        audio_format = audio_format or self._capture_format
        pcm = audio.to_pcm16(buffer)
        if self._config.enable_optimization:
            pcm = audio.normalize_pcm16(pcm, self._config.recognition_level)
        if audio_format.channels != RECOGNITION_FORMAT.channels:
            pcm = audio.convert_channels(
                pcm, audio_format.channels, RECOGNITION_FORMAT.channels
            )
        if audio_format.sample_rate != RECOGNITION_FORMAT.sample_rate:
            pcm = audio.resample(
                pcm, audio_format.sample_rate, RECOGNITION_FORMAT.sample_rate
            )
        return pcm

    def optimize_for_playback(
        self, buffer: bytes, sample_rate: int, channels: int = 1
    ) -> bytes:
        """Normalize synthesized speech and lead it with a short silence."""
        target_rate = self._config.playback_sample_rate
        pcm = audio.to_pcm16(buffer)
        if channels != 1:
            pcm = audio.convert_channels(pcm, channels, 1)
        if sample_rate != target_rate:
            pcm = audio.resample(pcm, sample_rate, target_rate)
        if self._config.enable_optimization:
            pcm = audio.normalize_pcm16(pcm, self._config.playback_level)
        return audio.add_silence(
            pcm,
            self._config.playback_lead_silence_ms,
            target_rate,
            1,
            prepend=True,
        )

    def get_stats(self) -> Dict[str, Any]:
        buffers = self._buffers.buffers()
        return {
            "activeSessions": len(buffers),
            "processingSessions": sum(1 for buffer in buffers if buffer.is_processing),
            "totalChunks": sum(buffer.buffered_chunk_count() for buffer in buffers),
            "sessionStats": {
                buffer.session_id: buffer.stats_snapshot() for buffer in buffers
            },
        }

    def get_session_stats(self, session_id: str) -> Optional[Dict[str, Any]]:
        buffer = self._buffers.get(session_id)
        if buffer is None:
            return None
        snapshot = buffer.stats_snapshot()
        snapshot["phase"] = self.phase(session_id).value
        return snapshot

    async def self_test(self) -> bool:
        """Push one second of a 440 Hz tone through a full cycle."""
        tone = audio.create_test_tone(440, 1000, self._config.sample_rate)
        self.open_session(
            SELF_TEST_SESSION_ID,
            AudioFormat(sample_rate=self._config.sample_rate, channels=1),
        )
        try:
            result = await self.process_chunk(SELF_TEST_SESSION_ID, tone)
        except VoiceError:
            LOGGER.exception("Pipeline self-test rejected the test tone")
            return False
        finally:
            self.clear_session(SELF_TEST_SESSION_ID)
        if result is None:
            LOGGER.error("Pipeline self-test did not trigger a processing cycle")
            return False
        if not result.ok and result.error_code is not ErrorCode.CHAT_RATE_LIMITED:
            LOGGER.error("Pipeline self-test failed: %s", result.error_message)
            return False
        LOGGER.info(
            "Pipeline self-test passed in %.1f ms (transcript=%r)",
            result.processing_time_ms,
            result.transcript,
        )
        return True

    def _record_stage(self, stage: str, started: float) -> None:
        if self._metrics is not None:
            self._metrics.record_stage(stage, time.perf_counter() - started)

    @staticmethod
    def _reset_result(result: ProcessingResult) -> ProcessingResult:
        result.transcript = ""
        result.confidence = 0.0
        result.reply = None
        result.audio = None
        return result

    def _on_buffer_created(self, _buffer: SessionAudioBuffer) -> None:
        if self._metrics is not None:
            self._metrics.increase_active_sessions()

    def _on_buffer_removed(self, _buffer: SessionAudioBuffer) -> None:
        if self._metrics is not None:
            self._metrics.decrease_active_sessions()


__all__ = [
    "IngestOutcome",
    "PipelinePhase",
    "ProcessingResult",
    "SELF_TEST_SESSION_ID",
    "VoicePipeline",
]
