"""Per-session audio accumulation with a single-flight processing guard."""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional

from voice_server.errors import AudioValidationError
from voice_server.utils import audio
from voice_server.utils.audio import AudioFormat
from voice_server.utils.logger import LOGGER

DEFAULT_STATS_WINDOW = 10


@dataclass(frozen=True)
class AudioChunk:
    """One validated unit of captured audio."""

    data: bytes
    received_at: float
    format: AudioFormat

    @property
    def duration_ms(self) -> float:
        return audio.get_duration(
            self.data, self.format.sample_rate, self.format.channels
        )


@dataclass(frozen=True)
class ChunkValidation:
    """Thresholds applied to every inbound chunk."""

    min_bytes: int = 100
    min_unique_bytes: int = 10


@dataclass
class SessionStats:
    """Rolling statistics for one session."""

    total_chunks: int = 0
    total_duration_ms: float = 0.0
    average_chunk_size: float = 0.0
    rejected_chunks: int = 0
    cycles: int = 0
    processing_times_ms: Deque[float] = field(
        default_factory=lambda: deque(maxlen=DEFAULT_STATS_WINDOW)
    )

    def record_chunk(self, chunk: AudioChunk) -> None:
        self.total_chunks += 1
        self.total_duration_ms += chunk.duration_ms
        self.average_chunk_size = (
            self.average_chunk_size * (self.total_chunks - 1) + len(chunk.data)
        ) / self.total_chunks

    def record_processing_time(self, elapsed_ms: float) -> None:
        self.cycles += 1
        self.processing_times_ms.append(elapsed_ms)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "totalChunks": self.total_chunks,
            "totalDuration": self.total_duration_ms,
            "averageChunkSize": self.average_chunk_size,
            "rejectedChunks": self.rejected_chunks,
            "cycles": self.cycles,
            "processingTimes": list(self.processing_times_ms),
        }


class SessionAudioBuffer:
    """Chunk list, stats and processing flag owned by exactly one session.

    A cycle marks the chunks present when it begins; ``drain_and_end_processing``
    removes only those, so chunks appended while the cycle runs stay buffered
    for the next one.
    """

    def __init__(
        self,
        session_id: str,
        audio_format: AudioFormat | None = None,
        validation: ChunkValidation | None = None,
        stats_window: int = DEFAULT_STATS_WINDOW,
        time_fn: Callable[[], float] | None = None,
    ) -> None:
        self.session_id = session_id
        self.audio_format = audio_format or AudioFormat()
        self._validation = validation or ChunkValidation()
        self._time_fn = time_fn or time.time
        self._lock = threading.Lock()
        self._chunks: List[AudioChunk] = []
        self._processing = False
        self._inflight = 0
        self._closed = False
        self.created_at = self._time_fn()
        self.last_activity = self.created_at
        self.stats = SessionStats(
            processing_times_ms=deque(maxlen=max(1, int(stats_window)))
        )

    def append(self, data: bytes) -> AudioChunk:
        """Validate and buffer a chunk; raises ``AudioValidationError`` on rejection."""
        try:
            audio.validate_pcm16_chunk(
                data,
                min_bytes=self._validation.min_bytes,
                min_unique_bytes=self._validation.min_unique_bytes,
                channels=self.audio_format.channels,
            )
        except AudioValidationError:
            with self._lock:
                self.stats.rejected_chunks += 1
            raise
        chunk = AudioChunk(
            data=bytes(data), received_at=self._time_fn(), format=self.audio_format
        )
        with self._lock:
            self._chunks.append(chunk)
            self.stats.record_chunk(chunk)
            self.last_activity = chunk.received_at
        return chunk

    def touch(self) -> None:
        with self._lock:
            self.last_activity = self._time_fn()

    def set_format(self, audio_format: AudioFormat) -> None:
        with self._lock:
            self.audio_format = audio_format

    def total_duration_ms(self) -> float:
        """Duration of buffered chunks not yet drained by a cycle."""
        with self._lock:
            return sum(chunk.duration_ms for chunk in self._chunks)

    def buffered_chunk_count(self) -> int:
        with self._lock:
            return len(self._chunks)

    @property
    def is_processing(self) -> bool:
        with self._lock:
            return self._processing

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def try_begin_processing(self) -> bool:
        """Acquire the processing flag; False if a cycle already holds it."""
        with self._lock:
            if self._processing or self._closed:
                return False
            self._processing = True
            self._inflight = len(self._chunks)
            return True

    def pending_audio(self) -> bytes:
        """Merged audio claimed by the running cycle."""
        with self._lock:
            claimed = list(self._chunks[: self._inflight])
        return audio.merge_chunks(chunk.data for chunk in claimed)

    def drain_and_end_processing(self) -> bytes:
        """Drop the claimed chunks, release the flag and return what was drained."""
        with self._lock:
            consumed = self._chunks[: self._inflight]
            del self._chunks[: self._inflight]
            self._inflight = 0
            self._processing = False
        return audio.merge_chunks(chunk.data for chunk in consumed)

    def record_processing_time(self, elapsed_ms: float) -> None:
        with self._lock:
            self.stats.record_processing_time(elapsed_ms)

    def stats_snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return self.stats.snapshot()

    def clear(self) -> None:
        """Drop buffered audio and refuse further cycles."""
        with self._lock:
            self._chunks.clear()
            self._inflight = 0
            self._processing = False
            self._closed = True


def _noop_buffer_hook(_: SessionAudioBuffer) -> None:
    return None


@dataclass(frozen=True)
class SessionBufferHooks:
    """Callbacks invoked on session buffer create/remove."""

    on_create: Callable[[SessionAudioBuffer], None] = _noop_buffer_hook
    on_remove: Callable[[SessionAudioBuffer], None] = _noop_buffer_hook


class SessionBufferRegistry:
    """Thread-safe map of session id to its ``SessionAudioBuffer``."""

    def __init__(
        self,
        default_format: AudioFormat | None = None,
        validation: ChunkValidation | None = None,
        stats_window: int = DEFAULT_STATS_WINDOW,
        hooks: SessionBufferHooks | None = None,
        time_fn: Callable[[], float] | None = None,
    ) -> None:
        self._default_format = default_format or AudioFormat()
        self._validation = validation or ChunkValidation()
        self._stats_window = stats_window
        self._hooks = hooks or SessionBufferHooks()
        self._time_fn = time_fn
        self._lock = threading.Lock()
        self._buffers: Dict[str, SessionAudioBuffer] = {}

    def get_or_create(
        self, session_id: str, audio_format: AudioFormat | None = None
    ) -> SessionAudioBuffer:
        created = False
        with self._lock:
            buffer = self._buffers.get(session_id)
            if buffer is None:
                buffer = SessionAudioBuffer(
                    session_id,
                    audio_format or self._default_format,
                    validation=self._validation,
                    stats_window=self._stats_window,
                    time_fn=self._time_fn,
                )
                self._buffers[session_id] = buffer
                created = True
        if created:
            LOGGER.debug("Created audio buffer for session %s", session_id)
            self._hooks.on_create(buffer)
        elif audio_format is not None:
            buffer.set_format(audio_format)
        return buffer

    def get(self, session_id: str) -> Optional[SessionAudioBuffer]:
        with self._lock:
            return self._buffers.get(session_id)

    def append(self, session_id: str, data: bytes) -> AudioChunk:
        return self.get_or_create(session_id).append(data)

    def total_duration(self, session_id: str) -> float:
        buffer = self.get(session_id)
        return buffer.total_duration_ms() if buffer else 0.0

    def try_begin_processing(self, session_id: str) -> bool:
        buffer = self.get(session_id)
        return buffer.try_begin_processing() if buffer else False

    def drain_and_end_processing(self, session_id: str) -> bytes:
        buffer = self.get(session_id)
        return buffer.drain_and_end_processing() if buffer else b""

    def clear(self, session_id: str) -> Optional[SessionAudioBuffer]:
        """Tear down a session; later calls for the same id are no-ops."""
        with self._lock:
            buffer = self._buffers.pop(session_id, None)
        if buffer is None:
            return None
        buffer.clear()
        self._hooks.on_remove(buffer)
        return buffer

    def session_ids(self) -> List[str]:
        with self._lock:
            return list(self._buffers)

    def buffers(self) -> List[SessionAudioBuffer]:
        with self._lock:
            return list(self._buffers.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffers)


__all__ = [
    "AudioChunk",
    "ChunkValidation",
    "SessionAudioBuffer",
    "SessionBufferHooks",
    "SessionBufferRegistry",
    "SessionStats",
]
