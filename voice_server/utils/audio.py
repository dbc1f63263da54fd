"""Stateless PCM transforms shared by the capture and playback paths.

Every function takes and returns ``bytes`` and never mutates its input. Unless
stated otherwise buffers hold 16-bit signed little-endian samples, interleaved
when there is more than one channel.
"""

from __future__ import annotations

import base64
import math
from dataclasses import dataclass
from typing import Iterable, List, Union

import numpy as np

from voice_server.errors import AudioValidationError, ErrorCode
from voice_server.utils.logger import LOGGER

BytesLike = Union[bytes, bytearray, memoryview]

BYTES_PER_SAMPLE = 2  # PCM16
_PCM16_DTYPE = np.dtype("<i2")


@dataclass(frozen=True)
class AudioFormat:
    """Declared layout of a PCM buffer."""

    sample_rate: int = 16000
    channels: int = 1
    bit_depth: int = 16
    encoding: str = "pcm_s16le"

    @property
    def bytes_per_frame(self) -> int:
        return (self.bit_depth // 8) * self.channels


RECOGNITION_FORMAT = AudioFormat(sample_rate=16000, channels=1)


def _round_half_up(values: np.ndarray) -> np.ndarray:
    return np.floor(values + 0.5)


def _samples(buffer: BytesLike) -> np.ndarray:
    return np.frombuffer(bytes(buffer), dtype=_PCM16_DTYPE).astype(np.float64)


def _to_bytes(samples: np.ndarray) -> bytes:
    clipped = np.clip(samples, -32768, 32767)
    return clipped.astype(_PCM16_DTYPE).tobytes()


def _require_aligned(buffer: BytesLike, channels: int = 1) -> None:
    frame_bytes = BYTES_PER_SAMPLE * max(1, channels)
    if len(buffer) % frame_bytes:
        detail = None
        if channels > 1:
            detail = f"Invalid PCM data: buffer length must be a multiple of {frame_bytes} bytes"
        raise AudioValidationError(ErrorCode.AUDIO_ODD_LENGTH, detail)


def resample(buffer: BytesLike, from_rate: int, to_rate: int) -> bytes:
    """Linear-interpolation resampler.

    Output holds ``floor(n / ratio)`` samples with ``ratio = from_rate /
    to_rate``; output sample ``i`` interpolates between the two source samples
    around position ``i * ratio``. Equal rates return the input unchanged.
    """
    if from_rate == to_rate:
        return buffer  # type: ignore[return-value]
    if from_rate <= 0 or to_rate <= 0:
        raise AudioValidationError(
            ErrorCode.AUDIO_FORMAT_INVALID,
            f"sample rates must be positive (got {from_rate} -> {to_rate})",
        )
    _require_aligned(buffer)
    samples = _samples(buffer)
    ratio = from_rate / to_rate
    new_length = int(math.floor(samples.size / ratio))
    if samples.size == 0 or new_length <= 0:
        return b""
    positions = np.arange(new_length, dtype=np.float64) * ratio
    lower = np.floor(positions).astype(np.int64)
    upper = np.minimum(lower + 1, samples.size - 1)
    fraction = positions - lower
    interpolated = samples[lower] * (1.0 - fraction) + samples[upper] * fraction
    return _to_bytes(_round_half_up(interpolated))


def convert_channels(buffer: BytesLike, from_channels: int, to_channels: int) -> bytes:
    """Convert between mono and stereo.

    Mono to stereo duplicates each sample into both slots of a frame; stereo
    to mono averages the pair (rounded half up). Stereo input must hold whole
    frames. Any other pairing raises ``AudioValidationError``.
    """
    if from_channels == to_channels:
        return buffer  # type: ignore[return-value]
    if from_channels == 1 and to_channels == 2:
        _require_aligned(buffer)
        return _to_bytes(np.repeat(_samples(buffer), 2))
    if from_channels == 2 and to_channels == 1:
        _require_aligned(buffer, channels=2)
        frames = _samples(buffer).reshape(-1, 2)
        return _to_bytes(_round_half_up(frames.sum(axis=1) / 2.0))
    raise AudioValidationError(
        ErrorCode.AUDIO_CHANNELS_UNSUPPORTED,
        f"cannot convert {from_channels} channel(s) to {to_channels}",
    )


def to_pcm16(buffer: BytesLike) -> bytes:
    """Return the buffer as 16-bit aligned PCM.

    Even-length input is returned as-is. Odd-length input is zero-padded by
    one byte, which is lossy; chunk validation rejects such buffers before
    they reach the pipeline.
    """
    if len(buffer) == 0:
        raise AudioValidationError(ErrorCode.AUDIO_EMPTY)
    if len(buffer) % BYTES_PER_SAMPLE == 0:
        return bytes(buffer)
    LOGGER.warning("Padding odd-length PCM buffer (%d bytes)", len(buffer))
    return bytes(buffer) + b"\x00"


def bytes_per_window(duration_ms: float, sample_rate: int, channels: int) -> int:
    samples = int(math.floor(sample_rate * duration_ms / 1000))
    return samples * BYTES_PER_SAMPLE * channels


def chunk_audio(
    buffer: BytesLike,
    chunk_duration_ms: float,
    sample_rate: int = 16000,
    channels: int = 1,
) -> List[bytes]:
    """Split a buffer into fixed-duration windows; a short tail is kept."""
    window = bytes_per_window(chunk_duration_ms, sample_rate, channels)
    if window <= 0:
        raise AudioValidationError(
            ErrorCode.AUDIO_FORMAT_INVALID,
            f"chunk of {chunk_duration_ms} ms at {sample_rate} Hz is empty",
        )
    data = bytes(buffer)
    return [data[offset : offset + window] for offset in range(0, len(data), window)]


def merge_chunks(chunks: Iterable[BytesLike]) -> bytes:
    """Concatenate chunks in order."""
    return b"".join(bytes(chunk) for chunk in chunks)


def add_silence(
    buffer: BytesLike,
    silence_ms: float,
    sample_rate: int = 16000,
    channels: int = 1,
    prepend: bool = False,
) -> bytes:
    """Append (or prepend) zero-filled PCM of the given duration."""
    silence = bytes(bytes_per_window(silence_ms, sample_rate, channels))
    if prepend:
        return silence + bytes(buffer)
    return bytes(buffer) + silence


def normalize(buffer: BytesLike, target_level: float = 0.8) -> bytes:
    """Peak-normalize 8-bit unsigned audio around the 128 midpoint.

    Each byte is treated as one unsigned sample; the largest deviation from
    128 is scaled to ``target_level * 128`` and results are clamped to
    [0, 255]. Silent input is returned unchanged.
    """
    raw = np.frombuffer(bytes(buffer), dtype=np.uint8).astype(np.float64)
    if raw.size == 0:
        return bytes(buffer)
    deviation = raw - 128.0
    peak = float(np.max(np.abs(deviation)))
    if peak == 0:
        return bytes(buffer)
    scale = (target_level * 128.0) / peak
    scaled = _round_half_up(deviation * scale + 128.0)
    return np.clip(scaled, 0, 255).astype(np.uint8).tobytes()


def normalize_pcm16(buffer: BytesLike, target_level: float = 0.8) -> bytes:
    """Peak-normalize signed 16-bit PCM so the loudest sample hits ``target_level``."""
    _require_aligned(buffer)
    samples = _samples(buffer)
    if samples.size == 0:
        return bytes(buffer)
    peak = float(np.max(np.abs(samples)))
    if peak == 0:
        return bytes(buffer)
    scale = (target_level * 32767.0) / peak
    return _to_bytes(_round_half_up(samples * scale))


def get_duration(buffer: BytesLike, sample_rate: int = 16000, channels: int = 1) -> float:
    """Duration of a PCM16 buffer in milliseconds."""
    if sample_rate <= 0 or channels <= 0:
        return 0.0
    frames = len(buffer) / (BYTES_PER_SAMPLE * channels)
    return frames / sample_rate * 1000.0


def create_test_tone(
    frequency: float = 440.0, duration_ms: float = 1000, sample_rate: int = 16000
) -> bytes:
    """Sine tone biased into the unsigned 16-bit range [0, 32768]."""
    samples = int(math.floor(sample_rate * duration_ms / 1000))
    t = np.arange(samples, dtype=np.float64) / sample_rate
    values = _round_half_up(np.sin(2 * math.pi * frequency * t) * 16384 + 16384)
    return values.astype("<u2").tobytes()


def pcm16_to_float32(pcm_bytes: BytesLike) -> np.ndarray:
    """PCM16 bytes → float32 numpy array"""
    return np.frombuffer(bytes(pcm_bytes), dtype=_PCM16_DTYPE).astype(np.float32) / 32768.0


def float32_to_pcm16(samples: np.ndarray) -> bytes:
    """Float samples in [-1, 1] → PCM16 bytes (clamped, scaled by 32767)."""
    clipped = np.clip(np.asarray(samples, dtype=np.float64), -1.0, 1.0)
    return _to_bytes(_round_half_up(clipped * 32767.0))


def count_unique_bytes(buffer: BytesLike) -> int:
    if len(buffer) == 0:
        return 0
    return int(np.unique(np.frombuffer(bytes(buffer), dtype=np.uint8)).size)


def validate_pcm16_chunk(
    buffer: BytesLike,
    min_bytes: int = 100,
    min_unique_bytes: int = 10,
    channels: int = 1,
) -> None:
    """Reject buffers that are too small, not whole frames, or degenerate."""
    if len(buffer) < min_bytes:
        raise AudioValidationError(ErrorCode.AUDIO_TOO_SMALL)
    _require_aligned(buffer, channels)
    if count_unique_bytes(buffer) < min_unique_bytes:
        raise AudioValidationError(ErrorCode.AUDIO_DEGENERATE)


def to_base64(buffer: BytesLike) -> str:
    return base64.b64encode(bytes(buffer)).decode("ascii")


def from_base64(data: str) -> bytes:
    return base64.b64decode(data, validate=True)


__all__ = [
    "AudioFormat",
    "BYTES_PER_SAMPLE",
    "RECOGNITION_FORMAT",
    "add_silence",
    "bytes_per_window",
    "chunk_audio",
    "convert_channels",
    "count_unique_bytes",
    "create_test_tone",
    "float32_to_pcm16",
    "from_base64",
    "get_duration",
    "merge_chunks",
    "normalize",
    "normalize_pcm16",
    "pcm16_to_float32",
    "resample",
    "to_base64",
    "to_pcm16",
    "validate_pcm16_chunk",
]
