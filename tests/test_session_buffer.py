import threading

import pytest

from voice_server.backend.component.session_buffer import (
    ChunkValidation,
    SessionAudioBuffer,
    SessionBufferHooks,
    SessionBufferRegistry,
)
from voice_server.errors import AudioValidationError, ErrorCode
from voice_server.utils.audio import AudioFormat


def test_append_tracks_duration_and_stats(pcm):
    """Test accepted chunks update duration and rolling stats."""
    buffer = SessionAudioBuffer("s1")
    buffer.append(pcm(200))
    buffer.append(pcm(100, seed=1))

    assert buffer.total_duration_ms() == pytest.approx(300.0)
    stats = buffer.stats_snapshot()
    assert stats["totalChunks"] == 2
    assert stats["totalDuration"] == pytest.approx(300.0)
    assert stats["averageChunkSize"] == pytest.approx((6400 + 3200) / 2)


def test_rejected_chunk_is_counted_and_not_buffered():
    """Test validation failures leave the buffer untouched."""
    buffer = SessionAudioBuffer("s1", validation=ChunkValidation(min_bytes=100))
    with pytest.raises(AudioValidationError) as excinfo:
        buffer.append(bytes(range(40)))
    assert excinfo.value.code is ErrorCode.AUDIO_TOO_SMALL
    assert buffer.buffered_chunk_count() == 0
    assert buffer.stats_snapshot()["rejectedChunks"] == 1


def test_stereo_buffer_rejects_partial_frames(pcm):
    """Test a stereo session rejects chunks that split a frame."""
    buffer = SessionAudioBuffer("s1", AudioFormat(sample_rate=16000, channels=2))
    with pytest.raises(AudioValidationError) as excinfo:
        buffer.append(pcm(50, channels=2) + b"\x01\x02")
    assert excinfo.value.code is ErrorCode.AUDIO_ODD_LENGTH
    assert buffer.buffered_chunk_count() == 0
    assert buffer.stats_snapshot()["rejectedChunks"] == 1


def test_processing_flag_is_single_flight(pcm):
    """Test the flag cannot be taken twice until released."""
    buffer = SessionAudioBuffer("s1")
    buffer.append(pcm(200))

    assert buffer.try_begin_processing() is True
    assert buffer.try_begin_processing() is False
    buffer.drain_and_end_processing()
    assert buffer.try_begin_processing() is True


def test_processing_flag_under_contention(pcm):
    """Test only one of many concurrent callers acquires the flag."""
    buffer = SessionAudioBuffer("s1")
    buffer.append(pcm(200))
    barrier = threading.Barrier(8)
    results = []
    lock = threading.Lock()

    def worker():
        barrier.wait()
        acquired = buffer.try_begin_processing()
        with lock:
            results.append(acquired)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=2.0)

    assert results.count(True) == 1


def test_chunks_appended_mid_cycle_survive_drain(pcm):
    """Test draining removes only the chunks claimed by the cycle."""
    buffer = SessionAudioBuffer("s1")
    first = pcm(200)
    late = pcm(100, seed=3)
    buffer.append(first)
    assert buffer.try_begin_processing()
    buffer.append(late)

    assert buffer.pending_audio() == first
    drained = buffer.drain_and_end_processing()

    assert drained == first
    assert buffer.buffered_chunk_count() == 1
    assert buffer.total_duration_ms() == pytest.approx(100.0)
    assert buffer.is_processing is False


def test_processing_times_keep_last_window():
    """Test only the most recent processing times are retained."""
    buffer = SessionAudioBuffer("s1", stats_window=10)
    for value in range(12):
        buffer.record_processing_time(float(value))
    stats = buffer.stats_snapshot()
    assert stats["processingTimes"] == [float(v) for v in range(2, 12)]
    assert stats["cycles"] == 12


def test_cleared_buffer_refuses_cycles(pcm):
    """Test a cleared session cannot start another cycle."""
    buffer = SessionAudioBuffer("s1")
    buffer.append(pcm(200))
    buffer.clear()
    assert buffer.buffered_chunk_count() == 0
    assert buffer.try_begin_processing() is False


def test_registry_hooks_and_idempotent_clear(pcm):
    """Test create/remove hooks fire once and clear is idempotent."""
    created, removed = [], []
    registry = SessionBufferRegistry(
        hooks=SessionBufferHooks(
            on_create=lambda buf: created.append(buf.session_id),
            on_remove=lambda buf: removed.append(buf.session_id),
        )
    )
    registry.append("s1", pcm(100))
    registry.append("s1", pcm(100, seed=2))
    assert created == ["s1"]
    assert registry.total_duration("s1") == pytest.approx(200.0)
    assert registry.try_begin_processing("s1") is True
    assert registry.try_begin_processing("missing") is False

    assert registry.clear("s1") is not None
    assert registry.clear("s1") is None
    assert removed == ["s1"]
    assert len(registry) == 0
    assert registry.drain_and_end_processing("s1") == b""
