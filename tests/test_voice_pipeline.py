import asyncio
import time

import pytest

from voice_server.backend.application.chat_service import ChatService
from voice_server.backend.application.chat_store import (
    ChatSessionStore,
    InMemoryKeyValueStore,
)
from voice_server.backend.application.voice_pipeline import PipelinePhase, VoicePipeline
from voice_server.backend.runtime.config import ChatRuntimeConfig, PipelineRuntimeConfig
from voice_server.backend.runtime.metrics import Metrics
from voice_server.errors import AudioValidationError, ErrorCode, VoiceError
from voice_server.services.http import EchoCompletionBackend
from voice_server.utils.audio import AudioFormat


def _pipeline(recognizer, reply_generator, synthesizer, **config):
    metrics = Metrics()
    pipeline = VoicePipeline(
        recognizer,
        reply_generator,
        synthesizer,
        config=PipelineRuntimeConfig(**config),
        metrics=metrics,
    )
    return pipeline, metrics


def test_third_chunk_triggers_exactly_one_cycle(pcm, recognizer, reply_generator, synthesizer):
    """Test 3 x 200 ms chunks run one cycle on the third chunk."""
    pipeline, metrics = _pipeline(recognizer, reply_generator, synthesizer)

    async def scenario():
        results = []
        for seed in range(3):
            results.append(await pipeline.process_chunk("s1", pcm(200, seed=seed)))
        return results

    first, second, third = asyncio.run(scenario())

    assert first is None and second is None
    assert third is not None and third.ok
    assert len(recognizer.calls) == 1
    audio_in, rate = recognizer.calls[0]
    assert rate == 16000
    assert len(audio_in) == 3 * 6400
    assert third.transcript == "hello"
    assert third.confidence == pytest.approx(0.9)
    assert third.reply == "hi there"
    assert reply_generator.calls == [("hello", "s1")]
    assert synthesizer.calls == ["hi there"]
    # 50 ms lead silence at 44.1 kHz + 100 ms of 22.05 kHz speech upsampled.
    assert third.sample_rate == 44100
    assert len(third.audio) == 2205 * 2 + 4410 * 2
    assert third.audio[: 2205 * 2] == bytes(2205 * 2)
    assert pipeline.phase("s1") is PipelinePhase.IDLE

    payload = metrics.render()
    assert payload["chunks_received_total"] == 3
    assert payload["cycles_total"] == 1
    assert payload["transcripts_total"] == 1
    assert payload["audio_responses_total"] == 1
    assert payload["processing_sessions"] == 0


def test_null_reply_delivers_transcript_without_audio(pcm, recognizer, reply_generator, synthesizer):
    """Test a None reply yields a transcript-only result."""
    reply_generator.reply = None
    pipeline, _ = _pipeline(recognizer, reply_generator, synthesizer, min_process_ms=100)

    result = asyncio.run(pipeline.process_chunk("s1", pcm(200)))

    assert result.ok
    assert result.transcript == "hello"
    assert result.reply is None
    assert result.audio is None
    assert synthesizer.calls == []


def test_empty_transcript_skips_reply(pcm, recognizer, reply_generator, synthesizer):
    """Test no speech recognized means no reply is requested."""
    recognizer.transcript = None
    pipeline, _ = _pipeline(recognizer, reply_generator, synthesizer, min_process_ms=100)

    result = asyncio.run(pipeline.process_chunk("s1", pcm(200)))

    assert result.ok
    assert result.transcript == ""
    assert reply_generator.calls == []


def test_rate_limited_reply_surfaces_allowance(pcm, recognizer, synthesizer):
    """Test rate limiting yields remaining=0, a future reset and no stored reply."""
    chat_config = ChatRuntimeConfig(max_messages_per_window=1)
    store = ChatSessionStore(InMemoryKeyValueStore(), chat_config)
    chat = ChatService(store, EchoCompletionBackend(), chat_config)
    pipeline, _ = _pipeline(recognizer, chat, synthesizer, min_process_ms=100)

    async def scenario():
        first = await pipeline.process_chunk("s1", pcm(200))
        second = await pipeline.process_chunk("s1", pcm(200, seed=1))
        return first, second

    before_ms = int(time.time() * 1000)
    first, second = asyncio.run(scenario())

    assert first.ok and first.reply == "You said: hello"
    assert second.error_code is ErrorCode.CHAT_RATE_LIMITED
    assert second.error_fields["remaining"] == 0
    assert second.error_fields["resetTime"] > before_ms
    assert second.transcript == "hello"
    assert second.audio is None
    roles = [message.role for message in store.get_messages("s1")]
    assert roles == ["user", "assistant"]


def test_recognizer_failure_releases_guard(pcm, recognizer, reply_generator, synthesizer):
    """Test a failing recognizer returns an error and frees the session."""
    recognizer.error = RuntimeError("upstream down")
    pipeline, metrics = _pipeline(recognizer, reply_generator, synthesizer, min_process_ms=100)

    result = asyncio.run(pipeline.process_chunk("s1", pcm(200)))

    assert result.error_code is ErrorCode.RECOGNITION_FAILED
    assert result.transcript == ""
    assert result.confidence == 0.0
    buffer = pipeline.buffers.get("s1")
    assert buffer.is_processing is False
    assert buffer.buffered_chunk_count() == 0
    assert buffer.try_begin_processing() is True
    assert metrics.render()["error_counts"] == {ErrorCode.RECOGNITION_FAILED.value: 1}


def test_reply_and_synthesis_failures_keep_partial_output(pcm, recognizer, reply_generator, synthesizer):
    """Test later-stage failures still carry the transcript."""
    reply_generator.error = VoiceError(ErrorCode.REPLY_FAILED, "no reply")
    pipeline, _ = _pipeline(recognizer, reply_generator, synthesizer, min_process_ms=100)
    result = asyncio.run(pipeline.process_chunk("s1", pcm(200)))
    assert result.error_code is ErrorCode.REPLY_FAILED
    assert result.transcript == "hello"

    reply_generator.error = None
    synthesizer.error = RuntimeError("tts down")
    result = asyncio.run(pipeline.process_chunk("s2", pcm(200)))
    assert result.error_code is ErrorCode.SYNTHESIS_FAILED
    assert result.transcript == "hello"
    assert result.reply == "hi there"
    assert result.audio is None


def test_rejected_chunks_never_reach_recognizer(recognizer, reply_generator, synthesizer):
    """Test invalid chunks are refused without touching downstream services."""
    pipeline, metrics = _pipeline(recognizer, reply_generator, synthesizer, min_process_ms=0)

    with pytest.raises(AudioValidationError):
        pipeline.ingest("s1", bytes(400))

    assert recognizer.calls == []
    assert pipeline.get_session_stats("s1")["rejectedChunks"] == 1
    assert metrics.render()["chunks_rejected_total"] == 1


def test_chunks_arriving_during_cycle_wait_for_next(pcm, recognizer, reply_generator, synthesizer):
    """Test appends during a cycle are kept and no second cycle starts."""
    pipeline, metrics = _pipeline(recognizer, reply_generator, synthesizer, min_process_ms=200)

    async def scenario():
        recognizer.gate = asyncio.Event()
        outcome = pipeline.ingest("s1", pcm(200))
        assert outcome.cycle_ready
        task = asyncio.create_task(pipeline.run_cycle(outcome.buffer))
        await asyncio.sleep(0)
        assert pipeline.phase("s1") is PipelinePhase.PROCESSING
        late = pipeline.ingest("s1", pcm(300, seed=5))
        assert late.cycle_ready is False
        recognizer.gate.set()
        return await task

    result = asyncio.run(scenario())

    assert result.ok
    assert len(recognizer.calls) == 1
    assert len(recognizer.calls[0][0]) == 6400
    assert pipeline.buffers.get("s1").buffered_chunk_count() == 1
    assert pipeline.phase("s1") is PipelinePhase.ACCUMULATING
    assert metrics.render()["cycles_deferred_total"] == 1


def test_stale_cycle_cannot_touch_recreated_session(pcm, recognizer, reply_generator, synthesizer):
    """Test a cycle claimed before a clear never runs on the session that replaced it."""
    pipeline, metrics = _pipeline(recognizer, reply_generator, synthesizer)

    stale = pipeline.ingest("s1", pcm(600))
    pipeline.clear_session("s1")
    fresh = pipeline.ingest("s1", pcm(600, seed=3))
    assert stale.cycle_ready and fresh.cycle_ready
    assert stale.buffer is not fresh.buffer

    async def scenario():
        return await asyncio.gather(
            pipeline.run_cycle(stale.buffer), pipeline.run_cycle(fresh.buffer)
        )

    stale_result, fresh_result = asyncio.run(scenario())

    assert stale_result.error_code is ErrorCode.SESSION_NOT_FOUND
    assert stale_result.transcript == ""
    assert fresh_result.ok
    assert len(recognizer.calls) == 1
    assert fresh.buffer.is_processing is False
    assert fresh.buffer.buffered_chunk_count() == 0
    assert metrics.render()["processing_sessions"] == 0


def test_stereo_session_rejects_partial_frames(pcm, recognizer, reply_generator, synthesizer):
    """Test a stereo session refuses chunks that end mid-frame."""
    pipeline, _ = _pipeline(recognizer, reply_generator, synthesizer)
    pipeline.open_session("s1", AudioFormat(sample_rate=16000, channels=2))

    with pytest.raises(AudioValidationError) as excinfo:
        pipeline.ingest("s1", pcm(100)[:-2])

    assert excinfo.value.code is ErrorCode.AUDIO_ODD_LENGTH
    assert pipeline.buffers.get("s1").buffered_chunk_count() == 0
    assert pipeline.ingest("s1", pcm(100, channels=2)).chunk is not None


def test_optimize_for_recognition_downmixes_and_resamples(pcm, recognizer, reply_generator, synthesizer):
    """Test stereo 48 kHz capture becomes 16 kHz mono."""
    pipeline, _ = _pipeline(recognizer, reply_generator, synthesizer)
    stereo = pcm(100, sample_rate=48000, channels=2)

    prepared = pipeline.optimize_for_recognition(stereo, AudioFormat(48000, 2))

    assert len(prepared) == 1600 * 2


def test_session_format_drives_recognition_input(pcm, recognizer, reply_generator, synthesizer):
    """Test a declared 8 kHz format is upsampled before recognition."""
    pipeline, _ = _pipeline(recognizer, reply_generator, synthesizer, min_process_ms=100)
    pipeline.open_session("s1", AudioFormat(sample_rate=8000, channels=1))

    result = asyncio.run(pipeline.process_chunk("s1", pcm(200, sample_rate=8000)))

    assert result.ok
    assert len(recognizer.calls[0][0]) == 3200 * 2


def test_stats_and_clear_session(pcm, recognizer, reply_generator, synthesizer):
    """Test aggregate/session stats and teardown."""
    pipeline, metrics = _pipeline(recognizer, reply_generator, synthesizer)
    pipeline.ingest("s1", pcm(100))
    pipeline.ingest("s2", pcm(100))

    stats = pipeline.get_stats()
    assert stats["activeSessions"] == 2
    assert stats["totalChunks"] == 2
    assert set(stats["sessionStats"]) == {"s1", "s2"}
    assert pipeline.get_session_stats("s1")["phase"] == "accumulating"
    assert metrics.render()["active_sessions"] == 2

    pipeline.clear_session("s1")
    pipeline.clear_session("s1")
    assert pipeline.get_session_stats("s1") is None
    assert pipeline.phase("s1") is PipelinePhase.IDLE
    assert metrics.render()["active_sessions"] == 1


def test_self_test_runs_tone_through_cycle(recognizer, reply_generator, synthesizer):
    """Test the built-in self test succeeds with healthy services."""
    pipeline, _ = _pipeline(recognizer, reply_generator, synthesizer)

    assert asyncio.run(pipeline.self_test()) is True
    assert len(recognizer.calls) == 1
    assert pipeline.get_stats()["activeSessions"] == 0


def test_self_test_reports_failure(recognizer, reply_generator, synthesizer):
    """Test the self test fails when recognition fails."""
    recognizer.error = RuntimeError("boom")
    pipeline, _ = _pipeline(recognizer, reply_generator, synthesizer)

    assert asyncio.run(pipeline.self_test()) is False
