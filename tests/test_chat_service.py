import asyncio

import pytest

from voice_server.backend.application.chat_service import ChatService
from voice_server.backend.application.chat_store import (
    ChatSessionStore,
    InMemoryKeyValueStore,
)
from voice_server.backend.runtime.config import ChatRuntimeConfig
from voice_server.backend.runtime.metrics import Metrics
from voice_server.errors import ErrorCode, RateLimitExceededError, VoiceError


def _service(backend, **config):
    chat_config = ChatRuntimeConfig(**config)
    store = ChatSessionStore(InMemoryKeyValueStore(), chat_config)
    metrics = Metrics()
    return ChatService(store, backend, chat_config, metrics=metrics), store, metrics


def test_chat_returns_reply_and_allowance(completion_backend):
    """Test a first message creates the session and reports the allowance."""
    service, store, metrics = _service(completion_backend)

    reply = asyncio.run(service.chat("hello", "s1"))

    payload = reply.to_payload()
    assert payload["message"] == "assistant reply"
    assert payload["sessionId"] == "s1"
    assert payload["rateLimitInfo"]["remaining"] == 4
    assert payload["rateLimitInfo"]["resetTime"] > 0
    assert store.get_session("s1").message_count == 2
    assert metrics.render()["chat_replies_total"] == 1


def test_history_is_sent_without_duplicating_current_message(completion_backend):
    """Test the backend sees prior turns once plus the new user message."""
    service, _, _ = _service(completion_backend, system_prompt="be brief")

    async def scenario():
        await service.chat("first", "s1")
        await service.chat("second", "s1")

    asyncio.run(scenario())

    assert completion_backend.requests[1] == [
        {"role": "system", "content": "be brief"},
        {"role": "user", "content": "first"},
        {"role": "assistant", "content": "assistant reply"},
        {"role": "user", "content": "second"},
    ]


def test_history_limit_trims_older_messages(completion_backend):
    """Test only the most recent messages are forwarded."""
    service, _, _ = _service(completion_backend, history_limit=2)

    async def scenario():
        for text in ("one", "two", "three"):
            await service.chat(text, "s1")

    asyncio.run(scenario())

    last = completion_backend.requests[-1]
    assert [m["content"] for m in last[1:]] == ["two", "assistant reply", "three"]


def test_rate_limit_blocks_without_storing_messages(completion_backend):
    """Test the window limit raises with remaining=0 and stores nothing new."""
    service, store, metrics = _service(completion_backend, max_messages_per_window=2)

    async def scenario():
        await service.chat("one", "s1")
        await service.chat("two", "s1")
        await service.chat("three", "s1")

    with pytest.raises(RateLimitExceededError) as excinfo:
        asyncio.run(scenario())

    assert excinfo.value.code is ErrorCode.CHAT_RATE_LIMITED
    assert excinfo.value.remaining == 0
    assert excinfo.value.rate_limit_info()["resetTime"] == excinfo.value.reset_time
    assert len(completion_backend.requests) == 2
    assert store.get_session("s1").message_count == 4
    assert metrics.render()["rate_limit_blocks"] == {"chat": 1}


def test_empty_message_is_rejected(completion_backend):
    """Test blank input raises a request error."""
    service, _, _ = _service(completion_backend)
    with pytest.raises(VoiceError) as excinfo:
        asyncio.run(service.chat("   ", "s1"))
    assert excinfo.value.code is ErrorCode.CHAT_REQUEST_INVALID
    assert completion_backend.requests == []


def test_empty_backend_output(completion_backend):
    """Test chat raises on empty output while generate_reply returns None."""
    completion_backend.reply = None
    service, store, _ = _service(completion_backend)

    with pytest.raises(VoiceError) as excinfo:
        asyncio.run(service.chat("hello", "s1"))
    assert excinfo.value.code is ErrorCode.REPLY_FAILED

    assert asyncio.run(service.generate_reply("again", "s1")) is None
    roles = [m.role for m in store.get_messages("s1")]
    assert roles == ["user", "user"]
