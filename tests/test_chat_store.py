import json

import pytest

from voice_server.backend.application.chat_store import (
    ChatMessage,
    ChatSession,
    ChatSessionStore,
    InMemoryKeyValueStore,
)
from voice_server.backend.runtime.config import ChatRuntimeConfig
from voice_server.errors import ErrorCode, VoiceError

NOW_MS = 1_700_000_000_000


def _store(clock, **config):
    kv = InMemoryKeyValueStore(time_fn=clock, prune_interval_sec=0.0)
    return kv, ChatSessionStore(kv, ChatRuntimeConfig(**config), clock_ms=lambda: NOW_MS)


def test_kv_store_expires_keys(clock):
    """Test values vanish once their ttl elapses."""
    kv = InMemoryKeyValueStore(time_fn=clock)
    kv.set_ex("a", 10, "x")
    assert kv.get("a") == "x"
    assert kv.ttl("a") == 10
    clock.advance(10)
    assert kv.get("a") is None
    assert kv.ttl("a") == -2


def test_kv_store_incr_keeps_expiry(clock):
    """Test incr starts missing keys with a ttl and preserves existing expiry."""
    kv = InMemoryKeyValueStore(time_fn=clock)
    assert kv.incr("counter") == 1
    assert kv.ttl("counter") == -1
    assert kv.incr("window", ttl_if_missing=60) == 1
    clock.advance(20)
    assert kv.incr("window", ttl_if_missing=60) == 2
    assert kv.ttl("window") == 40
    kv.set_ex("text", 5, "abc")
    with pytest.raises(ValueError):
        kv.incr("text")


def test_kv_store_keys_and_delete(clock):
    """Test glob key listing skips expired entries and delete counts removals."""
    kv = InMemoryKeyValueStore(time_fn=clock)
    kv.set_ex("messages:s1:a", 100, "1")
    kv.set_ex("messages:s1:b", 1, "2")
    kv.set_ex("messages:s2:c", 100, "3")
    clock.advance(2)
    assert sorted(kv.keys("messages:s1:*")) == ["messages:s1:a"]
    assert kv.delete("messages:s1:a", "missing") == 1


def test_chat_session_json_round_trip():
    """Test sessions serialize with their messages."""
    session = ChatSession("s1", created_at=1, last_activity=2)
    session.messages.append(ChatMessage(role="user", content="hi", id="m1", timestamp=3))
    restored = ChatSession.from_json(session.to_json())
    assert restored == session


def test_create_and_add_messages(clock):
    """Test messages are kept in order and stored under their own keys."""
    kv, store = _store(clock)
    store.create_session("s1")
    store.add_message("s1", ChatMessage(role="user", content="hello", id="m1"))
    session = store.add_message("s1", ChatMessage(role="assistant", content="hey", id="m2"))

    assert session.message_count == 2
    assert [m.content for m in store.get_messages("s1")] == ["hello", "hey"]
    stored = json.loads(kv.get("messages:s1:m1"))
    assert stored["content"] == "hello"
    assert kv.ttl("messages:s1:m1") == 3600
    assert kv.ttl("chat_session:s1") == 1800


def test_add_message_requires_session(clock):
    """Test writing to an unknown session raises."""
    _, store = _store(clock)
    with pytest.raises(VoiceError) as excinfo:
        store.add_message("missing", ChatMessage(role="user", content="x"))
    assert excinfo.value.code is ErrorCode.SESSION_NOT_FOUND
    assert store.get_messages("missing") == []


def test_rate_limit_window_blocks_and_resets(clock):
    """Test the per-window allowance and its reset time."""
    _, store = _store(clock, max_messages_per_window=2)
    store.create_session("s1")

    status = store.check_rate_limit("s1")
    assert status.allowed and status.remaining == 2
    assert status.reset_time == NOW_MS + 60_000

    store.increment_rate_limit("s1")
    store.increment_rate_limit("s1")
    clock.advance(15)
    blocked = store.check_rate_limit("s1")
    assert blocked.allowed is False
    assert blocked.remaining == 0
    assert blocked.reset_time == NOW_MS + 45_000

    clock.advance(46)
    assert store.check_rate_limit("s1").allowed is True


def test_rate_limit_lifetime_cap(clock):
    """Test the per-session cap outlives window resets."""
    _, store = _store(clock, max_messages_per_window=5, max_messages_per_session=2)
    store.create_session("s1")
    store.increment_rate_limit("s1")
    store.increment_rate_limit("s1")
    clock.advance(61)
    status = store.check_rate_limit("s1")
    assert status.allowed is False
    assert status.remaining == 0


def test_update_activity_refreshes_timestamp(clock):
    """Test activity updates rewrite the session record."""
    kv, store = _store(clock)
    store.create_session("s1")
    clock.advance(100)
    store.update_activity("s1")
    assert kv.ttl("chat_session:s1") == 1800
    assert store.get_session("s1").last_activity == NOW_MS


def test_delete_session_removes_all_keys(clock):
    """Test deletion clears record, counters and per-message keys."""
    kv, store = _store(clock)
    store.create_session("s1")
    store.add_message("s1", ChatMessage(role="user", content="hello", id="m1"))
    store.increment_rate_limit("s1")

    store.delete_session("s1")

    assert store.get_session("s1") is None
    assert kv.keys("*s1*") == []


def test_cleanup_removes_orphaned_counters(clock):
    """Test counters left behind by expired sessions are purged."""
    kv, store = _store(clock)
    store.create_session("live")
    kv.set_ex("rate_limit:orphan", 600, "3")
    kv.set_ex("messages:orphan:m1", 600, "{}")

    assert store.cleanup_expired_sessions() == 1
    assert kv.get("rate_limit:orphan") is None
    assert kv.keys("messages:orphan:*") == []
    assert store.get_session("live") is not None
