"""Chat session history and rate-limit counters on an expiring key-value store."""

from __future__ import annotations

import fnmatch
import json
import math
import threading
import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from voice_server.backend.runtime.config import ChatRuntimeConfig
from voice_server.errors import ErrorCode, VoiceError
from voice_server.utils.logger import LOGGER

_SESSION_PREFIX = "chat_session:"
_RATE_LIMIT_PREFIX = "rate_limit:"
_MESSAGE_COUNT_PREFIX = "message_count:"
_MESSAGES_PREFIX = "messages:"


class KeyValueStore(Protocol):
    """Subset of a Redis-style API with per-key expiry."""

    def get(self, key: str) -> Optional[str]: ...

    def set_ex(self, key: str, ttl_sec: float, value: str) -> None: ...

    def incr(self, key: str, ttl_if_missing: Optional[float] = None) -> int: ...

    def ttl(self, key: str) -> int: ...

    def delete(self, *keys: str) -> int: ...

    def keys(self, pattern: str) -> List[str]: ...


class InMemoryKeyValueStore:
    """Process-local expiring store; expired keys are dropped lazily."""

    def __init__(
        self,
        time_fn: Callable[[], float] | None = None,
        prune_interval_sec: float = 60.0,
    ) -> None:
        self._time_fn = time_fn or time.monotonic
        self._lock = threading.Lock()
        # key -> (value, expires_at or None)
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._prune_interval_sec = max(0.0, float(prune_interval_sec))
        self._last_prune = self._time_fn()

    def get(self, key: str) -> Optional[str]:
        now = self._time_fn()
        with self._lock:
            self._prune_if_needed(now)
            entry = self._live_entry(key, now)
            return entry[0] if entry else None

    def set_ex(self, key: str, ttl_sec: float, value: str) -> None:
        now = self._time_fn()
        with self._lock:
            self._data[key] = (value, now + float(ttl_sec))

    def incr(self, key: str, ttl_if_missing: Optional[float] = None) -> int:
        """Increment an integer value, keeping its expiry.

        A missing key starts from zero and expires after ``ttl_if_missing``
        seconds (never, when omitted).
        """
        now = self._time_fn()
        with self._lock:
            entry = self._live_entry(key, now)
            if entry is None:
                expires_at = now + float(ttl_if_missing) if ttl_if_missing else None
                value = 1
            else:
                try:
                    value = int(entry[0]) + 1
                except ValueError as exc:
                    raise ValueError(f"value at {key} is not an integer") from exc
                expires_at = entry[1]
            self._data[key] = (str(value), expires_at)
            return value

    def ttl(self, key: str) -> int:
        """Seconds until expiry; -1 without expiry, -2 when missing."""
        now = self._time_fn()
        with self._lock:
            entry = self._live_entry(key, now)
            if entry is None:
                return -2
            if entry[1] is None:
                return -1
            return int(math.ceil(entry[1] - now))

    def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._data.pop(key, None) is not None:
                    removed += 1
        return removed

    def keys(self, pattern: str) -> List[str]:
        now = self._time_fn()
        with self._lock:
            self._prune(now)
            return [key for key in self._data if fnmatch.fnmatchcase(key, pattern)]

    def _live_entry(
        self, key: str, now: float
    ) -> Optional[Tuple[str, Optional[float]]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry[1] is not None and entry[1] <= now:
            self._data.pop(key, None)
            return None
        return entry

    def _prune_if_needed(self, now: float) -> None:
        if now - self._last_prune < self._prune_interval_sec:
            return
        self._prune(now)

    def _prune(self, now: float) -> None:
        self._last_prune = now
        stale = [
            key
            for key, (_value, expires_at) in self._data.items()
            if expires_at is not None and expires_at <= now
        ]
        for key in stale:
            self._data.pop(key, None)


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class ChatMessage:
    role: str
    content: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: int = field(default_factory=_now_ms)


@dataclass
class ChatSession:
    session_id: str
    created_at: int
    last_activity: int
    message_count: int = 0
    messages: List[ChatMessage] = field(default_factory=list)

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str) -> "ChatSession":
        data = json.loads(raw)
        messages = [ChatMessage(**item) for item in data.pop("messages", [])]
        return cls(messages=messages, **data)


@dataclass(frozen=True)
class RateLimitStatus:
    allowed: bool
    remaining: int
    reset_time: int  # epoch milliseconds


class ChatSessionStore:
    """Chat sessions, message history and rate-limit counters per session."""

    def __init__(
        self,
        store: KeyValueStore,
        config: ChatRuntimeConfig | None = None,
        clock_ms: Callable[[], int] | None = None,
    ) -> None:
        self._store = store
        self._config = config or ChatRuntimeConfig()
        self._clock_ms = clock_ms or _now_ms

    def create_session(self, session_id: str) -> ChatSession:
        now = self._clock_ms()
        session = ChatSession(session_id=session_id, created_at=now, last_activity=now)
        cfg = self._config
        self._store.set_ex(_SESSION_PREFIX + session_id, cfg.session_ttl_sec, session.to_json())
        self._store.set_ex(_RATE_LIMIT_PREFIX + session_id, cfg.rate_limit_window_sec, "0")
        self._store.set_ex(_MESSAGE_COUNT_PREFIX + session_id, cfg.session_ttl_sec, "0")
        LOGGER.info("Chat session created: %s", session_id)
        return session

    def get_session(self, session_id: str) -> Optional[ChatSession]:
        raw = self._store.get(_SESSION_PREFIX + session_id)
        if raw is None:
            return None
        return ChatSession.from_json(raw)

    def add_message(self, session_id: str, message: ChatMessage) -> ChatSession:
        session = self._require_session(session_id)
        session.messages.append(message)
        session.message_count = len(session.messages)
        session.last_activity = self._clock_ms()
        self._store.set_ex(
            _SESSION_PREFIX + session_id, self._config.session_ttl_sec, session.to_json()
        )
        self._store.set_ex(
            f"{_MESSAGES_PREFIX}{session_id}:{message.id}",
            self._config.message_ttl_sec,
            json.dumps(asdict(message)),
        )
        LOGGER.debug(
            "Stored %s message %s (count=%d)",
            message.role,
            message.id,
            session.message_count,
        )
        return session

    def get_messages(self, session_id: str) -> List[ChatMessage]:
        session = self.get_session(session_id)
        return list(session.messages) if session else []

    def update_activity(self, session_id: str) -> None:
        session = self._require_session(session_id)
        session.last_activity = self._clock_ms()
        self._store.set_ex(
            _SESSION_PREFIX + session_id, self._config.session_ttl_sec, session.to_json()
        )

    def check_rate_limit(self, session_id: str) -> RateLimitStatus:
        """Advisory read of both counters; concurrent writers may overshoot slightly."""
        cfg = self._config
        window_count = int(self._store.get(_RATE_LIMIT_PREFIX + session_id) or 0)
        total_count = int(self._store.get(_MESSAGE_COUNT_PREFIX + session_id) or 0)
        allowed = (
            window_count < cfg.max_messages_per_window
            and total_count < cfg.max_messages_per_session
        )
        remaining = max(
            0,
            min(
                cfg.max_messages_per_window - window_count,
                cfg.max_messages_per_session - total_count,
            ),
        )
        ttl = self._store.ttl(_RATE_LIMIT_PREFIX + session_id)
        if ttl <= 0:
            ttl = cfg.rate_limit_window_sec
        reset_time = self._clock_ms() + ttl * 1000
        LOGGER.debug(
            "Rate limit check for %s: allowed=%s remaining=%d window=%d total=%d",
            session_id,
            allowed,
            remaining,
            window_count,
            total_count,
        )
        return RateLimitStatus(allowed=allowed, remaining=remaining, reset_time=reset_time)

    def increment_rate_limit(self, session_id: str) -> None:
        cfg = self._config
        self._store.incr(_RATE_LIMIT_PREFIX + session_id, ttl_if_missing=cfg.rate_limit_window_sec)
        self._store.incr(_MESSAGE_COUNT_PREFIX + session_id, ttl_if_missing=cfg.session_ttl_sec)

    def delete_session(self, session_id: str) -> None:
        self._store.delete(
            _SESSION_PREFIX + session_id,
            _RATE_LIMIT_PREFIX + session_id,
            _MESSAGE_COUNT_PREFIX + session_id,
        )
        message_keys = self._store.keys(f"{_MESSAGES_PREFIX}{session_id}:*")
        if message_keys:
            self._store.delete(*message_keys)
        LOGGER.info("Chat session deleted: %s", session_id)

    def cleanup_expired_sessions(self) -> int:
        """Delete leftovers of sessions whose record expired or never expires."""
        candidates = set()
        for key in self._store.keys(_SESSION_PREFIX + "*"):
            if self._store.ttl(key) == -1:
                candidates.add(key[len(_SESSION_PREFIX) :])
        for prefix in (_RATE_LIMIT_PREFIX, _MESSAGE_COUNT_PREFIX):
            for key in self._store.keys(prefix + "*"):
                session_id = key[len(prefix) :]
                if self._store.get(_SESSION_PREFIX + session_id) is None:
                    candidates.add(session_id)
        for session_id in candidates:
            self.delete_session(session_id)
        LOGGER.info("Expired chat sessions cleaned up: %d", len(candidates))
        return len(candidates)

    def _require_session(self, session_id: str) -> ChatSession:
        session = self.get_session(session_id)
        if session is None:
            raise VoiceError(ErrorCode.SESSION_NOT_FOUND, f"Session {session_id} not found")
        return session


__all__ = [
    "ChatMessage",
    "ChatSession",
    "ChatSessionStore",
    "InMemoryKeyValueStore",
    "KeyValueStore",
    "RateLimitStatus",
]
