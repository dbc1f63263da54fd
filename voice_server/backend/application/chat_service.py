"""Reply generation backed by the chat session store."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from voice_server.backend.application.chat_store import (
    ChatMessage,
    ChatSessionStore,
)
from voice_server.backend.runtime.config import ChatRuntimeConfig
from voice_server.backend.runtime.metrics import Metrics
from voice_server.errors import ErrorCode, RateLimitExceededError, VoiceError
from voice_server.services.base import CompletionBackend
from voice_server.utils.logger import LOGGER, TRANSCRIPT_LOGGER


@dataclass(frozen=True)
class ChatReply:
    """Assistant reply plus the session's remaining allowance."""

    message: str
    session_id: str
    remaining: int
    reset_time: int

    def to_payload(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "sessionId": self.session_id,
            "rateLimitInfo": {
                "remaining": self.remaining,
                "resetTime": self.reset_time,
            },
        }


class ChatService:
    """Turns user text into an assistant reply while enforcing chat limits.

    Shared by the text chat endpoint and the voice pipeline, so both channels
    draw from the same history and counters.
    """

    def __init__(
        self,
        store: ChatSessionStore,
        backend: CompletionBackend,
        config: ChatRuntimeConfig | None = None,
        metrics: Metrics | None = None,
        log_transcripts: bool = False,
    ) -> None:
        self._store = store
        self._backend = backend
        self._config = config or ChatRuntimeConfig()
        self._metrics = metrics
        self._log_transcripts = log_transcripts

    @property
    def store(self) -> ChatSessionStore:
        return self._store

    async def chat(self, text: str, session_id: str) -> ChatReply:
        """Handle one user message.

        Raises ``RateLimitExceededError`` when the session is out of allowance
        and ``VoiceError(REPLY_FAILED)`` when the backend produced nothing.
        """
        reply = await self._respond(text, session_id)
        if reply is None:
            raise VoiceError(ErrorCode.REPLY_FAILED, "No response generated")
        return reply

    async def generate_reply(self, text: str, session_id: str) -> Optional[str]:
        """Reply text for ``text``, or None when the backend had nothing to say."""
        reply = await self._respond(text, session_id)
        return reply.message if reply else None

    async def _respond(self, text: str, session_id: str) -> Optional[ChatReply]:
        text = (text or "").strip()
        if not text:
            raise VoiceError(ErrorCode.CHAT_REQUEST_INVALID, "message is required")
        if not session_id:
            raise VoiceError(ErrorCode.CHAT_REQUEST_INVALID, "sessionId is required")

        if self._store.get_session(session_id) is None:
            self._store.create_session(session_id)
        else:
            self._store.update_activity(session_id)

        status = self._store.check_rate_limit(session_id)
        if not status.allowed:
            LOGGER.warning(
                "Chat rate limit exceeded for session %s (reset=%d)",
                session_id,
                status.reset_time,
            )
            if self._metrics is not None:
                self._metrics.record_rate_limit_block("chat", session_id)
            raise RateLimitExceededError(status.remaining, status.reset_time)
        self._store.increment_rate_limit(session_id)

        history = self._store.get_messages(session_id)[-self._config.history_limit :]
        self._store.add_message(session_id, ChatMessage(role="user", content=text))
        if self._log_transcripts:
            TRANSCRIPT_LOGGER.info("user: %s", text)

        messages: List[Dict[str, str]] = [
            {"role": "system", "content": self._config.system_prompt}
        ]
        messages.extend({"role": m.role, "content": m.content} for m in history)
        messages.append({"role": "user", "content": text})

        content = await self._backend.complete(messages)
        if not content:
            LOGGER.warning("Completion backend returned no content")
            return None

        self._store.add_message(
            session_id, ChatMessage(role="assistant", content=content)
        )
        if self._log_transcripts:
            TRANSCRIPT_LOGGER.info("assistant: %s", content)
        if self._metrics is not None:
            self._metrics.record_chat_reply()
        return ChatReply(
            message=content,
            session_id=session_id,
            remaining=max(0, status.remaining - 1),
            reset_time=status.reset_time,
        )


__all__ = ["ChatReply", "ChatService"]
