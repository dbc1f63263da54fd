"""Application layer helpers for the voice server."""

from .chat_service import ChatReply, ChatService
from .chat_store import ChatMessage, ChatSession, ChatSessionStore, InMemoryKeyValueStore
from .connection_registry import ConnectionRegistry, ConnectionRegistryHooks
from .voice_pipeline import PipelinePhase, ProcessingResult, VoicePipeline

__all__ = [
    "ChatMessage",
    "ChatReply",
    "ChatService",
    "ChatSession",
    "ChatSessionStore",
    "ConnectionRegistry",
    "ConnectionRegistryHooks",
    "InMemoryKeyValueStore",
    "PipelinePhase",
    "ProcessingResult",
    "VoicePipeline",
]
