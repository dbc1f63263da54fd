"""Application wiring for the voice server."""

from __future__ import annotations

import threading
from typing import Any, Dict, Optional

from voice_server.backend.application.chat_service import ChatService
from voice_server.backend.application.chat_store import (
    ChatSessionStore,
    InMemoryKeyValueStore,
    KeyValueStore,
)
from voice_server.backend.application.connection_registry import (
    ConnectionRegistry,
    ConnectionRegistryHooks,
)
from voice_server.backend.application.voice_pipeline import VoicePipeline
from voice_server.backend.runtime.config import ChatRuntimeConfig, VoiceRuntimeConfig
from voice_server.backend.runtime.metrics import Metrics
from voice_server.services import (
    CompletionBackend,
    SpeechRecognizer,
    SpeechSynthesizer,
    get_completion_backend,
    get_recognizer,
    get_synthesizer,
)
from voice_server.utils.logger import LOGGER


class ApplicationRuntime:  # pylint: disable=too-many-instance-attributes
    """Builds and owns application-layer dependencies.

    Services are resolved from configuration unless passed in explicitly.
    """

    def __init__(
        self,
        config: VoiceRuntimeConfig | None = None,
        recognizer: SpeechRecognizer | None = None,
        synthesizer: SpeechSynthesizer | None = None,
        completion_backend: CompletionBackend | None = None,
        kv_store: KeyValueStore | None = None,
    ) -> None:
        self.config = config or VoiceRuntimeConfig()
        self.metrics = Metrics()
        self._accepting_connections = True
        services_config = self.config.services
        pipeline_config = self.config.pipeline

        self.kv_store = kv_store or InMemoryKeyValueStore()
        self.chat_store = ChatSessionStore(self.kv_store, self.config.chat)
        self.chat_service = ChatService(
            store=self.chat_store,
            backend=completion_backend or get_completion_backend(services_config),
            config=self.config.chat,
            metrics=self.metrics,
            log_transcripts=pipeline_config.log_transcripts,
        )
        self.pipeline = VoicePipeline(
            recognizer=recognizer or get_recognizer(services_config),
            reply_generator=self.chat_service,
            synthesizer=synthesizer
            or get_synthesizer(services_config, pipeline_config.playback_sample_rate),
            config=pipeline_config,
            metrics=self.metrics,
        )
        self.connections: ConnectionRegistry[Any] = ConnectionRegistry(
            ConnectionRegistryHooks(
                on_register=self._on_connection_registered,
                on_unregister=self._on_connection_unregistered,
            )
        )
        self._janitor: ChatStoreJanitor | None = None

    def start_background_tasks(self) -> None:
        """Start periodic chat-store cleanup if an interval is configured."""
        if self._janitor is not None:
            return
        if self.config.chat.cleanup_interval_sec <= 0:
            return
        self._janitor = ChatStoreJanitor(self.chat_store, self.config.chat)
        self._janitor.start()

    def _on_connection_registered(self, _session_id: str) -> None:
        self.metrics.increase_active_connections()

    def _on_connection_unregistered(self, _session_id: str) -> None:
        self.metrics.decrease_active_connections()

    @property
    def accepting_connections(self) -> bool:
        return self._accepting_connections

    def stop_accepting_connections(self) -> None:
        """Refuse new voice connections (used during shutdown)."""
        self._accepting_connections = False

    def health_snapshot(self) -> Dict[str, Any]:
        """Return a point-in-time snapshot of runtime health metrics."""
        metrics_snapshot = self.metrics.snapshot()
        stats = self.pipeline.get_stats()
        return {
            "accepting_connections": self._accepting_connections,
            "active_connections": len(self.connections),
            "active_sessions": stats["activeSessions"],
            "processing_sessions": stats["processingSessions"],
            "cycle_latency_avg": metrics_snapshot.get("cycle_latency_avg"),
            "cycle_latency_max": metrics_snapshot.get("cycle_latency_max"),
        }

    def shutdown(self) -> None:
        """Release runtime resources before exiting."""
        self.stop_accepting_connections()
        if self._janitor is not None:
            self._janitor.stop()
            self._janitor = None
        for session_id in self.pipeline.buffers.session_ids():
            self.pipeline.clear_session(session_id)


class ChatStoreJanitor:
    """Background loop that purges leftovers of expired chat sessions."""

    def __init__(self, store: ChatSessionStore, config: ChatRuntimeConfig) -> None:
        self._store = store
        self._interval = max(1.0, float(config.cleanup_interval_sec))
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = threading.Thread(
            target=self._loop, daemon=True
        )

    def start(self) -> None:
        if self._thread is not None:
            self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=1.0)

    def _loop(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                self._store.cleanup_expired_sessions()
            except Exception:  # pylint: disable=broad-except
                LOGGER.exception("Chat store cleanup failed")
