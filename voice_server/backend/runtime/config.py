"""Runtime configuration models for the voice application layer."""

from dataclasses import dataclass, field
from typing import List

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful customer support assistant. Keep responses concise and "
    "helpful. If you are unsure about something, acknowledge the limitation and "
    "do not make up information."
)


@dataclass
class PipelineRuntimeConfig:
    """Capture format, accumulation threshold and audio shaping."""

    sample_rate: int = 16000
    channels: int = 1
    playback_sample_rate: int = 44100
    min_process_ms: float = 500.0
    min_chunk_bytes: int = 100
    min_unique_bytes: int = 10
    stats_window: int = 10
    recognition_level: float = 0.8
    playback_level: float = 0.9
    playback_lead_silence_ms: float = 50.0
    enable_optimization: bool = True
    log_transcripts: bool = False


@dataclass
class ChatRuntimeConfig:
    """Chat session retention and per-session message limits."""

    session_ttl_sec: int = 30 * 60
    message_ttl_sec: int = 60 * 60
    rate_limit_window_sec: int = 60
    max_messages_per_window: int = 5
    max_messages_per_session: int = 30
    history_limit: int = 10
    cleanup_interval_sec: float = 300.0
    system_prompt: str = DEFAULT_SYSTEM_PROMPT


@dataclass
class ServiceRuntimeConfig:
    """Backends used for recognition, synthesis and reply completion."""

    recognizer: str = "http"
    recognizer_url: str = ""
    recognizer_api_key: str = ""
    language_code: str = "en-US"
    synthesizer: str = "http"
    synthesizer_url: str = ""
    synthesizer_api_key: str = ""
    voice_id: str = ""
    completion: str = "echo"
    completion_base_url: str = "https://api.openai.com/v1"
    completion_api_key: str = ""
    completion_model: str = "gpt-3.5-turbo"
    max_tokens: int = 500
    temperature: float = 0.7
    request_timeout_sec: float = 30.0


@dataclass
class TransportRuntimeConfig:
    """WebSocket admission and liveness settings."""

    max_idle_sec: float = 0.0
    ws_rate_limit_rps: float = 0.0
    ws_rate_limit_burst: float = 0.0
    allowlist: List[str] = field(default_factory=list)
    trusted_proxies: List[str] = field(default_factory=list)


@dataclass
class VoiceRuntimeConfig:
    """Top-level configuration for the application runtime."""

    pipeline: PipelineRuntimeConfig = field(default_factory=PipelineRuntimeConfig)
    chat: ChatRuntimeConfig = field(default_factory=ChatRuntimeConfig)
    services: ServiceRuntimeConfig = field(default_factory=ServiceRuntimeConfig)
    transport: TransportRuntimeConfig = field(default_factory=TransportRuntimeConfig)
