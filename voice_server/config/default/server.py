"""Default values for server/runtime configuration."""

from typing import Dict

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 3001
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_LOG_FILE = None
DEFAULT_TRANSCRIPT_LOG_FILE = None
DEFAULT_LOG_TRANSCRIPTS = False
DEFAULT_MAX_IDLE_SEC = 0.0

DEFAULT_SAMPLE_RATE = 16000
DEFAULT_CHANNELS = 1
DEFAULT_PLAYBACK_SAMPLE_RATE = 44100
DEFAULT_MIN_PROCESS_MS = 500.0
DEFAULT_MIN_CHUNK_BYTES = 100
DEFAULT_MIN_UNIQUE_BYTES = 10
DEFAULT_STATS_WINDOW = 10
DEFAULT_RECOGNITION_LEVEL = 0.8
DEFAULT_PLAYBACK_LEVEL = 0.9
DEFAULT_PLAYBACK_LEAD_SILENCE_MS = 50.0
DEFAULT_ENABLE_OPTIMIZATION = True

DEFAULT_SESSION_TTL_SEC = 30 * 60
DEFAULT_MESSAGE_TTL_SEC = 60 * 60
DEFAULT_RATE_LIMIT_WINDOW_SEC = 60
DEFAULT_MAX_MESSAGES_PER_WINDOW = 5
DEFAULT_MAX_MESSAGES_PER_SESSION = 30
DEFAULT_HISTORY_LIMIT = 10
DEFAULT_CLEANUP_INTERVAL_SEC = 300.0

DEFAULT_RECOGNIZER = "http"
DEFAULT_SYNTHESIZER = "http"
DEFAULT_COMPLETION = "echo"
DEFAULT_LANGUAGE_CODE = "en-US"
DEFAULT_COMPLETION_BASE_URL = "https://api.openai.com/v1"
DEFAULT_COMPLETION_MODEL = "gpt-3.5-turbo"
DEFAULT_MAX_TOKENS = 500
DEFAULT_TEMPERATURE = 0.7
DEFAULT_REQUEST_TIMEOUT_SEC = 30.0

DEFAULT_WS_RATE_LIMIT_RPS = 0.0
DEFAULT_WS_RATE_LIMIT_BURST = 0.0

SERVER_SECTION_MAP: Dict[str, Dict[str, str]] = {
    "server": {
        "host": "host",
        "port": "port",
        "max_idle_sec": "max_idle_sec",
    },
    "audio": {
        "sample_rate": "sample_rate",
        "channels": "channels",
        "playback_sample_rate": "playback_sample_rate",
        "min_process_ms": "min_process_ms",
        "min_chunk_bytes": "min_chunk_bytes",
        "min_unique_bytes": "min_unique_bytes",
        "stats_window": "stats_window",
        "recognition_level": "recognition_level",
        "playback_level": "playback_level",
        "playback_lead_silence_ms": "playback_lead_silence_ms",
        "enable_optimization": "enable_optimization",
    },
    "chat": {
        "session_ttl_sec": "session_ttl_sec",
        "message_ttl_sec": "message_ttl_sec",
        "rate_limit_window_sec": "rate_limit_window_sec",
        "max_messages_per_window": "max_messages_per_window",
        "max_messages_per_session": "max_messages_per_session",
        "history_limit": "history_limit",
        "cleanup_interval_sec": "cleanup_interval_sec",
        "system_prompt": "system_prompt",
    },
    "services": {
        "recognizer": "recognizer",
        "recognizer_url": "recognizer_url",
        "language_code": "language_code",
        "synthesizer": "synthesizer",
        "synthesizer_url": "synthesizer_url",
        "voice_id": "voice_id",
        "completion": "completion",
        "completion_base_url": "completion_base_url",
        "completion_model": "completion_model",
        "max_tokens": "max_tokens",
        "temperature": "temperature",
        "request_timeout_sec": "request_timeout_sec",
    },
    "logging": {
        "level": "log_level",
        "file": "log_file",
        "transcript_file": "transcript_log_file",
        "log_transcripts": "log_transcripts",
    },
    "safety": {
        "ws_rate_limit_rps": "ws_rate_limit_rps",
        "ws_rate_limit_burst": "ws_rate_limit_burst",
        "allowlist": "allowlist",
        "trusted_proxies": "trusted_proxies",
    },
}

# Secrets are read from the environment only.
ENV_OVERRIDES: Dict[str, str] = {
    "VOICE_RECOGNIZER_API_KEY": "recognizer_api_key",
    "VOICE_SYNTHESIZER_API_KEY": "synthesizer_api_key",
    "VOICE_SYNTHESIZER_VOICE_ID": "voice_id",
    "VOICE_COMPLETION_API_KEY": "completion_api_key",
}
