import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from voice_server.backend.runtime.config import DEFAULT_SYSTEM_PROMPT
from voice_server.config.default.server import (
    DEFAULT_CHANNELS,
    DEFAULT_CLEANUP_INTERVAL_SEC,
    DEFAULT_COMPLETION,
    DEFAULT_COMPLETION_BASE_URL,
    DEFAULT_COMPLETION_MODEL,
    DEFAULT_ENABLE_OPTIMIZATION,
    DEFAULT_HISTORY_LIMIT,
    DEFAULT_HOST,
    DEFAULT_LANGUAGE_CODE,
    DEFAULT_LOG_FILE,
    DEFAULT_LOG_LEVEL,
    DEFAULT_LOG_TRANSCRIPTS,
    DEFAULT_MAX_IDLE_SEC,
    DEFAULT_MAX_MESSAGES_PER_SESSION,
    DEFAULT_MAX_MESSAGES_PER_WINDOW,
    DEFAULT_MAX_TOKENS,
    DEFAULT_MESSAGE_TTL_SEC,
    DEFAULT_MIN_CHUNK_BYTES,
    DEFAULT_MIN_PROCESS_MS,
    DEFAULT_MIN_UNIQUE_BYTES,
    DEFAULT_PLAYBACK_LEAD_SILENCE_MS,
    DEFAULT_PLAYBACK_LEVEL,
    DEFAULT_PLAYBACK_SAMPLE_RATE,
    DEFAULT_PORT,
    DEFAULT_RATE_LIMIT_WINDOW_SEC,
    DEFAULT_RECOGNITION_LEVEL,
    DEFAULT_RECOGNIZER,
    DEFAULT_REQUEST_TIMEOUT_SEC,
    DEFAULT_SAMPLE_RATE,
    DEFAULT_SESSION_TTL_SEC,
    DEFAULT_STATS_WINDOW,
    DEFAULT_SYNTHESIZER,
    DEFAULT_TEMPERATURE,
    DEFAULT_TRANSCRIPT_LOG_FILE,
    DEFAULT_WS_RATE_LIMIT_BURST,
    DEFAULT_WS_RATE_LIMIT_RPS,
    ENV_OVERRIDES,
    SERVER_SECTION_MAP,
)


@dataclass
class ServerConfig:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    max_idle_sec: float = DEFAULT_MAX_IDLE_SEC
    sample_rate: int = DEFAULT_SAMPLE_RATE
    channels: int = DEFAULT_CHANNELS
    playback_sample_rate: int = DEFAULT_PLAYBACK_SAMPLE_RATE
    min_process_ms: float = DEFAULT_MIN_PROCESS_MS
    min_chunk_bytes: int = DEFAULT_MIN_CHUNK_BYTES
    min_unique_bytes: int = DEFAULT_MIN_UNIQUE_BYTES
    stats_window: int = DEFAULT_STATS_WINDOW
    recognition_level: float = DEFAULT_RECOGNITION_LEVEL
    playback_level: float = DEFAULT_PLAYBACK_LEVEL
    playback_lead_silence_ms: float = DEFAULT_PLAYBACK_LEAD_SILENCE_MS
    enable_optimization: bool = DEFAULT_ENABLE_OPTIMIZATION
    session_ttl_sec: int = DEFAULT_SESSION_TTL_SEC
    message_ttl_sec: int = DEFAULT_MESSAGE_TTL_SEC
    rate_limit_window_sec: int = DEFAULT_RATE_LIMIT_WINDOW_SEC
    max_messages_per_window: int = DEFAULT_MAX_MESSAGES_PER_WINDOW
    max_messages_per_session: int = DEFAULT_MAX_MESSAGES_PER_SESSION
    history_limit: int = DEFAULT_HISTORY_LIMIT
    cleanup_interval_sec: float = DEFAULT_CLEANUP_INTERVAL_SEC
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    recognizer: str = DEFAULT_RECOGNIZER
    recognizer_url: str = ""
    recognizer_api_key: str = ""
    language_code: str = DEFAULT_LANGUAGE_CODE
    synthesizer: str = DEFAULT_SYNTHESIZER
    synthesizer_url: str = ""
    synthesizer_api_key: str = ""
    voice_id: str = ""
    completion: str = DEFAULT_COMPLETION
    completion_base_url: str = DEFAULT_COMPLETION_BASE_URL
    completion_api_key: str = ""
    completion_model: str = DEFAULT_COMPLETION_MODEL
    max_tokens: int = DEFAULT_MAX_TOKENS
    temperature: float = DEFAULT_TEMPERATURE
    request_timeout_sec: float = DEFAULT_REQUEST_TIMEOUT_SEC
    log_level: str = DEFAULT_LOG_LEVEL
    log_file: Optional[str] = DEFAULT_LOG_FILE
    transcript_log_file: Optional[str] = DEFAULT_TRANSCRIPT_LOG_FILE
    log_transcripts: bool = DEFAULT_LOG_TRANSCRIPTS
    ws_rate_limit_rps: float = DEFAULT_WS_RATE_LIMIT_RPS
    ws_rate_limit_burst: float = DEFAULT_WS_RATE_LIMIT_BURST
    allowlist: List[str] = field(default_factory=list)
    trusted_proxies: List[str] = field(default_factory=list)


PROJECT_ROOT = Path(__file__).resolve().parents[2]
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "config" / "server.yaml"

_LIST_FIELDS = {"allowlist", "trusted_proxies"}


def load_config(
    server_path: Optional[Path] = None, environ: Optional[Mapping[str, str]] = None
) -> ServerConfig:
    """Load server configuration from YAML and the environment, falling back to defaults."""
    cfg = ServerConfig()
    server_data = _read_yaml(server_path or DEFAULT_CONFIG_PATH)
    if server_data:
        _apply_sections(cfg, server_data)
    _apply_env(cfg, os.environ if environ is None else environ)
    return cfg


def _read_yaml(path: Optional[Path]) -> Optional[Dict[str, Any]]:
    if not path or not path.exists():
        return None
    with path.open("r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh)
    if isinstance(data, dict):
        return data
    return None


def _apply_sections(cfg: ServerConfig, raw: Dict[str, Any]) -> None:
    field_names = {f.name for f in fields(ServerConfig)}
    for section, mapping in SERVER_SECTION_MAP.items():
        data = raw.get(section)
        if not isinstance(data, dict):
            continue
        for key, attr in mapping.items():
            if key in data and data[key] is not None:
                _set_value(cfg, attr, data[key])

    for key, value in raw.items():
        if key in SERVER_SECTION_MAP:
            continue
        if key in field_names and value is not None:
            _set_value(cfg, key, value)


def _apply_env(cfg: ServerConfig, environ: Mapping[str, str]) -> None:
    for env_name, attr in ENV_OVERRIDES.items():
        value = environ.get(env_name, "").strip()
        if value:
            setattr(cfg, attr, value)


def _set_value(cfg: ServerConfig, attr: str, value: Any) -> None:
    if attr in _LIST_FIELDS:
        if isinstance(value, str):
            value = [item.strip() for item in value.split(",") if item.strip()]
        else:
            value = [str(item) for item in value]
    setattr(cfg, attr, value)


__all__ = [
    "ServerConfig",
    "DEFAULT_CONFIG_PATH",
    "load_config",
]
