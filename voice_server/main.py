import argparse
import asyncio
import sys
from pathlib import Path

from voice_server.backend.runtime.config import (
    ChatRuntimeConfig,
    PipelineRuntimeConfig,
    ServiceRuntimeConfig,
    TransportRuntimeConfig,
    VoiceRuntimeConfig,
)
from voice_server.backend.runtime.runtime import ApplicationRuntime
from voice_server.backend.transport import start_http_server
from voice_server.config import DEFAULT_CONFIG_PATH, ServerConfig, load_config
from voice_server.utils.logger import LOGGER, configure_logging


def build_runtime_config(config: ServerConfig) -> VoiceRuntimeConfig:
    """Map the flat server config onto the runtime sections."""
    pipeline_cfg = PipelineRuntimeConfig(
        sample_rate=config.sample_rate,
        channels=config.channels,
        playback_sample_rate=config.playback_sample_rate,
        min_process_ms=config.min_process_ms,
        min_chunk_bytes=config.min_chunk_bytes,
        min_unique_bytes=config.min_unique_bytes,
        stats_window=config.stats_window,
        recognition_level=config.recognition_level,
        playback_level=config.playback_level,
        playback_lead_silence_ms=config.playback_lead_silence_ms,
        enable_optimization=config.enable_optimization,
        log_transcripts=config.log_transcripts,
    )
    chat_cfg = ChatRuntimeConfig(
        session_ttl_sec=config.session_ttl_sec,
        message_ttl_sec=config.message_ttl_sec,
        rate_limit_window_sec=config.rate_limit_window_sec,
        max_messages_per_window=config.max_messages_per_window,
        max_messages_per_session=config.max_messages_per_session,
        history_limit=config.history_limit,
        cleanup_interval_sec=config.cleanup_interval_sec,
        system_prompt=config.system_prompt,
    )
    services_cfg = ServiceRuntimeConfig(
        recognizer=config.recognizer,
        recognizer_url=config.recognizer_url,
        recognizer_api_key=config.recognizer_api_key,
        language_code=config.language_code,
        synthesizer=config.synthesizer,
        synthesizer_url=config.synthesizer_url,
        synthesizer_api_key=config.synthesizer_api_key,
        voice_id=config.voice_id,
        completion=config.completion,
        completion_base_url=config.completion_base_url,
        completion_api_key=config.completion_api_key,
        completion_model=config.completion_model,
        max_tokens=config.max_tokens,
        temperature=config.temperature,
        request_timeout_sec=config.request_timeout_sec,
    )
    transport_cfg = TransportRuntimeConfig(
        max_idle_sec=config.max_idle_sec,
        ws_rate_limit_rps=config.ws_rate_limit_rps,
        ws_rate_limit_burst=config.ws_rate_limit_burst,
        allowlist=list(config.allowlist),
        trusted_proxies=list(config.trusted_proxies),
    )
    return VoiceRuntimeConfig(
        pipeline=pipeline_cfg,
        chat=chat_cfg,
        services=services_cfg,
        transport=transport_cfg,
    )


def serve(config: ServerConfig) -> None:
    """Launch the HTTP + WebSocket server and block until interrupted."""
    runtime = ApplicationRuntime(build_runtime_config(config))
    runtime.start_background_tasks()
    handle = start_http_server(runtime, host=config.host, port=config.port)
    LOGGER.info(
        "Voice server started on %s:%s (recognizer=%s, synthesizer=%s, completion=%s)",
        config.host,
        config.port,
        config.recognizer,
        config.synthesizer,
        config.completion,
    )
    try:
        while handle.thread.is_alive():
            handle.thread.join(timeout=1.0)
    except KeyboardInterrupt:
        LOGGER.info("Shutdown requested")
    finally:
        runtime.stop_accepting_connections()
        handle.stop(timeout=5.0)
        runtime.shutdown()


def run_self_test(config: ServerConfig) -> bool:
    """Run one test-tone cycle against the configured services."""
    runtime = ApplicationRuntime(build_runtime_config(config))
    try:
        return asyncio.run(runtime.pipeline.self_test())
    finally:
        runtime.shutdown()


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Real-time voice conversation server")
    parser.add_argument(
        "--config",
        type=str,
        help=f"Path to YAML config (default search: {DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument("--host", default=None, help="Interface to bind")
    parser.add_argument("--port", type=int, default=None, help="Port to bind")
    parser.add_argument(
        "--recognizer-url", default=None, help="Speech recognition service URL"
    )
    parser.add_argument(
        "--synthesizer-url", default=None, help="Speech synthesis service URL"
    )
    parser.add_argument(
        "--completion",
        choices=("echo", "openai"),
        default=None,
        help="Reply completion backend",
    )
    parser.add_argument(
        "--min-process-ms",
        type=float,
        default=None,
        help="Buffered audio (ms) required before a processing cycle starts",
    )
    parser.add_argument(
        "--max-idle-sec",
        type=float,
        default=None,
        help="Close connections idle for this long (<=0 disables)",
    )
    parser.add_argument(
        "--log-transcripts",
        dest="log_transcripts",
        action="store_true",
        help="Write transcripts and replies to the transcript log",
    )
    parser.add_argument(
        "--no-log-transcripts",
        dest="log_transcripts",
        action="store_false",
        help="Disable transcript logging (overrides config)",
    )
    parser.set_defaults(log_transcripts=None)
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level (e.g. TRACE, DEBUG, INFO); overrides config",
    )
    parser.add_argument(
        "--log-file",
        default=None,
        help="Optional log file path; overrides config",
    )
    parser.add_argument(
        "--transcript-log-file",
        default=None,
        help="Optional transcript log path; overrides config",
    )
    parser.add_argument(
        "--self-test",
        action="store_true",
        help="Run a test-tone processing cycle and exit",
    )
    return parser.parse_args()


def configure_from_args(args: argparse.Namespace) -> ServerConfig:
    config_arg_path = Path(args.config).expanduser() if args.config else None
    effective_config_path = config_arg_path or DEFAULT_CONFIG_PATH
    config = load_config(effective_config_path)

    if args.host is not None:
        config.host = args.host
    if args.port is not None:
        config.port = args.port
    if args.recognizer_url is not None:
        config.recognizer_url = args.recognizer_url
    if args.synthesizer_url is not None:
        config.synthesizer_url = args.synthesizer_url
    if args.completion is not None:
        config.completion = args.completion
    if args.min_process_ms is not None:
        config.min_process_ms = args.min_process_ms
    if args.max_idle_sec is not None:
        config.max_idle_sec = args.max_idle_sec
    if args.log_transcripts is not None:
        config.log_transcripts = args.log_transcripts
    if args.log_level is not None:
        config.log_level = args.log_level
    if args.log_file is not None:
        config.log_file = args.log_file
    if args.transcript_log_file is not None:
        config.transcript_log_file = args.transcript_log_file

    configure_logging(config.log_level, config.log_file, config.transcript_log_file)
    if effective_config_path.exists():
        LOGGER.info("Loaded server config from %s", effective_config_path)
    else:
        LOGGER.info(
            "Server config file not found at %s; using defaults/CLI overrides",
            effective_config_path,
        )
    return config


def main() -> None:
    args = parse_args()
    config = configure_from_args(args)
    try:
        if args.self_test:
            sys.exit(0 if run_self_test(config) else 1)
        serve(config)
    except ValueError as exc:
        LOGGER.error("Invalid service configuration: %s", exc)
        sys.exit(2)


if __name__ == "__main__":
    main()
