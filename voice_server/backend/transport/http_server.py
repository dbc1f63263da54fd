"""HTTP endpoints for chat, metrics, health and pipeline stats."""

import logging
import threading
from copy import deepcopy
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from uvicorn.config import LOGGING_CONFIG

from voice_server.backend.runtime.runtime import ApplicationRuntime
from voice_server.backend.transport.ws_server import build_ws_app
from voice_server.errors import (
    ErrorCode,
    RateLimitExceededError,
    VoiceError,
    http_payload_for,
    http_status_for,
)
from voice_server.utils.logger import clear_session_id, set_session_id

_ACCESS_LOG_IGNORED_PATHS = frozenset({"/metrics", "/metrics.json", "/health"})
LOGGER = logging.getLogger("voice_server.http_server")


class _AccessLogPathFilter(logging.Filter):
    """Filter out noisy access logs for internal endpoints."""

    def __init__(self, ignored_paths: Tuple[str, ...]) -> None:
        super().__init__()
        self._ignored_paths = set(ignored_paths)

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.args, tuple) and len(record.args) >= 3:
            path = record.args[2]
            if path in self._ignored_paths:
                return False
        return True


def _build_uvicorn_log_config() -> Dict[str, Any]:
    log_config = deepcopy(LOGGING_CONFIG)
    log_config.setdefault("filters", {})
    log_config["filters"]["ignore_internal_endpoints"] = {
        "()": _AccessLogPathFilter,
        "ignored_paths": tuple(sorted(_ACCESS_LOG_IGNORED_PATHS)),
    }
    access_handler = log_config["handlers"].get("access", {})
    access_filters = access_handler.get("filters", [])
    access_handler["filters"] = [*access_filters, "ignore_internal_endpoints"]
    log_config["handlers"]["access"] = access_handler
    return log_config


class ChatRequest(BaseModel):
    """Request body for the text chat endpoint."""

    message: str = Field(min_length=1, max_length=4000)
    sessionId: str = Field(min_length=1, max_length=128)


def _sanitize_metric_name(value: str) -> str:
    sanitized = []
    for idx, ch in enumerate(value):
        if ch.isalnum() or ch == "_":
            sanitized.append(ch)
        else:
            sanitized.append("_")
        if idx == 0 and sanitized[-1].isdigit():
            sanitized.insert(0, "m")
    return "".join(sanitized) or "metric"


def _flatten_metrics(payload: Dict[str, Any]) -> Dict[str, float]:
    flat: Dict[str, float] = {}
    for key, value in payload.items():
        if value is None:
            continue
        if isinstance(value, (int, float, bool)):
            flat[_sanitize_metric_name(key)] = float(value)
        elif isinstance(value, dict):
            for sub_key, sub_val in value.items():
                if isinstance(sub_val, (int, float, bool)):
                    metric_key = _sanitize_metric_name(f"{key}_{sub_key}")
                    flat[metric_key] = float(sub_val)
    return flat


def prometheus_text(payload: Dict[str, Any]) -> str:
    """Render a metrics payload as Prometheus gauges."""
    flat = _flatten_metrics(payload)
    lines: List[str] = []
    for key in sorted(flat.keys()):
        metric_name = f"voice_{key}"
        lines.append(f"# HELP {metric_name} Server metric '{key}' exposed as a gauge.")
        lines.append(f"# TYPE {metric_name} gauge")
        lines.append(f"{metric_name} {flat[key]}")
    return "\n".join(lines) + "\n"


def build_http_app(runtime: ApplicationRuntime) -> FastAPI:
    """Create the FastAPI app serving HTTP routes and the voice WebSocket."""
    app = FastAPI()
    metrics = runtime.metrics
    chat_service = runtime.chat_service
    pipeline = runtime.pipeline

    @app.exception_handler(VoiceError)
    async def voice_error_handler(_request: Request, exc: VoiceError) -> JSONResponse:
        return JSONResponse(
            http_payload_for(exc.code, exc.detail),
            status_code=http_status_for(exc.code),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        _request: Request, _exc: RequestValidationError
    ) -> JSONResponse:
        code = ErrorCode.CHAT_REQUEST_INVALID
        return JSONResponse(http_payload_for(code), status_code=http_status_for(code))

    @app.post("/api/chat")
    async def chat_endpoint(req: ChatRequest) -> JSONResponse:
        set_session_id(req.sessionId)
        try:
            reply = await chat_service.chat(req.message, req.sessionId)
        except RateLimitExceededError as exc:
            payload: Dict[str, Any] = http_payload_for(exc.code, exc.detail)
            payload["rateLimitInfo"] = exc.rate_limit_info()
            return JSONResponse(payload, status_code=http_status_for(exc.code))
        except VoiceError as exc:
            if exc.code is ErrorCode.CHAT_REQUEST_INVALID:
                raise
            LOGGER.error("Chat request failed: %s", exc)
            metrics.record_error(exc.code.value)
            return JSONResponse(
                http_payload_for(ErrorCode.CHAT_UNEXPECTED, exc.detail),
                status_code=http_status_for(ErrorCode.CHAT_UNEXPECTED),
            )
        except Exception:  # pylint: disable=broad-except
            LOGGER.exception("Chat request failed")
            metrics.record_error(ErrorCode.CHAT_UNEXPECTED.value)
            return JSONResponse(
                http_payload_for(ErrorCode.CHAT_UNEXPECTED),
                status_code=http_status_for(ErrorCode.CHAT_UNEXPECTED),
            )
        finally:
            clear_session_id()
        return JSONResponse(reply.to_payload())

    @app.get("/metrics")
    def metrics_endpoint() -> Response:
        text = prometheus_text(metrics.render())
        return Response(content=text, media_type="text/plain; version=0.0.4")

    @app.get("/metrics.json")
    def metrics_json_endpoint() -> JSONResponse:
        return JSONResponse(metrics.render(), status_code=200)

    @app.get("/health")
    def health_endpoint() -> JSONResponse:
        snapshot = runtime.health_snapshot()
        healthy = bool(snapshot["accepting_connections"])
        payload = {"status": "ok" if healthy else "error", **snapshot}
        return JSONResponse(payload, status_code=200 if healthy else 503)

    @app.get("/stats")
    def stats_endpoint() -> JSONResponse:
        return JSONResponse(pipeline.get_stats())

    @app.get("/stats/{session_id}")
    def session_stats_endpoint(session_id: str) -> JSONResponse:
        stats = pipeline.get_session_stats(session_id)
        if stats is None:
            raise VoiceError(ErrorCode.SESSION_NOT_FOUND)
        return JSONResponse(stats)

    build_ws_app(runtime, app=app)
    return app


@dataclass
class HttpServerHandle:
    """Handle for the background HTTP/WebSocket server."""

    server: uvicorn.Server
    thread: threading.Thread

    def stop(self, timeout: Optional[float] = None) -> None:
        if self.thread.is_alive():
            self.server.should_exit = True
            self.thread.join(timeout=timeout)


def start_http_server(
    runtime: ApplicationRuntime, host: str, port: int
) -> HttpServerHandle:
    """Start the FastAPI app in a background thread."""
    app = build_http_app(runtime)
    config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_level="info",
        log_config=_build_uvicorn_log_config(),
    )
    server = uvicorn.Server(config)
    thread = threading.Thread(target=server.run, daemon=True)
    thread.start()
    return HttpServerHandle(server=server, thread=thread)


__all__ = [
    "ChatRequest",
    "HttpServerHandle",
    "build_http_app",
    "prometheus_text",
    "start_http_server",
]
