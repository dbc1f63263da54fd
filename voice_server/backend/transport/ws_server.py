"""WebSocket endpoint for live voice sessions."""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import re
from typing import Any, Dict, List, Optional, Set

from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from voice_server.backend.application.voice_pipeline import ProcessingResult
from voice_server.backend.component.session_buffer import SessionAudioBuffer
from voice_server.backend.runtime.runtime import ApplicationRuntime
from voice_server.backend.transport.protocol import (
    InboundMessage,
    MessageType,
    binary_frame,
    build_message,
    decode_audio_payload,
    now_ms,
    parse_text_frame,
)
from voice_server.backend.utils.rate_limit import KeyedRateLimiter
from voice_server.errors import AudioValidationError, ErrorCode, VoiceError, ws_payload_for
from voice_server.utils import audio
from voice_server.utils.audio import AudioFormat
from voice_server.utils.logger import clear_session_id, set_session_id

VOICE_PATH = "/api/voice"
SESSION_HEADER = "x-session-id"
_SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.:\-]{1,128}$")
# Application close codes (4000-4999).
_CLOSE_FORBIDDEN = 4403
_CLOSE_IDLE = 4408
_CLOSE_REPLACED = 4409
_CLOSE_UNAVAILABLE = 1013
LOGGER = logging.getLogger("voice_server.ws_server")


def _valid_session_id(value: Optional[str]) -> bool:
    return bool(value) and bool(_SESSION_ID_PATTERN.match(value or ""))


def _parse_networks(entries: List[str], label: str) -> tuple[list, list]:
    networks: List[ipaddress._BaseNetwork] = []
    hosts: List[str] = []
    for entry in [item.strip() for item in entries if item and item.strip()]:
        try:
            networks.append(ipaddress.ip_network(entry, strict=False))
        except ValueError:
            if any(ch.isalpha() for ch in entry):
                hosts.append(entry)
            else:
                LOGGER.warning("Invalid %s entry ignored: %s", label, entry)
    return networks, hosts


def _extract_ws_client_ip(
    websocket: WebSocket,
    trusted_proxy_hosts: List[str],
    trusted_proxies: List[ipaddress._BaseNetwork],
) -> str:
    client = websocket.client
    client_ip = client.host if client else ""
    trusted = client_ip in trusted_proxy_hosts
    if not trusted and trusted_proxies:
        try:
            addr = ipaddress.ip_address(client_ip)
        except ValueError:
            addr = None
        if addr is not None and any(addr in network for network in trusted_proxies):
            trusted = True
    if not trusted:
        return client_ip
    forwarded_for = websocket.headers.get("x-forwarded-for", "").strip()
    if not forwarded_for:
        return client_ip
    return forwarded_for.split(",")[-1].strip()


def _format_from_payload(payload: Dict[str, Any], default: AudioFormat) -> Optional[AudioFormat]:
    raw_rate = payload.get("sampleRate", payload.get("sample_rate"))
    raw_channels = payload.get("channels")
    if raw_rate is None and raw_channels is None:
        return None
    try:
        sample_rate = int(raw_rate) if raw_rate is not None else default.sample_rate
        channels = int(raw_channels) if raw_channels is not None else default.channels
    except (TypeError, ValueError) as exc:
        raise VoiceError(ErrorCode.AUDIO_FORMAT_INVALID, "sampleRate/channels must be integers") from exc
    if sample_rate <= 0 or channels not in (1, 2):
        raise VoiceError(
            ErrorCode.AUDIO_FORMAT_INVALID,
            f"Unsupported format: {sample_rate} Hz, {channels} channel(s)",
        )
    return AudioFormat(sample_rate=sample_rate, channels=channels)


class VoiceConnection:
    """One client WebSocket bound to a session id."""

    def __init__(self, websocket: WebSocket, session_id: str, client_ip: str) -> None:
        self.websocket = websocket
        self.session_id = session_id
        self.client_ip = client_ip
        self.closed = False
        self._send_lock = asyncio.Lock()
        self._tasks: Set[asyncio.Task] = set()

    async def send(self, message: Dict[str, Any]) -> bool:
        """Send a JSON message; returns False once the socket is gone."""
        if self.closed:
            return False
        async with self._send_lock:
            if self.closed:
                return False
            try:
                await self.websocket.send_json(message)
            except (WebSocketDisconnect, RuntimeError):
                self.closed = True
                return False
        return True

    async def close(self, code: int = 1000) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            await self.websocket.close(code=code)
        except RuntimeError:
            pass

    def track(self, task: asyncio.Task) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)


def build_ws_app(runtime: ApplicationRuntime, app: FastAPI | None = None) -> FastAPI:
    """Register the voice WebSocket route on ``app`` (a new app when omitted)."""
    app = app or FastAPI()
    metrics = runtime.metrics
    pipeline = runtime.pipeline
    connections = runtime.connections
    transport = runtime.config.transport

    rate_limiter = KeyedRateLimiter(
        transport.ws_rate_limit_rps, transport.ws_rate_limit_burst or None
    )
    allowlist, _ = _parse_networks(transport.allowlist, "allowlist")
    trusted_proxies, trusted_proxy_hosts = _parse_networks(
        transport.trusted_proxies, "trusted proxy"
    )
    idle_timeout = transport.max_idle_sec if transport.max_idle_sec > 0 else None
    capture_format = AudioFormat(
        sample_rate=pipeline.config.sample_rate, channels=pipeline.config.channels
    )

    def _enforce_allowlist(client_ip: str) -> None:
        if not allowlist:
            return
        try:
            addr = ipaddress.ip_address(client_ip)
        except ValueError as exc:
            raise VoiceError(ErrorCode.CONNECTION_FORBIDDEN) from exc
        if not any(addr in network for network in allowlist):
            raise VoiceError(ErrorCode.CONNECTION_FORBIDDEN)

    def _enforce_rate_limit(client_ip: str) -> None:
        key = client_ip or "unknown"
        if not rate_limiter.allow(key):
            metrics.record_rate_limit_block("ws", key)
            raise VoiceError(ErrorCode.CONNECTION_RATE_LIMITED)

    def _resolve_session_id(websocket: WebSocket) -> str:
        candidate = websocket.headers.get(SESSION_HEADER) or websocket.query_params.get(
            "sessionId"
        )
        if candidate and _valid_session_id(candidate):
            return candidate
        if candidate:
            LOGGER.warning("Ignoring invalid session id from client: %r", candidate[:64])
        return f"session_{now_ms()}"

    async def _attach(connection: VoiceConnection, session_id: str) -> None:
        connection.session_id = session_id
        previous = connections.register(session_id, connection)
        pipeline.open_session(session_id)
        if previous is not None:
            await previous.send(
                ws_payload_for(
                    ErrorCode.SESSION_NOT_FOUND,
                    "Session was taken over by another connection",
                    sessionId=session_id,
                )
            )
            await previous.close(code=_CLOSE_REPLACED)

    def _detach(connection: VoiceConnection) -> None:
        session_id = connection.session_id
        if connections.unregister(session_id, connection):
            pipeline.clear_session(session_id)
            LOGGER.info("Session %s torn down", session_id)

    async def _deliver(connection: VoiceConnection, result: ProcessingResult) -> None:
        if connection.closed or connection.session_id != result.session_id:
            LOGGER.debug("Discarding cycle output for closed session %s", result.session_id)
            return
        if result.transcript:
            await connection.send(
                build_message(
                    MessageType.TRANSCRIPTION,
                    sessionId=result.session_id,
                    transcript=result.transcript,
                    confidence=result.confidence,
                )
            )
        if result.audio:
            await connection.send(
                build_message(
                    MessageType.AUDIO_RESPONSE,
                    sessionId=result.session_id,
                    audio=audio.to_base64(result.audio),
                    text=result.reply,
                    sampleRate=result.sample_rate,
                    format="pcm_s16le",
                    processingTime=round(result.processing_time_ms, 1),
                )
            )
        if result.error_code is not None:
            await connection.send(
                ws_payload_for(
                    result.error_code,
                    result.error_detail,
                    sessionId=result.session_id,
                    **result.error_fields,
                )
            )

    async def _cycle(connection: VoiceConnection, buffer: SessionAudioBuffer) -> None:
        result = await pipeline.run_cycle(buffer)
        await _deliver(connection, result)

    async def _handle_audio(connection: VoiceConnection, message: InboundMessage) -> None:
        data = decode_audio_payload(message)
        session_id = connection.session_id
        try:
            outcome = pipeline.ingest(session_id, data)
        except AudioValidationError as exc:
            await connection.send(
                build_message(
                    MessageType.AUDIO_RECEIVED,
                    sessionId=session_id,
                    accepted=False,
                    reason=exc.code.value,
                    bytes=len(data),
                )
            )
            return
        await connection.send(
            build_message(
                MessageType.AUDIO_RECEIVED,
                sessionId=session_id,
                accepted=True,
                bytes=len(outcome.chunk.data),
                bufferedMs=round(outcome.buffered_ms, 1),
            )
        )
        if outcome.cycle_ready:
            connection.track(asyncio.create_task(_cycle(connection, outcome.buffer)))

    async def _handle_session_init(connection: VoiceConnection, message: InboundMessage) -> None:
        requested = message.session_id
        if requested is not None and not _valid_session_id(requested):
            raise VoiceError(ErrorCode.SESSION_ID_INVALID)
        audio_format = _format_from_payload(message.payload, capture_format)
        if requested and requested != connection.session_id:
            _detach(connection)
            await _attach(connection, requested)
            set_session_id(requested)
        if audio_format is not None:
            pipeline.open_session(connection.session_id, audio_format)
        await connection.send(
            build_message(
                MessageType.CONNECTION_ESTABLISHED, sessionId=connection.session_id
            )
        )

    async def _dispatch(connection: VoiceConnection, message: InboundMessage) -> None:
        kind = message.known_type()
        if kind is MessageType.AUDIO_DATA:
            await _handle_audio(connection, message)
        elif kind is MessageType.SESSION_INIT:
            await _handle_session_init(connection, message)
        elif kind is MessageType.START_STREAMING:
            await connection.send(
                build_message(MessageType.STREAMING_STARTED, sessionId=connection.session_id)
            )
        elif kind is MessageType.STOP_STREAMING:
            await connection.send(
                build_message(MessageType.STREAMING_STOPPED, sessionId=connection.session_id)
            )
        elif kind is MessageType.PING:
            await connection.send(build_message(MessageType.PONG))
        else:
            LOGGER.warning("Unknown message type ignored: %s", message.type)

    async def _receive(websocket: WebSocket) -> Dict[str, Any]:
        if idle_timeout is None:
            return await websocket.receive()
        return await asyncio.wait_for(websocket.receive(), timeout=idle_timeout)

    @app.websocket(VOICE_PATH)
    async def voice_stream(websocket: WebSocket) -> None:
        await websocket.accept()
        client_ip = _extract_ws_client_ip(websocket, trusted_proxy_hosts, trusted_proxies)
        if not runtime.accepting_connections:
            await websocket.send_json(
                ws_payload_for(ErrorCode.CONNECTION_FORBIDDEN, "Server is shutting down")
            )
            await websocket.close(code=_CLOSE_UNAVAILABLE)
            return
        try:
            _enforce_allowlist(client_ip)
            _enforce_rate_limit(client_ip)
        except VoiceError as exc:
            metrics.record_error(exc.code.value)
            await websocket.send_json(ws_payload_for(exc.code, exc.detail))
            await websocket.close(code=_CLOSE_FORBIDDEN)
            return

        session_id = _resolve_session_id(websocket)
        connection = VoiceConnection(websocket, session_id, client_ip)
        set_session_id(session_id)
        await _attach(connection, session_id)
        LOGGER.info("Voice connection opened from %s", client_ip or "unknown")
        await connection.send(
            build_message(MessageType.CONNECTION_ESTABLISHED, sessionId=session_id)
        )

        try:
            while not connection.closed:
                try:
                    frame = await _receive(websocket)
                except asyncio.TimeoutError:
                    LOGGER.info("Closing idle connection after %.1fs", idle_timeout)
                    await connection.send(
                        ws_payload_for(
                            ErrorCode.SESSION_IDLE_TIMEOUT, sessionId=connection.session_id
                        )
                    )
                    await connection.close(code=_CLOSE_IDLE)
                    break
                if frame.get("type") == "websocket.disconnect":
                    break
                try:
                    if frame.get("bytes") is not None:
                        message = binary_frame(frame["bytes"])
                    else:
                        message = parse_text_frame(frame.get("text") or "")
                    await _dispatch(connection, message)
                except VoiceError as exc:
                    LOGGER.warning("Message rejected: %s", exc)
                    metrics.record_error(exc.code.value)
                    await connection.send(
                        ws_payload_for(exc.code, exc.detail, sessionId=connection.session_id)
                    )
                except Exception as exc:  # pylint: disable=broad-except
                    LOGGER.exception("Message handler failed")
                    metrics.record_error(ErrorCode.MESSAGE_HANDLER_FAILED.value)
                    await connection.send(
                        ws_payload_for(
                            ErrorCode.MESSAGE_HANDLER_FAILED,
                            str(exc) or None,
                            sessionId=connection.session_id,
                        )
                    )
        except (WebSocketDisconnect, RuntimeError) as exc:
            LOGGER.info("Voice connection dropped: %s", exc)
        finally:
            connection.closed = True
            _detach(connection)
            LOGGER.info(
                "Voice connection closed (in-flight cycles=%d)", connection.pending_tasks
            )
            clear_session_id()

    return app


__all__ = ["SESSION_HEADER", "VOICE_PATH", "VoiceConnection", "build_ws_app"]
