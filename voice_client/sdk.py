"""Minimal WebSocket client SDK for the voice server."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Union
from urllib.parse import urlencode

import numpy as np
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from voice_server.utils.audio import float32_to_pcm16

NORMAL_CLOSURE = 1000
LOGGER = logging.getLogger("voice_client")

Message = Dict[str, Any]
Handler = Callable[[Message], Union[None, Awaitable[None]]]


@dataclass(frozen=True)
class ReconnectPolicy:
    """Exponential reconnect schedule: ``base * 2**(attempt - 1)``."""

    max_attempts: int = 5
    base_delay_sec: float = 1.0

    def delay_for(self, attempt: int) -> float:
        return max(0.0, self.base_delay_sec) * (2 ** max(0, attempt - 1))


def _now_ms() -> int:
    return int(time.time() * 1000)


def _close_code(exc: ConnectionClosed) -> Optional[int]:
    frame = exc.rcvd
    return frame.code if frame is not None else None


class VoiceClient:
    """Speaks the voice protocol over one WebSocket with automatic reconnects.

    Handlers are registered per message type with :meth:`on`; they may be plain
    functions or coroutines. :meth:`run` reads messages until the server closes
    normally, :meth:`close` is called, or the reconnect budget is spent.
    """

    def __init__(
        self,
        url: str,
        session_id: Optional[str] = None,
        *,
        sample_rate: Optional[int] = None,
        channels: Optional[int] = None,
        reconnect: Optional[ReconnectPolicy] = None,
        connector: Callable[[str], Awaitable[Any]] = websockets.connect,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.url = url
        self.session_id = session_id or f"session_{_now_ms()}"
        self.sample_rate = sample_rate
        self.channels = channels
        self.reconnect = reconnect or ReconnectPolicy()
        self.reconnect_attempts = 0
        self._connector = connector
        self._sleep = sleep
        self._ws: Any = None
        self._closing = False
        self._handlers: Dict[str, Handler] = {}

    @property
    def endpoint(self) -> str:
        separator = "&" if "?" in self.url else "?"
        return f"{self.url}{separator}{urlencode({'sessionId': self.session_id})}"

    @property
    def connected(self) -> bool:
        return self._ws is not None

    def on(self, message_type: str, handler: Handler) -> None:
        """Register the handler for ``message_type`` (replaces any previous one)."""
        self._handlers[message_type] = handler

    async def connect(self) -> None:
        if self._ws is not None:
            return
        self._ws = await self._connector(self.endpoint)
        self.reconnect_attempts = 0
        LOGGER.info("Connected to %s (session_id=%s)", self.url, self.session_id)
        init: Message = {
            "type": "session_init",
            "sessionId": self.session_id,
            "timestamp": _now_ms(),
        }
        if self.sample_rate is not None:
            init["sampleRate"] = self.sample_rate
        if self.channels is not None:
            init["channels"] = self.channels
        await self.send(init)

    async def run(self) -> bool:
        """Receive until a normal close. Returns False once reconnects are exhausted."""
        while not self._closing:
            code: Optional[int] = None
            try:
                await self.connect()
                async for raw in self._ws:
                    await self._handle_raw(raw)
                code = getattr(self._ws, "close_code", NORMAL_CLOSURE)
            except ConnectionClosed as exc:
                code = _close_code(exc)
                LOGGER.warning("Connection closed (code=%s)", code)
            except (OSError, WebSocketException) as exc:
                LOGGER.warning("Connection to %s failed: %s", self.url, exc)
            self._ws = None

            if self._closing or code == NORMAL_CLOSURE:
                return True
            if self.reconnect_attempts >= self.reconnect.max_attempts:
                LOGGER.error(
                    "Giving up after %d reconnect attempts", self.reconnect_attempts
                )
                return False
            self.reconnect_attempts += 1
            delay = self.reconnect.delay_for(self.reconnect_attempts)
            LOGGER.info(
                "Reconnect attempt %d in %.1fs", self.reconnect_attempts, delay
            )
            await self._sleep(delay)
        return True

    async def send(self, message: Message) -> bool:
        if self._ws is None:
            LOGGER.warning("Not connected; dropping %s message", message.get("type"))
            return False
        await self._ws.send(json.dumps(message))
        return True

    async def send_audio(self, pcm: bytes, *, binary: bool = False) -> bool:
        """Send PCM16 bytes as a binary frame or as a JSON list of byte values."""
        if binary:
            if self._ws is None:
                return False
            await self._ws.send(bytes(pcm))
            return True
        return await self.send(
            {"type": "audio_data", "data": list(bytes(pcm)), "timestamp": _now_ms()}
        )

    async def send_float_audio(self, samples: np.ndarray, *, binary: bool = False) -> bool:
        return await self.send_audio(float32_to_pcm16(samples), binary=binary)

    async def start_streaming(self) -> bool:
        return await self.send({"type": "start_streaming", "timestamp": _now_ms()})

    async def stop_streaming(self) -> bool:
        return await self.send({"type": "stop_streaming", "timestamp": _now_ms()})

    async def ping(self) -> bool:
        return await self.send({"type": "ping", "timestamp": _now_ms()})

    async def close(self) -> None:
        self._closing = True
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close(code=NORMAL_CLOSURE, reason="Client disconnect")

    async def _handle_raw(self, raw: Union[str, bytes]) -> None:
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            LOGGER.warning("Failed to parse server message")
            return
        if not isinstance(message, dict):
            return
        handler = self._handlers.get(str(message.get("type")))
        if handler is None:
            LOGGER.debug("Unhandled message: %s", message.get("type"))
            return
        outcome = handler(message)
        if inspect.isawaitable(outcome):
            await outcome
