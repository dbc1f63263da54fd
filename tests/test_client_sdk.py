import asyncio
import json
from typing import List, Optional

import numpy as np
import pytest
from websockets.exceptions import ConnectionClosedError

from voice_client import ReconnectPolicy, VoiceClient


class FakeWebSocket:
    def __init__(
        self,
        incoming: Optional[List[str]] = None,
        close_code: int = 1000,
        error: Optional[Exception] = None,
    ):
        self.incoming = list(incoming or [])
        self.close_code = close_code
        self.error = error
        self.sent: List[object] = []
        self.closed_with: Optional[tuple] = None

    async def send(self, data) -> None:
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed_with = (code, reason)

    async def __aiter__(self):
        for raw in self.incoming:
            yield raw
        if self.error is not None:
            raise self.error

    def sent_json(self) -> List[dict]:
        return [json.loads(item) for item in self.sent if isinstance(item, str)]


class Connector:
    def __init__(self, sockets):
        self.sockets = list(sockets)
        self.urls: List[str] = []

    async def __call__(self, url: str):
        self.urls.append(url)
        item = self.sockets.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def _client(connector, **kwargs):
    delays: List[float] = []

    async def sleep(delay: float) -> None:
        delays.append(delay)

    client = VoiceClient("ws://server/api/voice", "s1", connector=connector, sleep=sleep, **kwargs)
    return client, delays


def test_reconnect_policy_delays():
    """Test exponential backoff starting at the base delay."""
    policy = ReconnectPolicy()
    assert [policy.delay_for(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 8.0, 16.0]
    assert ReconnectPolicy(base_delay_sec=0.5).delay_for(3) == 2.0


def test_connect_sends_session_init():
    """Test the session id is sent in the URL and in session_init."""
    ws = FakeWebSocket()
    connector = Connector([ws])
    client, _ = _client(connector, sample_rate=16000, channels=1)

    asyncio.run(client.connect())

    assert connector.urls == ["ws://server/api/voice?sessionId=s1"]
    init = ws.sent_json()[0]
    assert init["type"] == "session_init"
    assert init["sessionId"] == "s1"
    assert init["sampleRate"] == 16000
    assert init["channels"] == 1
    assert client.connected


def test_send_requires_connection():
    """Test sends are refused before connecting."""
    client, _ = _client(Connector([]))
    assert asyncio.run(client.ping()) is False
    assert asyncio.run(client.send_audio(b"\x01\x02", binary=True)) is False


def test_audio_is_sent_as_list_or_binary():
    """Test audio payload encodings."""
    ws = FakeWebSocket()
    client, _ = _client(Connector([ws]))

    async def scenario():
        await client.connect()
        await client.send_audio(b"\x01\xff")
        await client.send_audio(b"\x03\x04", binary=True)
        await client.send_float_audio(np.array([0.0, 1.0, -2.0], dtype=np.float32))

    asyncio.run(scenario())

    audio = [m for m in ws.sent_json() if m["type"] == "audio_data"]
    assert audio[0]["data"] == [1, 255]
    assert ws.sent[2] == b"\x03\x04"
    assert bytes(audio[1]["data"]) == np.array([0, 32767, -32767], dtype="<i2").tobytes()


def test_run_dispatches_to_sync_and_async_handlers():
    """Test handlers receive parsed messages and a normal close ends run."""
    ws = FakeWebSocket(
        [
            json.dumps({"type": "connection_established", "sessionId": "s1"}),
            "garbage",
            json.dumps({"type": "transcription", "transcript": "hello"}),
            json.dumps({"type": "unhandled"}),
        ]
    )
    client, delays = _client(Connector([ws]))
    seen = []

    async def on_transcription(message):
        seen.append(message["transcript"])

    client.on("connection_established", lambda m: seen.append(m["sessionId"]))
    client.on("transcription", on_transcription)

    assert asyncio.run(client.run()) is True
    assert seen == ["s1", "hello"]
    assert delays == []
    assert client.connected is False


def test_run_gives_up_after_max_attempts():
    """Test failing connects back off then stop after five retries."""
    connector = Connector([OSError("refused")] * 6)
    client, delays = _client(connector)

    assert asyncio.run(client.run()) is False
    assert delays == [1.0, 2.0, 4.0, 8.0, 16.0]
    assert len(connector.urls) == 6


def test_abnormal_close_reconnects():
    """Test an abnormal close triggers one reconnect and resets the counter."""
    dropped = FakeWebSocket(error=ConnectionClosedError(None, None))
    healthy = FakeWebSocket()
    client, delays = _client(Connector([dropped, healthy]))

    assert asyncio.run(client.run()) is True
    assert delays == [1.0]
    assert client.reconnect_attempts == 0
    assert healthy.sent_json()[0]["type"] == "session_init"


def test_close_uses_normal_closure():
    """Test client close sends code 1000 and stops reconnecting."""
    ws = FakeWebSocket()
    client, _ = _client(Connector([ws]))

    async def scenario():
        await client.connect()
        await client.close()
        return await client.run()

    assert asyncio.run(scenario()) is True
    assert ws.closed_with == (1000, "Client disconnect")


@pytest.mark.parametrize("close_code", [1006, 4408])
def test_non_normal_close_code_reconnects(close_code):
    """Test iteration ending with a non-1000 code schedules a reconnect."""
    first = FakeWebSocket(close_code=close_code)
    second = FakeWebSocket()
    client, delays = _client(Connector([first, second]))

    assert asyncio.run(client.run()) is True
    assert delays == [1.0]
