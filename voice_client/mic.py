import argparse
import asyncio
import base64
import queue
import sys
import threading
import time
from typing import Any, Dict, Optional, Union

import numpy as np
import sounddevice as sd

from voice_client.console import print_message
from voice_client.sdk import ReconnectPolicy, VoiceClient


class MicrophoneStream:
    """Capture float32 microphone audio in fixed-size blocks on a worker thread."""

    def __init__(self, sample_rate: int, chunk_ms: int, device: Optional[str] = None):
        self.sample_rate = sample_rate
        self.chunk_ms = chunk_ms
        self.device = device
        self.frames_per_chunk = max(int(sample_rate * (chunk_ms / 1000)), 1)
        self.queue: "queue.Queue[Union[np.ndarray, Exception, None]]" = queue.Queue()
        self.stop_event = threading.Event()
        self.thread: Optional[threading.Thread] = None
        self.samples_sent = 0

    def start(self) -> "MicrophoneStream":
        self.thread = threading.Thread(target=self._capture_loop, daemon=True)
        self.thread.start()
        return self

    def _capture_loop(self) -> None:
        try:
            with sd.InputStream(
                samplerate=self.sample_rate,
                blocksize=self.frames_per_chunk,
                channels=1,
                dtype="float32",
                device=self.device,
            ) as stream:
                while not self.stop_event.is_set():
                    data, overflowed = stream.read(self.frames_per_chunk)
                    if overflowed:
                        print(
                            "[MIC] Input overflow detected; audio may drop.",
                            file=sys.stderr,
                        )
                    self.queue.put(np.asarray(data, dtype=np.float32).reshape(-1))
        except Exception as exc:  # PortAudio errors, etc.
            self.queue.put(exc)
        finally:
            self.queue.put(None)

    def next_block(self, timeout: float = 0.5) -> Optional[np.ndarray]:
        """Next captured block, or None when capture has ended."""
        while not self.stop_event.is_set():
            try:
                item = self.queue.get(timeout=timeout)
            except queue.Empty:
                continue
            if item is None:
                return None
            if isinstance(item, Exception):
                raise item
            self.samples_sent += len(item)
            return item
        return None

    def stop(self) -> None:
        self.stop_event.set()
        if self.thread and self.thread.is_alive():
            self.thread.join(timeout=1.0)
        self.queue.put(None)

    @property
    def duration_seconds(self) -> float:
        if self.sample_rate <= 0:
            return 0.0
        return self.samples_sent / float(self.sample_rate)


def play_audio_response(message: Dict[str, Any]) -> None:
    encoded = message.get("audio")
    if not encoded:
        return
    samples = np.frombuffer(base64.b64decode(encoded), dtype="<i2")
    sample_rate = int(message.get("sampleRate") or 44100)
    sd.play(samples.astype(np.float32) / 32768.0, samplerate=sample_rate)


async def _stream_microphone(client: VoiceClient, mic: MicrophoneStream) -> None:
    while True:
        block = await asyncio.to_thread(mic.next_block)
        if block is None:
            break
        if client.connected:
            await client.send_float_audio(block)


async def run(
    url: str,
    sample_rate: int,
    chunk_ms: int,
    input_device: Optional[str],
    playback: bool,
    report_metrics: bool,
    session_id: Optional[str],
) -> None:
    client = VoiceClient(
        url,
        session_id=session_id,
        sample_rate=sample_rate,
        channels=1,
        reconnect=ReconnectPolicy(),
    )
    for kind in ("connection_established", "transcription", "error"):
        client.on(kind, print_message)

    def on_audio(message: Dict[str, Any]) -> None:
        print_message(message)
        if playback:
            play_audio_response(message)

    client.on("audio_response", on_audio)

    mic = MicrophoneStream(
        sample_rate=sample_rate, chunk_ms=chunk_ms, device=input_device
    ).start()
    print(
        f"[STREAM] session_id={client.session_id} microphone streaming at "
        f"{sample_rate} Hz ({chunk_ms} ms chunks). Press Ctrl+C to stop."
    )
    start = time.perf_counter()
    sender = asyncio.create_task(_stream_microphone(client, mic))
    try:
        await client.run()
    finally:
        mic.stop()
        sender.cancel()
        await client.close()
        total_wall = time.perf_counter() - start
        if report_metrics:
            print(
                f"[METRIC] audio_duration={mic.duration_seconds:.2f}s "
                f"wall_clock={total_wall:.2f}s"
            )


def main() -> None:
    parser = argparse.ArgumentParser(description="Voice conversation client (microphone)")
    parser.add_argument(
        "--server",
        default="ws://localhost:3001/api/voice",
        help="WebSocket URL of the voice endpoint (default: %(default)s)",
    )
    parser.add_argument(
        "--chunk-ms",
        type=int,
        default=100,
        help="Chunk size in milliseconds (default: %(default)s)",
    )
    parser.add_argument(
        "--sample-rate",
        type=int,
        default=16000,
        help="Microphone capture sample rate (default: %(default)s)",
    )
    parser.add_argument(
        "--device",
        default=None,
        help="Input device name/index (defaults to system mic)",
    )
    parser.add_argument("--session-id", default=None, help="Session id to use")
    parser.add_argument(
        "--no-playback",
        action="store_true",
        help="Print replies without playing synthesized audio",
    )
    parser.add_argument(
        "--metrics",
        action="store_true",
        help="Print capture duration on exit",
    )
    args = parser.parse_args()

    try:
        asyncio.run(
            run(
                url=args.server,
                sample_rate=args.sample_rate,
                chunk_ms=args.chunk_ms,
                input_device=args.device,
                playback=not args.no_playback,
                report_metrics=args.metrics,
                session_id=args.session_id,
            )
        )
    except KeyboardInterrupt:
        print("\n[STREAM] interrupted by user")


if __name__ == "__main__":
    main()
