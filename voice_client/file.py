import argparse
import asyncio
import time
from typing import Any, Dict, Iterator, Optional, Tuple

import numpy as np
import soundfile as sf

from voice_client.console import print_message
from voice_client.sdk import VoiceClient

CHUNK_MS = 100  # 100ms


def load_audio(filepath: str) -> Tuple[np.ndarray, int]:
    audio, sr = sf.read(filepath, dtype="float32")
    if audio.ndim > 1:
        audio = audio[:, 0]  # mono only
    return audio, sr


def iter_blocks(audio: np.ndarray, sr: int, chunk_ms: int) -> Iterator[np.ndarray]:
    samples_per_chunk = max(int(sr * (chunk_ms / 1000)), 1)
    for idx in range(0, len(audio), samples_per_chunk):
        yield audio[idx : idx + samples_per_chunk]


async def run(
    path: str,
    url: str,
    chunk_ms: int,
    realtime: bool,
    wait_sec: float,
    session_id: Optional[str],
) -> Dict[str, int]:
    audio, sr = load_audio(path)
    client = VoiceClient(url, session_id=session_id, sample_rate=sr, channels=1)
    stats = {"chunks": 0, "transcripts": 0, "replies": 0}

    def on_message(message: Dict[str, Any]) -> None:
        print_message(message)
        if message.get("type") == "transcription":
            stats["transcripts"] += 1
        elif message.get("type") == "audio_response":
            stats["replies"] += 1

    for kind in ("connection_established", "transcription", "audio_response", "error"):
        client.on(kind, on_message)

    await client.connect()
    receiver = asyncio.create_task(client.run())
    start = time.perf_counter()
    sleep_time = chunk_ms / 1000.0
    try:
        for block in iter_blocks(audio, sr, chunk_ms):
            await client.send_float_audio(block)
            stats["chunks"] += 1
            if realtime:
                await asyncio.sleep(sleep_time)
        await asyncio.sleep(wait_sec)
    finally:
        await client.close()
        await receiver
    elapsed = time.perf_counter() - start
    print(
        f"[DONE] session_id={client.session_id} chunks={stats['chunks']} "
        f"transcripts={stats['transcripts']} replies={stats['replies']} "
        f"elapsed={elapsed:.2f}s audio={len(audio) / float(sr):.2f}s"
    )
    return stats


def main() -> None:
    parser = argparse.ArgumentParser(description="Stream an audio file to the voice server")
    parser.add_argument("path", help="Audio file readable by soundfile (wav, flac, ...)")
    parser.add_argument(
        "--server",
        default="ws://localhost:3001/api/voice",
        help="WebSocket URL of the voice endpoint (default: %(default)s)",
    )
    parser.add_argument(
        "--chunk-ms",
        type=int,
        default=CHUNK_MS,
        help="Chunk size in milliseconds (default: %(default)s)",
    )
    parser.add_argument(
        "--no-realtime",
        action="store_true",
        help="Send chunks as fast as possible instead of pacing in real time",
    )
    parser.add_argument(
        "--wait-sec",
        type=float,
        default=5.0,
        help="Seconds to wait for replies after the last chunk (default: %(default)s)",
    )
    parser.add_argument("--session-id", default=None, help="Session id to use")
    args = parser.parse_args()

    asyncio.run(
        run(
            path=args.path,
            url=args.server,
            chunk_ms=args.chunk_ms,
            realtime=not args.no_realtime,
            wait_sec=args.wait_sec,
            session_id=args.session_id,
        )
    )


if __name__ == "__main__":
    main()
