"""Console rendering of server messages for the CLI clients."""

import sys
from typing import Any, Dict


def print_message(message: Dict[str, Any]) -> None:
    kind = message.get("type")
    session_id = message.get("sessionId", "")
    if kind == "transcription":
        print(
            f"[TRANSCRIPT] [session_id={session_id}] "
            f"({message.get('confidence', 0.0):.2f}) {message.get('transcript', '')}"
        )
    elif kind == "audio_response":
        print(
            f"[REPLY] [session_id={session_id}] {message.get('text', '')} "
            f"(processing_time={message.get('processingTime')}ms)"
        )
    elif kind == "error":
        print(
            f"[ERROR] [session_id={session_id}] {message.get('code')}: "
            f"{message.get('error')}",
            file=sys.stderr,
        )
    elif kind == "connection_established":
        print(f"[SESSION] session_id={session_id} established")
