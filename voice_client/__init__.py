"""Reference client for the voice server WebSocket protocol."""

from .sdk import ReconnectPolicy, VoiceClient

__all__ = ["ReconnectPolicy", "VoiceClient"]
