"""Transport layer helpers for the voice server."""

from .http_server import HttpServerHandle, build_http_app, start_http_server
from .ws_server import VOICE_PATH, build_ws_app

__all__ = [
    "HttpServerHandle",
    "VOICE_PATH",
    "build_http_app",
    "build_ws_app",
    "start_http_server",
]
