"""Session id to live connection mapping."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Callable, Dict, Generic, List, Optional, TypeVar

from voice_server.utils.logger import LOGGER

ConnectionT = TypeVar("ConnectionT")


def _noop_connection_hook(_session_id: str) -> None:
    return None


@dataclass(frozen=True)
class ConnectionRegistryHooks:
    """Callbacks invoked on connection register/unregister."""

    on_register: Callable[[str], None] = _noop_connection_hook
    on_unregister: Callable[[str], None] = _noop_connection_hook


class ConnectionRegistry(Generic[ConnectionT]):
    """Thread-safe registry of one connection per session id.

    ``unregister`` only removes an entry when the caller still owns it, so a
    connection that was replaced cannot evict its successor. Hooks fire once
    per session id: ``on_register`` when the id gains its first connection
    and ``on_unregister`` when its current owner leaves.
    """

    def __init__(self, hooks: ConnectionRegistryHooks | None = None) -> None:
        self._lock = threading.Lock()
        self._connections: Dict[str, ConnectionT] = {}
        self._hooks = hooks or ConnectionRegistryHooks()

    def register(self, session_id: str, connection: ConnectionT) -> Optional[ConnectionT]:
        """Register a connection; returns the connection it replaced, if any."""
        with self._lock:
            previous = self._connections.get(session_id)
            self._connections[session_id] = connection
        if previous is None:
            self._hooks.on_register(session_id)
            return None
        if previous is connection:
            return None
        LOGGER.info("Connection for session %s replaced", session_id)
        return previous

    def lookup(self, session_id: str) -> Optional[ConnectionT]:
        with self._lock:
            return self._connections.get(session_id)

    def unregister(self, session_id: str, connection: ConnectionT) -> bool:
        with self._lock:
            current = self._connections.get(session_id)
            if current is None or current is not connection:
                return False
            del self._connections[session_id]
        self._hooks.on_unregister(session_id)
        return True

    def session_ids(self) -> List[str]:
        with self._lock:
            return list(self._connections)

    def __len__(self) -> int:
        with self._lock:
            return len(self._connections)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._connections


__all__ = ["ConnectionRegistry", "ConnectionRegistryHooks"]
