"""
Registry of live admin websocket connections.

Owned by the HTTP layer: sockets are registered on connect, touched on
every frame they send, deregistered on disconnect and pruned once they
stay silent past the heartbeat timeout. Nothing here survives a restart,
and nothing in the puzzle core depends on it.
"""
import json
import time
from typing import Any, Dict, Optional

from .logging_utils import get_logger

logger = get_logger("artalyze.realtime")

HEARTBEAT_TIMEOUT = 90.0


def _prepare_message(event: dict) -> Optional[str]:
    try:
        return json.dumps(event, default=str)
    except (TypeError, ValueError):
        return None


class ConnectionRegistry:
    def __init__(self, heartbeat_timeout: float = HEARTBEAT_TIMEOUT):
        self.heartbeat_timeout = heartbeat_timeout
        self._connections: Dict[Any, Dict[str, float]] = {}

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, ws) -> bool:
        return ws in self._connections

    def register(self, ws) -> None:
        now = time.time()
        self._connections[ws] = {"connected_at": now, "last_seen": now}
        logger.info("ws_registered", extra={"ws_count": len(self._connections)})

    def touch(self, ws) -> None:
        meta = self._connections.get(ws)
        if meta is not None:
            meta["last_seen"] = time.time()

    def deregister(self, ws) -> None:
        if self._connections.pop(ws, None) is not None:
            logger.info("ws_deregistered", extra={"ws_count": len(self._connections)})

    def prune(self, now: Optional[float] = None) -> int:
        """Drop connections silent for longer than the heartbeat timeout."""
        now = now if now is not None else time.time()
        stale = [ws for ws, meta in self._connections.items()
                 if now - meta["last_seen"] > self.heartbeat_timeout]
        for ws in stale:
            self.deregister(ws)
        return len(stale)

    async def broadcast(self, event: dict) -> int:
        """Send ``event`` to every live connection; returns how many got it."""
        self.prune()
        msg = _prepare_message(event)
        if msg is None:
            logger.warning("ws_event_unserializable", extra={"kind": event.get("type")})
            return 0
        dead = []
        sent = 0
        for ws in list(self._connections):
            try:
                await ws.send_text(msg)
                sent += 1
            except Exception as e:
                logger.debug("ws_send_error", extra={"error": str(e)})
                dead.append(ws)
        for ws in dead:
            self.deregister(ws)
        return sent
