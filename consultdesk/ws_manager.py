import asyncio
import logging
from typing import Dict, Set

logger = logging.getLogger(__name__)


class WebSocketManager:
    """Tracks websocket connections per session id and fans events out to them."""

    def __init__(self):
        # session_id -> set of websocket objects
        self._conns: Dict[str, Set] = {}
        self._lock = asyncio.Lock()

    async def register(self, session_id: str, ws):
        async with self._lock:
            self._conns.setdefault(session_id, set()).add(ws)

    async def unregister(self, session_id: str, ws):
        async with self._lock:
            if session_id in self._conns and ws in self._conns[session_id]:
                self._conns[session_id].remove(ws)
                if not self._conns[session_id]:
                    del self._conns[session_id]

    def connections(self, session_id: str) -> int:
        return len(self._conns.get(session_id, ()))

    async def broadcast(self, session_id: str, msg: dict):
        async with self._lock:
            targets = list(self._conns.get(session_id, ()))

        payload = dict(msg, session_id=session_id)
        for ws in targets:
            try:
                await ws.send_json(payload)
            except Exception as e:
                # a dead socket is dropped; the disconnect handler also unregisters it
                logger.debug('websocket send failed for session %s: %s', session_id, e)
                await self.unregister(session_id, ws)
