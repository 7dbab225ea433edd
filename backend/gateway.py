from typing import Dict, Iterable, Optional
import logging

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ConnectionGateway:
    """Delivers JSON events to live WebSocket connections by connection id."""

    def __init__(self):
        self.connections: Dict[str, WebSocket] = {}

    def register(self, connection_id: str, websocket: WebSocket):
        self.connections[connection_id] = websocket

    def unregister(self, connection_id: str) -> Optional[WebSocket]:
        return self.connections.pop(connection_id, None)

    async def send(self, connection_id: Optional[str], message: dict) -> bool:
        ws = self.connections.get(connection_id) if connection_id else None
        if not ws:
            return False
        try:
            await ws.send_json(message)
            return True
        except Exception:
            # The receive loop for this socket runs the disconnect path
            logger.warning("Dropping %s for unreachable connection %s",
                           message.get("type"), connection_id)
            self.connections.pop(connection_id, None)
            return False

    async def send_many(self, connection_ids: Iterable[str], message: dict):
        for connection_id in list(connection_ids):
            await self.send(connection_id, message)
