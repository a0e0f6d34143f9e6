"""
Client status channel
Pushes human-readable synchronization status lines to users connected over WebSocket
"""

import json
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Protocol, Set

import structlog
from fastapi import WebSocket, WebSocketDisconnect

logger = structlog.get_logger(__name__)


class ClientChannel(Protocol):
    async def post_message(self, user_id: str, sender: str, message: str, level: str = "info") -> None: ...


class WebSocketChannelManager:
    """Tracks WebSocket connections per user and delivers status messages to them"""

    def __init__(self):
        self.active_connections: Dict[str, WebSocket] = {}
        self.user_connections: Dict[str, Set[str]] = {}

    async def connect(self, websocket: WebSocket, user_id: str) -> str:
        await websocket.accept()
        connection_id = f"ws_{uuid.uuid4().hex[:8]}"
        self.active_connections[connection_id] = websocket
        self.user_connections.setdefault(user_id, set()).add(connection_id)
        logger.info("Status channel connected", connection_id=connection_id, user_id=user_id)
        return connection_id

    def disconnect(self, connection_id: str, user_id: str) -> None:
        self.active_connections.pop(connection_id, None)
        connections = self.user_connections.get(user_id)
        if connections is not None:
            connections.discard(connection_id)
            if not connections:
                del self.user_connections[user_id]
        logger.info("Status channel closed", connection_id=connection_id, user_id=user_id)

    async def post_message(self, user_id: str, sender: str, message: str, level: str = "info") -> None:
        payload = {
            "type": "sync_status",
            "sender": sender,
            "level": level,
            "message": message,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        for connection_id in list(self.user_connections.get(user_id, ())):
            await self._send(connection_id, user_id, payload)

    async def _send(self, connection_id: str, user_id: str, payload: Dict[str, Any]) -> None:
        websocket = self.active_connections.get(connection_id)
        if websocket is None:
            return
        try:
            await websocket.send_text(json.dumps(payload))
        except WebSocketDisconnect:
            self.disconnect(connection_id, user_id)

    async def serve(self, websocket: WebSocket, user_id: str) -> None:
        """Hold a connection open until the client leaves"""
        connection_id = await self.connect(websocket, user_id)
        try:
            while True:
                data = await websocket.receive_text()
                if data == "ping":
                    await websocket.send_text(json.dumps({"type": "pong"}))
        except WebSocketDisconnect:
            logger.debug("Status channel client disconnected", connection_id=connection_id)
        finally:
            self.disconnect(connection_id, user_id)
