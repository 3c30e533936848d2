from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from uuid import uuid4

from fastapi import WebSocket

logger = logging.getLogger(__name__)


@dataclass
class ConnectionInfo:
    """Metadata describing a single room WebSocket connection."""

    id: str
    websocket: WebSocket
    client_id: Optional[str] = None
    user_id: Optional[str] = None
    host_key: Optional[str] = None
    display_name: Optional[str] = None
    greeted: bool = False

    @property
    def identity(self) -> Optional[str]:
        return self.client_id or self.user_id

    async def send_json(self, message: Dict[str, Any]) -> None:
        """Proxy to the underlying WebSocket send_json method."""
        await self.websocket.send_json(message)


class WebSocketManager:
    def __init__(self):
        # Key: room_id, Value: {connection_id: ConnectionInfo}
        self.active_connections: Dict[str, Dict[str, ConnectionInfo]] = {}

    async def connect(self, websocket: WebSocket, room_id: str) -> str:
        """Accept a WebSocket for a room and return its connection id."""
        await websocket.accept()
        connection_id = str(uuid4())
        room_connections = self.active_connections.setdefault(room_id, {})
        room_connections[connection_id] = ConnectionInfo(
            id=connection_id, websocket=websocket
        )
        logger.debug(
            "WebSocket connected: room_id=%s connection_id=%s", room_id, connection_id
        )
        return connection_id

    def disconnect(self, room_id: str, connection_id: str) -> Optional[ConnectionInfo]:
        """Remove a connection from its room and return its metadata."""
        room_connections = self.active_connections.get(room_id)
        if not room_connections:
            return None

        connection = room_connections.pop(connection_id, None)
        if connection is not None:
            logger.debug(
                "WebSocket disconnected: room_id=%s connection_id=%s identity=%s",
                room_id,
                connection_id,
                connection.identity,
            )

        if not room_connections:
            self.active_connections.pop(room_id, None)
        return connection

    def get(self, room_id: str, connection_id: str) -> Optional[ConnectionInfo]:
        return self.active_connections.get(room_id, {}).get(connection_id)

    async def broadcast(
        self,
        room_id: str,
        message: Dict[str, Any],
        *,
        skip_connection: Optional[str] = None,
    ) -> List[ConnectionInfo]:
        """Send a message to every connection in a room.

        Sockets whose send fails are removed and returned to the caller.
        """
        room_connections = self.active_connections.get(room_id, {})
        disconnected: list[str] = []

        # Iterate over a snapshot; disconnect() may run while sends are awaited.
        for connection_id, connection in list(room_connections.items()):
            if skip_connection and connection_id == skip_connection:
                continue

            try:
                await connection.send_json(message)
            except Exception:  # noqa: BLE001
                logger.warning(
                    "Broadcast send failed: room_id=%s connection_id=%s",
                    room_id,
                    connection_id,
                )
                disconnected.append(connection_id)

        dropped: List[ConnectionInfo] = []
        for connection_id in disconnected:
            connection = self.disconnect(room_id, connection_id)
            if connection is not None:
                dropped.append(connection)
        return dropped

    async def send_personal_message(
        self,
        room_id: str,
        connection_id: str,
        message: Dict[str, Any],
    ) -> None:
        """Send a message to a specific connection in a room."""
        connection = self.get(room_id, connection_id)
        if not connection:
            return
        try:
            await connection.send_json(message)
        except Exception:  # noqa: BLE001
            self.disconnect(room_id, connection_id)

    def active_users(self, room_id: str) -> Dict[str, ConnectionInfo]:
        """Return the active connection metadata for a room."""
        return self.active_connections.get(room_id, {}).copy()

    def connection_count(self) -> int:
        return sum(len(connections) for connections in self.active_connections.values())

    def identify(
        self,
        room_id: str,
        connection_id: str,
        *,
        client_id: Optional[str],
        user_id: Optional[str],
        host_key: Optional[str],
        display_name: Optional[str],
    ) -> Optional[ConnectionInfo]:
        """Record the identity a connection announced in its handshake."""
        connection = self.get(room_id, connection_id)
        if connection:
            connection.client_id = client_id
            connection.user_id = user_id
            connection.host_key = host_key
            connection.display_name = display_name
            connection.greeted = True
            logger.debug(
                "Identified WebSocket: room_id=%s connection_id=%s identity=%s",
                room_id,
                connection_id,
                connection.identity,
            )
        return connection
