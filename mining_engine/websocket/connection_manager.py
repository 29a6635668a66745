"""
WebSocket connection manager for handling real-time connections.
"""

import asyncio
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Set

from fastapi import WebSocket
from starlette.websockets import WebSocketState

from mining_engine.core.config import settings
from .schemas import (
    CONTROL_MESSAGES,
    DEFAULT_SUBSCRIPTIONS,
    ConnectionStatusMessage,
    ErrorMessage,
    MessageType,
    WebSocketMessage,
)

import structlog

logger = structlog.get_logger(__name__)


class Connection:
    """Represents a single WebSocket connection."""

    def __init__(self, websocket: WebSocket, owner_id: str, client_id: str):
        self.websocket = websocket
        self.owner_id = owner_id
        self.client_id = client_id
        self.connected_at = datetime.now(timezone.utc)
        self.last_ping = self.connected_at
        self.subscriptions: Set[MessageType] = set(DEFAULT_SUBSCRIPTIONS)

    async def send_message(self, message: WebSocketMessage) -> bool:
        """Send a message to this connection."""
        try:
            await self.websocket.send_json(message.model_dump(mode="json"))
            return True
        except Exception as e:
            logger.error(
                "Failed to send message to connection",
                client_id=self.client_id,
                owner_id=self.owner_id,
                error=str(e)
            )
            return False

    async def send_error(self, error_code: str, error_message: str) -> bool:
        return await self.send_message(ErrorMessage(data={"code": error_code, "message": error_message}))

    def update_ping(self) -> None:
        self.last_ping = datetime.now(timezone.utc)

    def subscribe(self, event_types: Iterable[MessageType]) -> None:
        self.subscriptions.update(event_types)

    def unsubscribe(self, event_types: Iterable[MessageType]) -> None:
        self.subscriptions.difference_update(event_types)

    def should_receive_message(self, message: WebSocketMessage) -> bool:
        return message.type in CONTROL_MESSAGES or message.type in self.subscriptions


class ConnectionManager:
    """Manages WebSocket connections grouped by owner."""

    def __init__(self, ping_interval: Optional[int] = None):
        # Active connections by client_id
        self.connections: Dict[str, Connection] = {}
        # Connections grouped by owner for owner-specific messaging
        self.owner_connections: Dict[str, Set[str]] = defaultdict(set)
        self._background_tasks: Set[asyncio.Task] = set()
        self._cleanup_interval = ping_interval or settings.websocket_ping_interval

    async def connect(self, websocket: WebSocket, owner_id: str, client_id: str) -> Connection:
        """Accept a new WebSocket connection."""
        await websocket.accept()

        connection = Connection(websocket, owner_id, client_id)
        self.connections[client_id] = connection
        self.owner_connections[owner_id].add(client_id)

        await connection.send_message(ConnectionStatusMessage(
            data={
                "status": "connected",
                "client_id": client_id,
                "owner_id": owner_id,
                "subscriptions": sorted(t.value for t in connection.subscriptions),
            }
        ))

        logger.info(
            "WebSocket connection established",
            client_id=client_id,
            owner_id=owner_id,
            total_connections=len(self.connections)
        )

        # Start cleanup task if this is the first connection
        if len(self.connections) == 1:
            self._start_cleanup_task()

        return connection

    async def disconnect(self, client_id: str, code: int = 1000) -> None:
        """Disconnect a WebSocket connection."""
        connection = self.connections.pop(client_id, None)
        if connection is None:
            return

        owner_id = connection.owner_id
        self.owner_connections[owner_id].discard(client_id)
        if not self.owner_connections[owner_id]:
            del self.owner_connections[owner_id]

        try:
            if connection.websocket.client_state != WebSocketState.DISCONNECTED:
                await connection.websocket.close(code=code)
        except Exception as e:
            logger.warning(
                "Error during WebSocket disconnection",
                client_id=client_id,
                owner_id=owner_id,
                error=str(e)
            )

        logger.info(
            "WebSocket connection closed",
            client_id=client_id,
            owner_id=owner_id,
            code=code,
            remaining_connections=len(self.connections)
        )

        # Stop cleanup task if no connections remain
        if not self.connections:
            self._stop_cleanup_task()

    def connection_count(self, owner_id: str) -> int:
        return len(self.owner_connections.get(owner_id, ()))

    async def send_to_owner(self, owner_id: str, message: WebSocketMessage) -> int:
        """Send a message to every connection of ``owner_id``; returns how many got it."""
        client_ids = list(self.owner_connections.get(owner_id, ()))
        sent_count = 0

        for client_id in client_ids:
            connection = self.connections.get(client_id)
            if connection is None or not connection.should_receive_message(message):
                continue
            if await connection.send_message(message):
                sent_count += 1
            else:
                await self.disconnect(client_id, code=1011)

        return sent_count

    def get_connection_stats(self) -> Dict[str, Any]:
        """Get current connection statistics."""
        return {
            "total_connections": len(self.connections),
            "active_owners": len(self.owner_connections),
            "connections_by_owner": {
                owner_id: len(client_ids)
                for owner_id, client_ids in self.owner_connections.items()
            },
        }

    async def ping_all_connections(self) -> int:
        """Send a status ping to all connections and drop the ones that fail."""
        now = datetime.now(timezone.utc).isoformat()
        failed_connections = []

        for client_id, connection in list(self.connections.items()):
            ping_msg = ConnectionStatusMessage(data={"ping": now})
            if await connection.send_message(ping_msg):
                connection.update_ping()
            else:
                failed_connections.append(client_id)

        for client_id in failed_connections:
            await self.disconnect(client_id, code=1011)

        return len(self.connections)

    async def close_all(self) -> None:
        for client_id in list(self.connections):
            await self.disconnect(client_id, code=1001)
        self._stop_cleanup_task()

    def _start_cleanup_task(self) -> None:
        if not self._background_tasks:
            task = asyncio.create_task(self._cleanup_loop())
            self._background_tasks.add(task)
            task.add_done_callback(self._background_tasks.discard)

    def _stop_cleanup_task(self) -> None:
        for task in self._background_tasks:
            if not task.done():
                task.cancel()
        self._background_tasks.clear()

    async def _cleanup_loop(self) -> None:
        """Background task to clean up stale connections."""
        try:
            while self.connections:
                await asyncio.sleep(self._cleanup_interval)
                active_count = await self.ping_all_connections()
                logger.debug("Connection health check completed", active_connections=active_count)
        except asyncio.CancelledError:
            logger.debug("Cleanup task cancelled")
        except Exception as e:
            logger.error("Error in cleanup loop", error=str(e))


# Global connection manager instance
connection_manager = ConnectionManager()


def get_connection_manager() -> ConnectionManager:
    """Get the global connection manager instance."""
    return connection_manager
