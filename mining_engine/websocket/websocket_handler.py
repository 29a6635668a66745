"""
WebSocket endpoint handler for real-time communication.
"""

import json
import re
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from .connection_manager import Connection, ConnectionManager, get_connection_manager
from .schemas import ConnectionStatusMessage, MessageType, SubscriptionMessage

import structlog

logger = structlog.get_logger(__name__)

OWNER_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.:@-]{1,64}$")
MAX_CONNECTIONS_PER_OWNER = 5


def is_valid_owner_id(owner_id: str) -> bool:
    return bool(owner_id) and OWNER_ID_PATTERN.match(owner_id) is not None


def _manager_for(websocket: WebSocket) -> ConnectionManager:
    app = websocket.scope.get("app")
    if app is not None and getattr(app.state, "connection_manager", None) is not None:
        return app.state.connection_manager
    return get_connection_manager()


async def websocket_handler(websocket: WebSocket, owner_id: str, client_id: Optional[str] = None):
    """
    WebSocket endpoint for real-time earnings updates.

    Clients may send ``{"type": "ping"}``, ``{"type": "subscribe", "events": [...]}``
    and ``{"type": "unsubscribe", "events": [...]}``.
    """
    if not is_valid_owner_id(owner_id):
        await websocket.close(code=4002, reason="Invalid owner id")
        return

    manager = _manager_for(websocket)
    if manager.connection_count(owner_id) >= MAX_CONNECTIONS_PER_OWNER:
        logger.warning("WebSocket connection limit exceeded", owner_id=owner_id)
        await websocket.close(code=4004, reason="Connection limit exceeded")
        return

    client_id = client_id or f"{owner_id}_{uuid4().hex[:8]}"
    connection = None

    try:
        connection = await manager.connect(websocket, owner_id, client_id)

        while True:
            message = await websocket.receive_text()
            await _handle_client_message(connection, message)

    except WebSocketDisconnect:
        logger.info("WebSocket client disconnected", client_id=client_id, owner_id=owner_id)
    except Exception as e:
        logger.error(
            "WebSocket connection error",
            client_id=client_id,
            owner_id=owner_id,
            error=str(e)
        )
    finally:
        if connection:
            await manager.disconnect(client_id)


async def _handle_client_message(connection: Connection, message_text: str) -> None:
    """Handle incoming client messages."""
    try:
        message_data = json.loads(message_text)
    except json.JSONDecodeError:
        logger.warning("Invalid JSON received from client", client_id=connection.client_id)
        await connection.send_error("INVALID_JSON", "Invalid JSON format in message")
        return

    message_type = message_data.get("type") if isinstance(message_data, dict) else None

    if message_type == "ping":
        connection.update_ping()
        await connection.send_message(ConnectionStatusMessage(
            data={"message": "pong", "timestamp": datetime.now(timezone.utc).isoformat()}
        ))
    elif message_type in ("subscribe", "unsubscribe"):
        await _handle_subscription_request(connection, message_type, message_data.get("events", []))
    else:
        logger.warning(
            "Unknown message type received",
            client_id=connection.client_id,
            message_type=message_type
        )
        await connection.send_error("UNKNOWN_MESSAGE", f"Unknown message type: {message_type}")


async def _handle_subscription_request(connection: Connection, action: str, events) -> None:
    valid = []
    for event_type_str in events:
        try:
            valid.append(MessageType(event_type_str))
        except ValueError:
            logger.warning(
                "Invalid event type in subscription",
                client_id=connection.client_id,
                event_type=event_type_str
            )

    if action == "subscribe":
        connection.subscribe(valid)
    else:
        connection.unsubscribe(valid)

    await connection.send_message(SubscriptionMessage(
        data={
            "success": True,
            "action": action,
            "events": [event.value for event in valid],
            "subscriptions": sorted(t.value for t in connection.subscriptions),
        }
    ))


websocket_router = APIRouter()


@websocket_router.websocket("/ws/{owner_id}")
async def websocket_endpoint(websocket: WebSocket, owner_id: str):
    client_id = websocket.query_params.get("client_id")
    await websocket_handler(websocket, owner_id, client_id)
