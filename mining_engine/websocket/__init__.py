"""
WebSocket module for real-time communication.
"""

from .connection_manager import ConnectionManager, connection_manager, get_connection_manager
from .notification_service import RealtimeNotifier
from .schemas import MessageType, WebSocketMessage
from .websocket_handler import websocket_router

__all__ = [
    "ConnectionManager",
    "connection_manager",
    "get_connection_manager",
    "RealtimeNotifier",
    "MessageType",
    "WebSocketMessage",
    "websocket_router",
]
