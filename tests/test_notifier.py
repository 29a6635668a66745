"""
Test best-effort notifications and the WebSocket connection manager.
"""

from decimal import Decimal

import pytest
from fastapi import WebSocketDisconnect
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketState

from mining_engine.main import create_app
from mining_engine.websocket.connection_manager import ConnectionManager
from mining_engine.websocket.notification_service import RealtimeNotifier
from mining_engine.websocket.schemas import MessageType, WebSocketMessage


class FakeWebSocket:
    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail
        self.accepted = False
        self.closed_with = None
        self.client_state = WebSocketState.CONNECTED

    async def accept(self):
        self.accepted = True

    async def send_json(self, data):
        if self.fail:
            raise ConnectionResetError("peer gone")
        self.sent.append(data)

    async def close(self, code=1000):
        self.closed_with = code
        self.client_state = WebSocketState.DISCONNECTED


class BrokenSink:
    async def send_to_owner(self, owner_id, message):
        raise RuntimeError("sink down")


async def test_failed_delivery_is_swallowed_and_counted():
    notifier = RealtimeNotifier(BrokenSink())

    sent = await notifier.notify_balance_updated("alice", "NON", Decimal("1"), Decimal("1"), "claim")

    assert sent == 0
    assert notifier.get_stats() == {"enabled": True, "sent": 0, "failed": 1}


async def test_disabled_notifier_sends_nothing(sink):
    notifier = RealtimeNotifier(sink, enabled=False)

    assert await notifier.notify_slot_created("alice", {"slot_id": 1}) == 0
    assert sink.messages == []


async def test_payload_carries_owner_and_strings(notifier, sink):
    await notifier.notify_earnings_claimed("alice", Decimal("4.5"), Decimal("10"), [1, 2])

    message = sink.of_type(MessageType.EARNINGS_CLAIMED, "alice")[0]
    assert message.data == {
        "owner_id": "alice",
        "amount": "4.5",
        "balance": "10",
        "slot_ids": [1, 2],
        "automatic": False,
    }


async def test_manager_delivers_to_every_owner_connection():
    manager = ConnectionManager(ping_interval=3600)
    first, second, other = FakeWebSocket(), FakeWebSocket(), FakeWebSocket()
    await manager.connect(first, "alice", "a1")
    await manager.connect(second, "alice", "a2")
    await manager.connect(other, "bob", "b1")

    try:
        sent = await manager.send_to_owner("alice", WebSocketMessage(type=MessageType.BALANCE_UPDATE, data={"balance": "1"}))

        assert sent == 2
        assert first.accepted
        assert first.sent[0]["type"] == "connection_status"
        assert first.sent[-1]["type"] == "balance_update"
        assert len(other.sent) == 1
        assert manager.get_connection_stats()["connections_by_owner"] == {"alice": 2, "bob": 1}
    finally:
        await manager.close_all()

    assert first.closed_with == 1001
    assert manager.get_connection_stats()["total_connections"] == 0


async def test_manager_respects_subscriptions_and_drops_dead_connections():
    manager = ConnectionManager(ping_interval=3600)
    quiet, dead = FakeWebSocket(), FakeWebSocket()
    quiet_connection = await manager.connect(quiet, "alice", "quiet")
    await manager.connect(dead, "alice", "dead")
    quiet_connection.unsubscribe([MessageType.SLOT_EXPIRED])
    dead.fail = True

    try:
        sent = await manager.send_to_owner("alice", WebSocketMessage(type=MessageType.SLOT_EXPIRED))

        assert sent == 0
        assert manager.connection_count("alice") == 1
        assert dead.closed_with == 1011
    finally:
        await manager.close_all()


def test_websocket_endpoint_handshake_and_ping():
    client = TestClient(create_app())

    with client.websocket_connect("/ws/alice?client_id=tab-1") as websocket:
        status = websocket.receive_json()
        assert status["type"] == "connection_status"
        assert status["data"]["client_id"] == "tab-1"

        websocket.send_json({"type": "ping"})
        assert websocket.receive_json()["data"]["message"] == "pong"

        websocket.send_json({"type": "unsubscribe", "events": ["slot_expired", "bogus"]})
        reply = websocket.receive_json()
        assert reply["type"] == "subscription"
        assert reply["data"]["events"] == ["slot_expired"]
        assert "slot_expired" not in reply["data"]["subscriptions"]

        websocket.send_text("not json")
        assert websocket.receive_json()["data"]["code"] == "INVALID_JSON"


def test_websocket_rejects_malformed_owner_id():
    client = TestClient(create_app())

    with pytest.raises(WebSocketDisconnect) as exc_info:
        with client.websocket_connect("/ws/bad$owner"):
            pass

    assert exc_info.value.code == 4002
