"""
Real-time notification service for WebSocket updates.

Delivery is best effort: an owner without connections simply misses the
event, and a failing send is logged and dropped. Nothing is queued or retried;
clients resynchronise through the read API.
"""

from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Protocol

from .connection_manager import get_connection_manager
from .schemas import MESSAGE_CLASSES, MessageType, WebSocketMessage

import structlog

logger = structlog.get_logger(__name__)


class PushSink(Protocol):
    """Anything that can deliver a message to an owner's live connections."""

    async def send_to_owner(self, owner_id: str, message: WebSocketMessage) -> int:
        ...


class RealtimeNotifier:
    """Pushes engine events to connected clients."""

    def __init__(self, sink: Optional[PushSink] = None, enabled: bool = True):
        self.sink = sink if sink is not None else get_connection_manager()
        self.enabled = enabled
        self.sent_count = 0
        self.failed_count = 0

    async def send_to_owner(self, owner_id: str, event_type: MessageType, payload: Dict[str, Any]) -> int:
        """Deliver one event; returns the number of connections reached, 0 on failure."""
        if not self.enabled:
            return 0

        try:
            message_class = MESSAGE_CLASSES.get(event_type, WebSocketMessage)
            message = message_class(type=event_type, data={"owner_id": owner_id, **payload})
            sent = await self.sink.send_to_owner(owner_id, message)
            self.sent_count += sent
            logger.debug(
                "Notification sent",
                owner_id=owner_id,
                event_type=event_type.value,
                sent_to=sent
            )
            return sent
        except Exception as e:
            self.failed_count += 1
            logger.error(
                "Error sending notification",
                owner_id=owner_id,
                event_type=event_type.value,
                error=str(e)
            )
            return 0

    async def notify_balance_updated(
        self,
        owner_id: str,
        currency: str,
        new_balance: Decimal,
        change_amount: Decimal,
        reason: str,
    ) -> int:
        return await self.send_to_owner(owner_id, MessageType.BALANCE_UPDATE, {
            "currency": currency,
            "balance": str(new_balance),
            "change": str(change_amount),
            "reason": reason,
        })

    async def notify_slot_earnings_updated(self, owner_id: str, slots: List[Dict[str, Any]]) -> int:
        """``slots`` holds per-slot dicts with at least ``slot_id`` and ``accrued_earnings``."""
        total = sum((Decimal(str(slot["accrued_earnings"])) for slot in slots), Decimal("0"))
        return await self.send_to_owner(owner_id, MessageType.SLOT_EARNINGS_UPDATE, {
            "slots": slots,
            "total_accrued": str(total),
        })

    async def notify_earnings_claimed(
        self,
        owner_id: str,
        amount: Decimal,
        new_balance: Decimal,
        slot_ids: Iterable[int],
        automatic: bool = False,
    ) -> int:
        return await self.send_to_owner(owner_id, MessageType.EARNINGS_CLAIMED, {
            "amount": str(amount),
            "balance": str(new_balance),
            "slot_ids": list(slot_ids),
            "automatic": automatic,
        })

    async def notify_slot_expired(
        self,
        owner_id: str,
        slot_id: int,
        final_earnings: Decimal,
        new_balance: Optional[Decimal],
    ) -> int:
        return await self.send_to_owner(owner_id, MessageType.SLOT_EXPIRED, {
            "slot_id": slot_id,
            "final_earnings": str(final_earnings),
            "balance": str(new_balance) if new_balance is not None else None,
        })

    async def notify_slot_created(self, owner_id: str, slot_snapshot: Dict[str, Any]) -> int:
        return await self.send_to_owner(owner_id, MessageType.SLOT_CREATED, {"slot": slot_snapshot})

    async def notify_slot_updated(self, owner_id: str, slot_snapshot: Dict[str, Any], change: str) -> int:
        """``change`` is ``"extended"`` or ``"upgraded"``."""
        return await self.send_to_owner(owner_id, MessageType.SLOT_UPDATED, {
            "slot": slot_snapshot,
            "change": change,
        })

    async def notify_earnings_recovered(
        self,
        owner_id: str,
        slot_ids: Iterable[int],
        amount: Decimal,
        downtime_seconds: float,
    ) -> int:
        return await self.send_to_owner(owner_id, MessageType.EARNINGS_RECOVERED, {
            "slot_ids": list(slot_ids),
            "amount": str(amount),
            "downtime_seconds": round(downtime_seconds, 3),
        })

    def get_stats(self) -> Dict[str, Any]:
        return {"enabled": self.enabled, "sent": self.sent_count, "failed": self.failed_count}
