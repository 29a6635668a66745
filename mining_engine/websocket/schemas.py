"""
WebSocket message schemas for real-time communication.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict
from pydantic import BaseModel, Field


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class MessageType(str, Enum):
    """WebSocket message types."""
    BALANCE_UPDATE = "balance_update"
    SLOT_EARNINGS_UPDATE = "slot_earnings_update"
    EARNINGS_CLAIMED = "earnings_claimed"
    SLOT_EXPIRED = "slot_expired"
    SLOT_CREATED = "slot_created"
    SLOT_UPDATED = "slot_updated"
    EARNINGS_RECOVERED = "earnings_recovered"
    ERROR = "error"
    CONNECTION_STATUS = "connection_status"
    SUBSCRIPTION = "subscription"


# Events a new connection receives without subscribing explicitly
DEFAULT_SUBSCRIPTIONS = (
    MessageType.BALANCE_UPDATE,
    MessageType.SLOT_EARNINGS_UPDATE,
    MessageType.EARNINGS_CLAIMED,
    MessageType.SLOT_EXPIRED,
    MessageType.SLOT_CREATED,
    MessageType.SLOT_UPDATED,
    MessageType.EARNINGS_RECOVERED,
)

# Delivered regardless of subscriptions
CONTROL_MESSAGES = frozenset({
    MessageType.ERROR,
    MessageType.CONNECTION_STATUS,
    MessageType.SUBSCRIPTION,
})


class WebSocketMessage(BaseModel):
    """Base WebSocket message schema."""
    type: MessageType
    timestamp: str = Field(default_factory=_timestamp)
    data: Dict[str, Any] = Field(default_factory=dict)


class BalanceUpdateMessage(WebSocketMessage):
    type: MessageType = MessageType.BALANCE_UPDATE
    data: Dict[str, Any] = Field(
        description="Wallet balance after the change, the change and its reason"
    )


class SlotEarningsUpdateMessage(WebSocketMessage):
    type: MessageType = MessageType.SLOT_EARNINGS_UPDATE
    data: Dict[str, Any] = Field(
        description="Accrued earnings per slot after an accumulator tick"
    )


class EarningsClaimedMessage(WebSocketMessage):
    type: MessageType = MessageType.EARNINGS_CLAIMED
    data: Dict[str, Any] = Field(
        description="Claimed amount, claimed slots and new wallet balance"
    )


class SlotExpiredMessage(WebSocketMessage):
    type: MessageType = MessageType.SLOT_EXPIRED
    data: Dict[str, Any] = Field(
        description="Closed slot and the final earnings credited for it"
    )


class SlotCreatedMessage(WebSocketMessage):
    type: MessageType = MessageType.SLOT_CREATED
    data: Dict[str, Any] = Field(description="Snapshot of the newly opened slot")


class SlotUpdatedMessage(WebSocketMessage):
    type: MessageType = MessageType.SLOT_UPDATED
    data: Dict[str, Any] = Field(description="Slot snapshot after an extension or rate upgrade")


class EarningsRecoveredMessage(WebSocketMessage):
    type: MessageType = MessageType.EARNINGS_RECOVERED
    data: Dict[str, Any] = Field(
        description="Earnings recovered for slots whose accrual lagged behind"
    )


class ErrorMessage(WebSocketMessage):
    """Error message schema."""
    type: MessageType = MessageType.ERROR
    data: Dict[str, Any] = Field(
        description="Error information including code and description"
    )


class ConnectionStatusMessage(WebSocketMessage):
    """Connection status message schema."""
    type: MessageType = MessageType.CONNECTION_STATUS
    data: Dict[str, Any] = Field(
        description="Connection status including connected state and client count"
    )


class SubscriptionMessage(WebSocketMessage):
    """Subscription management message schema."""
    type: MessageType = MessageType.SUBSCRIPTION
    data: Dict[str, Any] = Field(
        description="Subscription data including event types"
    )


MESSAGE_CLASSES = {
    MessageType.BALANCE_UPDATE: BalanceUpdateMessage,
    MessageType.SLOT_EARNINGS_UPDATE: SlotEarningsUpdateMessage,
    MessageType.EARNINGS_CLAIMED: EarningsClaimedMessage,
    MessageType.SLOT_EXPIRED: SlotExpiredMessage,
    MessageType.SLOT_CREATED: SlotCreatedMessage,
    MessageType.SLOT_UPDATED: SlotUpdatedMessage,
    MessageType.EARNINGS_RECOVERED: EarningsRecoveredMessage,
    MessageType.ERROR: ErrorMessage,
    MessageType.CONNECTION_STATUS: ConnectionStatusMessage,
    MessageType.SUBSCRIPTION: SubscriptionMessage,
}
