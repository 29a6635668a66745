"""
Custom exception classes for the mining slots engine.
Every failure that crosses a service boundary carries a machine-readable code.
"""

from decimal import Decimal
from typing import Any, Optional, Dict


class MiningEngineException(Exception):
    """Base exception class for the mining slots engine."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class ConfigurationError(MiningEngineException):
    """Raised when there's a configuration error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CONFIGURATION_ERROR", details)


class SchedulerError(MiningEngineException):
    """Raised when a periodic processor is misused (double start, manual run while busy)."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "SCHEDULER_ERROR", details)


class ValidationError(MiningEngineException):
    """Raised when an amount, rate or identifier is malformed."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None, code: str = "VALIDATION_ERROR"):
        super().__init__(message, code, details)


class NotFoundError(MiningEngineException):
    """Raised when a requested resource is not found."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "NOT_FOUND", details)


class TransientStoreError(MiningEngineException):
    """Raised when the store is temporarily unavailable; retried on the next tick."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "TRANSIENT_STORE_ERROR", details)


class ConcurrencyConflictError(MiningEngineException):
    """Raised when a version-guarded write affected zero rows."""

    def __init__(self, slot_id: int, expected_version: int):
        super().__init__(
            f"Slot {slot_id} was modified concurrently (expected version {expected_version})",
            "CONCURRENCY_CONFLICT",
            {"slot_id": slot_id, "expected_version": expected_version}
        )


# Resource-specific exceptions
class SlotNotFoundError(NotFoundError):
    """Raised when a mining slot is not found or not owned by the caller."""

    def __init__(self, slot_id: Any, owner_id: Optional[str] = None):
        details: Dict[str, Any] = {"slot_id": slot_id}
        if owner_id is not None:
            details["owner_id"] = owner_id
        super().__init__(f"Mining slot not found: {slot_id}", details)


# Business logic exceptions
class InsufficientBalanceError(ValidationError):
    """Raised when a balance update would drive a wallet negative."""

    def __init__(self, owner_id: str, currency: str, available: Decimal, required: Decimal):
        super().__init__(
            f"Insufficient balance: available {available} {currency}, required {required} {currency}",
            {
                "owner_id": owner_id,
                "currency": currency,
                "available": str(available),
                "required": str(required),
            },
            code="INSUFFICIENT_BALANCE",
        )


class NoEarningsToClaimError(ValidationError):
    """Raised when a claim total is below the minimal claim threshold."""

    def __init__(self, owner_id: str, available: Decimal, minimum: Decimal):
        super().__init__(
            f"No earnings to claim: {available} available, minimum is {minimum}",
            {"owner_id": owner_id, "available": str(available), "minimum": str(minimum)},
            code="NO_EARNINGS_TO_CLAIM",
        )
