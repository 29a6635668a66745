"""
Business services of the mining slots engine.
"""

from .accrual import AccrualCalculator, AccrualWindow, earnings, elapsed_ms, lifetime_cap
from .balance_service import BalanceUpdate, BalanceUpdateResult, BalanceUpdateService
from .claim_service import ClaimResult, ClaimService
from .earnings_query_service import EarningsQueryService, RecoveryInfo
from .investment_service import InvestmentService
from .ledger import Ledger, LedgerEntry
from .slot_store import SlotFilter, SlotStore, SlotUpdate

__all__ = [
    "AccrualCalculator",
    "AccrualWindow",
    "earnings",
    "elapsed_ms",
    "lifetime_cap",
    "BalanceUpdate",
    "BalanceUpdateResult",
    "BalanceUpdateService",
    "ClaimResult",
    "ClaimService",
    "EarningsQueryService",
    "RecoveryInfo",
    "InvestmentService",
    "Ledger",
    "LedgerEntry",
    "SlotFilter",
    "SlotStore",
    "SlotUpdate",
]
