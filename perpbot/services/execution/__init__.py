"""Execution Package — paper position ledger and its persistence."""
from __future__ import annotations

__all__ = [
    "PositionLedger", "LedgerError", "InsufficientBalance",
    "PositionNotFound", "LedgerInvariantError",
    "LedgerStore", "SqlLedgerStore",
    "Position", "ClosedTrade", "TradeContext", "TradeStats",
    "AccountSnapshot", "DrawdownStatus", "LONG", "SHORT",
]

from perpbot.services.execution.models import (
    LONG,
    SHORT,
    AccountSnapshot,
    ClosedTrade,
    DrawdownStatus,
    Position,
    TradeContext,
    TradeStats,
)
from perpbot.services.execution.store import LedgerStore, SqlLedgerStore
from perpbot.services.execution.ledger import (
    PositionLedger,
    LedgerError,
    InsufficientBalance,
    PositionNotFound,
    LedgerInvariantError,
)
