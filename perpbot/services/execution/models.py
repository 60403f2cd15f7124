"""
Ledger data types.
==================
Position is the only mutable financial entity; the ledger replaces it
wholesale on every change.  ClosedTrade is append-only.  All money is
``Decimal``, quantized to ``MONEY`` (1e-8 USDT).
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional, Union

LONG = "long"
SHORT = "short"

STOP_LOSS = "Stop Loss Hit"
TAKE_PROFIT = "Take Profit Hit"
TRAILING_STOP = "Trailing Stop Hit"
REVERSAL = "reversal"
MANUAL = "manual"

MONEY = Decimal("0.00000001")
PERCENT = Decimal("0.0001")

Number = Union[Decimal, float, int, str]


def to_decimal(value: Number) -> Decimal:
    """Exact conversion; floats go through ``str`` so 0.1 stays 0.1."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(repr(value))
    return Decimal(value)


@dataclass(frozen=True)
class TradeContext:
    """Market conditions at entry, kept for the learning analyzers."""
    rsi: Optional[float] = None
    trend: Optional[str] = None                 # uptrend / downtrend / sideways
    volatility_multiplier: Optional[float] = None
    btc_momentum: Optional[str] = None
    sentiment_score: Optional[float] = None
    hour_utc: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "TradeContext":
        if not data:
            return cls()
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass(frozen=True)
class Position:
    id: Optional[int]
    symbol: str
    side: str                                   # "long" | "short"
    entry_price: Decimal
    quantity: Decimal
    leverage: int
    margin: Decimal
    stop_loss_price: Optional[Decimal]
    take_profit_price: Optional[Decimal]
    highest_price: Decimal
    lowest_price: Decimal
    trailing_active: bool
    opened_at: datetime
    context: TradeContext = field(default_factory=TradeContext)

    @property
    def is_long(self) -> bool:
        return self.side == LONG

    def pnl_at(self, price: Decimal) -> Decimal:
        """Directional P&L at *price*, unquantized."""
        if self.is_long:
            return (price - self.entry_price) * self.quantity
        return (self.entry_price - price) * self.quantity

    def profit_percent_at(self, price: Decimal) -> Decimal:
        """Price move in the position's favour, % of entry (no leverage)."""
        move = price - self.entry_price if self.is_long else self.entry_price - price
        return move / self.entry_price * 100


@dataclass(frozen=True)
class ClosedTrade:
    position_id: int
    symbol: str
    side: str
    entry_price: Decimal
    exit_price: Decimal
    quantity: Decimal
    leverage: int
    margin: Decimal
    pnl: Decimal
    pnl_percent: Decimal
    exit_reason: str
    opened_at: datetime
    closed_at: datetime
    context: TradeContext = field(default_factory=TradeContext)
    id: Optional[int] = None

    @property
    def is_win(self) -> bool:
        return self.pnl > 0

    @property
    def result(self) -> str:
        return "WIN" if self.is_win else "LOSS"


@dataclass(frozen=True)
class AccountSnapshot:
    balance: Decimal
    peak_balance: Decimal
    trading_paused: bool = False
    paused_until: Optional[datetime] = None


@dataclass(frozen=True)
class TradeStats:
    total: int = 0
    wins: int = 0
    recent_total: int = 0
    recent_wins: int = 0

    @property
    def losses(self) -> int:
        return self.total - self.wins

    @property
    def win_rate(self) -> float:
        """Win rate in percent (0 when no trades)."""
        return self.wins / self.total * 100 if self.total else 0.0

    @property
    def recent_win_rate(self) -> float:
        return self.recent_wins / self.recent_total * 100 if self.recent_total else 0.0


@dataclass(frozen=True)
class DrawdownStatus:
    paused: bool
    drawdown_percent: float
    paused_until: Optional[datetime] = None
    event: Optional[str] = None                 # "paused" | "resumed" | None
