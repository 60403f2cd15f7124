"""Shared fixtures: in-memory store, ledger with a fixed clock, candle builders, fakes."""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional

import pytest

from perpbot.database import make_session_factory
from perpbot.services.execution import (
    LONG,
    ClosedTrade,
    PositionLedger,
    SqlLedgerStore,
    TradeContext,
)
from perpbot.services.results import FetchResult
from perpbot.services.strategies import Candle

# Wednesday, 12:00 UTC
NOW = datetime(2024, 1, 3, 12, 0, tzinfo=timezone.utc)


def make_candles(closes: List[float], spread: float = 0.5, start_ts: int = 0,
                 step_ms: int = 60_000) -> List[Candle]:
    candles = []
    prev = closes[0]
    for i, close in enumerate(closes):
        candles.append(Candle(
            timestamp=start_ts + i * step_ms,
            open=prev,
            high=max(prev, close) + spread,
            low=min(prev, close) - spread,
            close=close,
            volume=1.0,
        ))
        prev = close
    return candles


def growth(n: int, rate: float, start: float = 100.0) -> List[float]:
    return [start * rate ** i for i in range(n)]


def make_trade(side: str = LONG, pnl: float = -10.0, symbol: str = "SOL/USDT",
               hour: int = 12, rsi: Optional[float] = None, trend: Optional[str] = None,
               volatility: Optional[float] = None, exit_reason: str = "Stop Loss Hit",
               closed_at: Optional[datetime] = None) -> ClosedTrade:
    opened = NOW.replace(hour=hour)
    return ClosedTrade(
        position_id=1,
        symbol=symbol,
        side=side,
        entry_price=Decimal("100"),
        exit_price=Decimal("99"),
        quantity=Decimal("1"),
        leverage=20,
        margin=Decimal("5"),
        pnl=Decimal(str(pnl)),
        pnl_percent=Decimal("0"),
        exit_reason=exit_reason,
        opened_at=opened,
        closed_at=closed_at or opened,
        context=TradeContext(rsi=rsi, trend=trend, volatility_multiplier=volatility,
                             hour_utc=hour),
    )


class FakeMarket:
    """Market source keyed by symbol → timeframe → candles."""

    def __init__(self, data: Optional[Dict[str, Dict[str, List[Candle]]]] = None,
                 failing=(), raising=()):
        self.data = data or {}
        self.failing = set(failing)
        self.raising = set(raising)
        self.calls = []

    def fetch_candles(self, symbol, timeframe, limit):
        self.calls.append((symbol, timeframe, limit))
        if symbol in self.raising:
            raise RuntimeError(f"boom: {symbol}")
        if symbol in self.failing or timeframe not in self.data.get(symbol, {}):
            return FetchResult.fail("fake", f"{symbol} {timeframe} unavailable")
        return FetchResult.ok(self.data[symbol][timeframe][-limit:])

    def fetch_timeframes(self, symbol, limits):
        out = {}
        for timeframe, limit in limits.items():
            result = self.fetch_candles(symbol, timeframe, limit)
            if not result.success:
                return FetchResult(success=False, error=result.error)
            out[timeframe] = result.data
        return FetchResult.ok(out)


class FakeSentiment:
    def __init__(self, reading=None):
        self.reading = reading

    def get_sentiment(self, symbol):
        if self.reading is None:
            return FetchResult.fail("fake", "sentiment down")
        return FetchResult.ok(self.reading)


@pytest.fixture
def session_factory():
    return make_session_factory("sqlite://")


@pytest.fixture
def store(session_factory):
    return SqlLedgerStore(session_factory)


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def ledger(store, clock):
    return PositionLedger(store, initial_balance=10000, clock=clock)
