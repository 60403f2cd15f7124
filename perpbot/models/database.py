"""
Database models for the paper ledger.
Money and quantities are stored as decimal strings so Decimal values
round-trip exactly on every backend, SQLite included.
"""
from decimal import Decimal

from sqlalchemy import Boolean, Column, DateTime, Float, Integer, String, Text
from sqlalchemy.orm import declarative_base
from sqlalchemy.types import TypeDecorator

Base = declarative_base()


class DecimalText(TypeDecorator):
    """Decimal persisted as TEXT."""
    impl = Text
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return str(Decimal(value))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Decimal(value)


class AccountState(Base):
    """Singleton account row (id=1)."""
    __tablename__ = "account_state"

    id = Column(Integer, primary_key=True)
    balance = Column(DecimalText, nullable=False)
    peak_balance = Column(DecimalText, nullable=False)
    trading_paused = Column(Boolean, default=False)
    paused_until = Column(DateTime, nullable=True)
    martingale_streak = Column(Integer, default=0)


class OpenPosition(Base):
    """Open leveraged position"""
    __tablename__ = "positions"

    id = Column(Integer, primary_key=True, index=True)
    symbol = Column(String, index=True)
    side = Column(String)                       # "long" or "short"
    entry_price = Column(DecimalText)
    quantity = Column(DecimalText)              # base-asset amount
    leverage = Column(Integer)
    margin = Column(DecimalText)                # USDT committed as collateral
    stop_loss_price = Column(DecimalText, nullable=True)
    take_profit_price = Column(DecimalText, nullable=True)
    highest_price = Column(DecimalText)
    lowest_price = Column(DecimalText)
    trailing_active = Column(Boolean, default=False)
    opened_at = Column(DateTime)
    context = Column(Text, default="{}")        # JSON trade context at entry


class ClosedTradeRecord(Base):
    """Append-only trade history"""
    __tablename__ = "trades"

    id = Column(Integer, primary_key=True, index=True)
    position_id = Column(Integer, index=True)
    symbol = Column(String, index=True)
    side = Column(String)
    entry_price = Column(DecimalText)
    exit_price = Column(DecimalText)
    quantity = Column(DecimalText)
    leverage = Column(Integer)
    margin = Column(DecimalText)
    pnl = Column(DecimalText)
    pnl_percent = Column(DecimalText)
    exit_reason = Column(String)
    result = Column(String)                     # WIN / LOSS
    opened_at = Column(DateTime)
    closed_at = Column(DateTime, index=True)

    # context at entry, consumed by the loss / hour / RSI analyzers
    entry_rsi = Column(Float, nullable=True)
    trend = Column(String, nullable=True)
    volatility_multiplier = Column(Float, nullable=True)
    btc_momentum = Column(String, nullable=True)
    sentiment_score = Column(Float, nullable=True)
    hour_utc = Column(Integer, nullable=True)


class BlockedHour(Base):
    """UTC hours learned as unprofitable"""
    __tablename__ = "blocked_hours"

    hour = Column(Integer, primary_key=True)
    reason = Column(String, default="")


class Param(Base):
    """Learned parameters (e.g. optimized RSI thresholds)"""
    __tablename__ = "params"

    key = Column(String, primary_key=True)
    value = Column(Float)
