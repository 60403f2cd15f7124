"""
LedgerStore — durable state behind a narrow record interface.
==============================================================
The ledger never sees SQL.  It hands the store the *new* account snapshot
together with the record being written, and only adopts the change in
memory once the store call returns.  ``SqlLedgerStore`` runs each call
inside one session/transaction, so a position write and its balance
update land together or not at all.
"""
from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Iterator, List, Optional, Set

from sqlalchemy.orm import Session, sessionmaker

from perpbot.models.database import (
    AccountState,
    BlockedHour,
    ClosedTradeRecord,
    OpenPosition,
    Param,
)
from perpbot.services.execution.models import (
    AccountSnapshot,
    ClosedTrade,
    Position,
    TradeContext,
    TradeStats,
)

logger = logging.getLogger(__name__)

ACCOUNT_ROW_ID = 1


class LedgerStore(ABC):
    """Persistence contract consumed by the ledger and the analyzers."""

    # ── Account ─────────────────────────────────────────────────────────

    @abstractmethod
    def load_account(self, initial_balance: Decimal) -> AccountSnapshot:
        """Return the stored account, creating it with *initial_balance*."""

    @abstractmethod
    def save_account(self, account: AccountSnapshot) -> None: ...

    # ── Positions / trades ──────────────────────────────────────────────

    @abstractmethod
    def load_positions(self) -> List[Position]: ...

    @abstractmethod
    def insert_position(self, position: Position, account: AccountSnapshot) -> int:
        """Insert *position* and store *account* atomically; return the new id."""

    @abstractmethod
    def update_position(self, position: Position) -> None: ...

    @abstractmethod
    def close_position(self, trade: ClosedTrade, account: AccountSnapshot) -> ClosedTrade:
        """Delete the open position, append *trade*, store *account*; atomically."""

    @abstractmethod
    def closed_trades(self, limit: Optional[int] = None) -> List[ClosedTrade]:
        """Closed trades, oldest first (the newest *limit* when given)."""

    @abstractmethod
    def trade_stats(self, recent_window: int = 10) -> TradeStats: ...

    # ── Learned state ───────────────────────────────────────────────────

    @abstractmethod
    def blocked_hours(self) -> Set[int]: ...

    @abstractmethod
    def set_blocked_hours(self, hours: Dict[int, str]) -> None:
        """Replace the learned blocked-hour set (hour → reason)."""

    @abstractmethod
    def get_param(self, key: str) -> Optional[float]: ...

    @abstractmethod
    def set_param(self, key: str, value: float) -> None: ...

    @abstractmethod
    def martingale_streak(self) -> int: ...

    @abstractmethod
    def set_martingale_streak(self, streak: int) -> None: ...


# ── Datetime helpers (SQLite DateTime is naive; we store UTC) ──────────────

def _to_db(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def _from_db(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    return dt.replace(tzinfo=timezone.utc)


class SqlLedgerStore(LedgerStore):
    """SQLAlchemy-backed store."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # ── Row mapping ─────────────────────────────────────────────────────

    @staticmethod
    def _position_from_row(row: OpenPosition) -> Position:
        return Position(
            id=row.id,
            symbol=row.symbol,
            side=row.side,
            entry_price=row.entry_price,
            quantity=row.quantity,
            leverage=row.leverage,
            margin=row.margin,
            stop_loss_price=row.stop_loss_price,
            take_profit_price=row.take_profit_price,
            highest_price=row.highest_price,
            lowest_price=row.lowest_price,
            trailing_active=bool(row.trailing_active),
            opened_at=_from_db(row.opened_at),
            context=TradeContext.from_dict(json.loads(row.context or "{}")),
        )

    @staticmethod
    def _fill_position_row(row: OpenPosition, position: Position) -> None:
        row.symbol = position.symbol
        row.side = position.side
        row.entry_price = position.entry_price
        row.quantity = position.quantity
        row.leverage = position.leverage
        row.margin = position.margin
        row.stop_loss_price = position.stop_loss_price
        row.take_profit_price = position.take_profit_price
        row.highest_price = position.highest_price
        row.lowest_price = position.lowest_price
        row.trailing_active = position.trailing_active
        row.opened_at = _to_db(position.opened_at)
        row.context = json.dumps(position.context.to_dict())

    @staticmethod
    def _trade_from_row(row: ClosedTradeRecord) -> ClosedTrade:
        return ClosedTrade(
            id=row.id,
            position_id=row.position_id,
            symbol=row.symbol,
            side=row.side,
            entry_price=row.entry_price,
            exit_price=row.exit_price,
            quantity=row.quantity,
            leverage=row.leverage,
            margin=row.margin,
            pnl=row.pnl,
            pnl_percent=row.pnl_percent,
            exit_reason=row.exit_reason,
            opened_at=_from_db(row.opened_at),
            closed_at=_from_db(row.closed_at),
            context=TradeContext(
                rsi=row.entry_rsi,
                trend=row.trend,
                volatility_multiplier=row.volatility_multiplier,
                btc_momentum=row.btc_momentum,
                sentiment_score=row.sentiment_score,
                hour_utc=row.hour_utc,
            ),
        )

    @staticmethod
    def _write_account(db: Session, account: AccountSnapshot) -> None:
        row = db.get(AccountState, ACCOUNT_ROW_ID)
        if row is None:
            row = AccountState(id=ACCOUNT_ROW_ID, martingale_streak=0)
            db.add(row)
        row.balance = account.balance
        row.peak_balance = account.peak_balance
        row.trading_paused = account.trading_paused
        row.paused_until = _to_db(account.paused_until)

    # ── Account ─────────────────────────────────────────────────────────

    def load_account(self, initial_balance: Decimal) -> AccountSnapshot:
        with self._session() as db:
            row = db.get(AccountState, ACCOUNT_ROW_ID)
            if row is None:
                row = AccountState(
                    id=ACCOUNT_ROW_ID,
                    balance=initial_balance,
                    peak_balance=initial_balance,
                    trading_paused=False,
                    martingale_streak=0,
                )
                db.add(row)
                logger.info(f"Created account with balance {initial_balance} USDT")
            return AccountSnapshot(
                balance=row.balance,
                peak_balance=row.peak_balance,
                trading_paused=bool(row.trading_paused),
                paused_until=_from_db(row.paused_until),
            )

    def save_account(self, account: AccountSnapshot) -> None:
        with self._session() as db:
            self._write_account(db, account)

    # ── Positions / trades ──────────────────────────────────────────────

    def load_positions(self) -> List[Position]:
        with self._session() as db:
            rows = db.query(OpenPosition).order_by(OpenPosition.id).all()
            return [self._position_from_row(r) for r in rows]

    def insert_position(self, position: Position, account: AccountSnapshot) -> int:
        with self._session() as db:
            row = OpenPosition()
            self._fill_position_row(row, position)
            db.add(row)
            self._write_account(db, account)
            db.flush()  # materialise the id before commit
            return row.id

    def update_position(self, position: Position) -> None:
        with self._session() as db:
            row = db.get(OpenPosition, position.id)
            if row is None:
                raise KeyError(f"position {position.id} not in store")
            self._fill_position_row(row, position)

    def close_position(self, trade: ClosedTrade, account: AccountSnapshot) -> ClosedTrade:
        with self._session() as db:
            row = db.get(OpenPosition, trade.position_id)
            if row is None:
                raise KeyError(f"position {trade.position_id} not in store")
            db.delete(row)

            ctx = trade.context
            record = ClosedTradeRecord(
                position_id=trade.position_id,
                symbol=trade.symbol,
                side=trade.side,
                entry_price=trade.entry_price,
                exit_price=trade.exit_price,
                quantity=trade.quantity,
                leverage=trade.leverage,
                margin=trade.margin,
                pnl=trade.pnl,
                pnl_percent=trade.pnl_percent,
                exit_reason=trade.exit_reason,
                result=trade.result,
                opened_at=_to_db(trade.opened_at),
                closed_at=_to_db(trade.closed_at),
                entry_rsi=ctx.rsi,
                trend=ctx.trend,
                volatility_multiplier=ctx.volatility_multiplier,
                btc_momentum=ctx.btc_momentum,
                sentiment_score=ctx.sentiment_score,
                hour_utc=ctx.hour_utc,
            )
            db.add(record)
            self._write_account(db, account)
            db.flush()
            return self._trade_from_row(record)

    def closed_trades(self, limit: Optional[int] = None) -> List[ClosedTrade]:
        with self._session() as db:
            query = db.query(ClosedTradeRecord).order_by(ClosedTradeRecord.id.desc())
            if limit is not None:
                query = query.limit(limit)
            rows = query.all()
            return [self._trade_from_row(r) for r in reversed(rows)]

    def trade_stats(self, recent_window: int = 10) -> TradeStats:
        with self._session() as db:
            total = db.query(ClosedTradeRecord).count()
            wins = db.query(ClosedTradeRecord).filter(ClosedTradeRecord.result == "WIN").count()
            recent = (db.query(ClosedTradeRecord.result)
                      .order_by(ClosedTradeRecord.id.desc())
                      .limit(recent_window).all())
            return TradeStats(
                total=total,
                wins=wins,
                recent_total=len(recent),
                recent_wins=sum(1 for (result,) in recent if result == "WIN"),
            )

    # ── Learned state ───────────────────────────────────────────────────

    def blocked_hours(self) -> Set[int]:
        with self._session() as db:
            return {row.hour for row in db.query(BlockedHour).all()}

    def set_blocked_hours(self, hours: Dict[int, str]) -> None:
        with self._session() as db:
            db.query(BlockedHour).delete()
            for hour, reason in sorted(hours.items()):
                db.add(BlockedHour(hour=hour, reason=reason))

    def get_param(self, key: str) -> Optional[float]:
        with self._session() as db:
            row = db.get(Param, key)
            return row.value if row is not None else None

    def set_param(self, key: str, value: float) -> None:
        with self._session() as db:
            row = db.get(Param, key)
            if row is None:
                db.add(Param(key=key, value=value))
            else:
                row.value = value

    def martingale_streak(self) -> int:
        with self._session() as db:
            row = db.get(AccountState, ACCOUNT_ROW_ID)
            return int(row.martingale_streak or 0) if row is not None else 0

    def set_martingale_streak(self, streak: int) -> None:
        with self._session() as db:
            row = db.get(AccountState, ACCOUNT_ROW_ID)
            if row is None:
                raise KeyError("account not initialised")
            row.martingale_streak = streak
