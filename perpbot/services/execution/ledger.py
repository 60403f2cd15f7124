"""
PositionLedger — paper account state machine.
==============================================
Owns the open positions and the account balance; nothing else mutates
them.  Per position:

    open() ──► Open ──(profit ≥ activation)──► TrailingArmed
                 │                                 │
                 └──── SL / TP / trailing / close() ┴──► Closed

Accounting (all ``Decimal``):

    open:   margin = price × quantity / leverage;  balance -= margin
    close:  pnl    = ±(exit − entry) × quantity;    balance += margin + pnl

Opening is a wash for equity (``balance + Σ margin``); only realised P&L
at close changes it.  Loss is floored at ``-margin`` (isolated margin is
liquidated, never negative), which keeps ``balance ≥ 0``.
Stops fill at the stop price, or at the best price the session offered
when it gapped past the stop.

Every mutation runs under one re-entrant lock and is written through the
store before the in-memory state changes.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Dict, List, Optional, Set

from perpbot.config import DrawdownConfig, TrailingStopConfig
from perpbot.services.execution.models import (
    LONG,
    MONEY,
    PERCENT,
    SHORT,
    STOP_LOSS,
    TAKE_PROFIT,
    TRAILING_STOP,
    AccountSnapshot,
    ClosedTrade,
    DrawdownStatus,
    Number,
    Position,
    TradeContext,
    to_decimal,
)
from perpbot.services.execution.store import LedgerStore

logger = logging.getLogger(__name__)

HUNDRED = Decimal(100)


# ── Errors ──────────────────────────────────────────────────────────────────

class LedgerError(Exception):
    """Base class for ledger failures."""


class InsufficientBalance(LedgerError):
    def __init__(self, required: Decimal, available: Decimal):
        super().__init__(f"margin {required} exceeds available balance {available}")
        self.required = required
        self.available = available


class PositionNotFound(LedgerError):
    def __init__(self, position_id: int):
        super().__init__(f"position {position_id} is not open")
        self.position_id = position_id


class LedgerInvariantError(LedgerError):
    """A ledger invariant was violated; indicates a bug, not bad input."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PositionLedger:
    """Single-account paper ledger."""

    def __init__(
        self,
        store: LedgerStore,
        trailing: Optional[TrailingStopConfig] = None,
        initial_balance: Number = 10000,
        strict: bool = True,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._store = store
        self._trailing = trailing or TrailingStopConfig()
        self._strict = strict
        self._clock = clock
        self._lock = threading.RLock()

        self._account: AccountSnapshot = store.load_account(to_decimal(initial_balance))
        self._positions: Dict[int, Position] = {p.id: p for p in store.load_positions()}
        self._closed_ids: Set[int] = set()
        # balance + Σ margin, moved only by realised P&L
        self._expected_equity = self.total_equity
        self._check_invariants("load")

    # ── Read side ───────────────────────────────────────────────────────

    @property
    def lock(self) -> threading.RLock:
        """Hold this to run a multi-step sequence (evaluate → reverse → open) atomically."""
        return self._lock

    @property
    def balance(self) -> Decimal:
        return self._account.balance

    @property
    def peak_balance(self) -> Decimal:
        return self._account.peak_balance

    @property
    def account(self) -> AccountSnapshot:
        return self._account

    @property
    def open_margin(self) -> Decimal:
        return sum((p.margin for p in self._positions.values()), Decimal(0))

    @property
    def total_equity(self) -> Decimal:
        return self._account.balance + self.open_margin

    def positions(self, symbol: Optional[str] = None) -> List[Position]:
        with self._lock:
            return [p for p in self._positions.values()
                    if symbol is None or p.symbol == symbol]

    def get_position(self, position_id: int) -> Optional[Position]:
        return self._positions.get(position_id)

    def is_paused(self) -> bool:
        return self._account.trading_paused

    # ── Open ────────────────────────────────────────────────────────────

    def open(
        self,
        symbol: str,
        side: str,
        price: Number,
        quantity: Number,
        leverage: int,
        stop_loss_pct: Optional[Number] = None,
        take_profit_pct: Optional[Number] = None,
        context: Optional[TradeContext] = None,
    ) -> int:
        """Open a position and return its id.

        Raises:
            InsufficientBalance: margin exceeds the available balance.
            ValueError: non-positive price/quantity, leverage < 1, unknown side.
        """
        if side not in (LONG, SHORT):
            raise ValueError(f"side must be '{LONG}' or '{SHORT}', got {side!r}")
        price = to_decimal(price)
        quantity = to_decimal(quantity)
        if not price.is_finite() or price <= 0:
            raise ValueError(f"price must be > 0, got {price}")
        if not quantity.is_finite() or quantity <= 0:
            raise ValueError(f"quantity must be > 0, got {quantity}")
        if int(leverage) != leverage or leverage < 1:
            raise ValueError(f"leverage must be an integer >= 1, got {leverage}")
        leverage = int(leverage)

        with self._lock:
            margin = (price * quantity / leverage).quantize(MONEY, rounding=ROUND_HALF_UP)
            if margin <= 0:
                raise ValueError(f"margin rounds to zero for {quantity} @ {price}")
            if margin > self._account.balance:
                raise InsufficientBalance(margin, self._account.balance)

            sign = 1 if side == LONG else -1
            stop_loss = take_profit = None
            if stop_loss_pct is not None:
                stop_loss = price * (1 - sign * to_decimal(stop_loss_pct) / HUNDRED)
            if take_profit_pct is not None:
                take_profit = price * (1 + sign * to_decimal(take_profit_pct) / HUNDRED)

            position = Position(
                id=None,
                symbol=symbol,
                side=side,
                entry_price=price,
                quantity=quantity,
                leverage=leverage,
                margin=margin,
                stop_loss_price=stop_loss,
                take_profit_price=take_profit,
                highest_price=price,
                lowest_price=price,
                trailing_active=False,
                opened_at=self._clock(),
                context=context or TradeContext(),
            )
            account = replace(self._account, balance=self._account.balance - margin)

            position_id = self._store.insert_position(position, account)
            position = replace(position, id=position_id)
            self._positions[position_id] = position
            self._account = account
            self._check_invariants("open")

        logger.info(
            f"📈 Opened {side.upper()} #{position_id} {symbol} {quantity} @ {price} "
            f"{leverage}x (margin {margin}, SL {_fmt(stop_loss)}, TP {_fmt(take_profit)})"
        )
        return position_id

    # ── Evaluate (SL → TP → trailing) ───────────────────────────────────

    def evaluate(
        self,
        symbol: str,
        current_price: Number,
        session_high: Optional[Number] = None,
        session_low: Optional[Number] = None,
    ) -> List[ClosedTrade]:
        """Check every open position on *symbol*; return the trades closed."""
        price = to_decimal(current_price)
        high = to_decimal(session_high) if session_high is not None else None
        low = to_decimal(session_low) if session_low is not None else None

        closed: List[ClosedTrade] = []
        with self._lock:
            for position in self.positions(symbol):
                trade = self._evaluate_position(position, price, high, low)
                if trade is not None:
                    closed.append(trade)
        return closed

    def _evaluate_position(self, pos: Position, price: Decimal,
                           high: Optional[Decimal], low: Optional[Decimal]) -> Optional[ClosedTrade]:
        if pos.is_long:
            adverse = low if low is not None else price
            favourable = high if high is not None else price
        else:
            adverse = high if high is not None else price
            favourable = low if low is not None else price

        # (a) stop-loss, filled at the stop unless the whole session gapped past it
        if pos.stop_loss_price is not None:
            hit = adverse <= pos.stop_loss_price if pos.is_long else adverse >= pos.stop_loss_price
            if hit:
                reason = TRAILING_STOP if pos.trailing_active else STOP_LOSS
                fill = _stop_fill(pos, pos.stop_loss_price, favourable)
                return self.close(pos.id, fill, reason)

        # (b) take-profit, filled at the target price
        if pos.take_profit_price is not None:
            hit = (favourable >= pos.take_profit_price if pos.is_long
                   else favourable <= pos.take_profit_price)
            if hit:
                return self.close(pos.id, pos.take_profit_price, TAKE_PROFIT)

        # (c) trailing stop: arm, ratchet, then check the ratcheted stop
        if not self._trailing.enabled:
            return None
        updated = self._trail(pos, price, favourable)
        if updated is None:
            return None
        self._store.update_position(updated)
        self._positions[updated.id] = updated

        # a stop raised in this call can only fill at the current price or worse
        stop = updated.stop_loss_price
        if updated.trailing_active and stop is not None:
            crossed = price <= stop if updated.is_long else price >= stop
            if crossed:
                return self.close(updated.id, _stop_fill(updated, stop, price), TRAILING_STOP)
        return None

    def _trail(self, pos: Position, price: Decimal, favourable: Decimal) -> Optional[Position]:
        """Return the position with updated extremes / trailing stop, or None if unchanged."""
        activation = to_decimal(self._trailing.activation_percent)
        distance = to_decimal(self._trailing.trailing_percent) / HUNDRED
        changes = {}

        armed = pos.trailing_active
        if not armed and pos.profit_percent_at(price) >= activation:
            armed = True
            changes["trailing_active"] = True
            logger.info(f"🎯 Trailing armed #{pos.id} {pos.symbol} at {price}")

        # extremes only count from the session the trail is armed in
        if armed:
            if pos.is_long and favourable > pos.highest_price:
                changes["highest_price"] = favourable
            if not pos.is_long and favourable < pos.lowest_price:
                changes["lowest_price"] = favourable

            if pos.is_long:
                best = changes.get("highest_price", pos.highest_price)
                candidate = best * (1 - distance)
                if pos.stop_loss_price is None or candidate > pos.stop_loss_price:
                    changes["stop_loss_price"] = candidate
            else:
                best = changes.get("lowest_price", pos.lowest_price)
                candidate = best * (1 + distance)
                if pos.stop_loss_price is None or candidate < pos.stop_loss_price:
                    changes["stop_loss_price"] = candidate

        if not changes:
            return None
        if "stop_loss_price" in changes:
            logger.debug(f"Trailing #{pos.id} {pos.symbol}: SL {_fmt(pos.stop_loss_price)} "
                         f"→ {_fmt(changes['stop_loss_price'])}")
        return replace(pos, **changes)

    # ── Close ───────────────────────────────────────────────────────────

    def close(self, position_id: int, exit_price: Number, exit_reason: str) -> ClosedTrade:
        """Close a position in full and return the ClosedTrade.

        Raises:
            PositionNotFound: unknown id (nothing is mutated).
            LedgerInvariantError: the id was already closed (strict mode).
        """
        exit_price = to_decimal(exit_price)
        if not exit_price.is_finite() or exit_price <= 0:
            raise ValueError(f"exit price must be > 0, got {exit_price}")

        with self._lock:
            pos = self._positions.get(position_id)
            if pos is None:
                if position_id in self._closed_ids:
                    self._violation(f"double close of position {position_id}")
                raise PositionNotFound(position_id)

            pnl = pos.pnl_at(exit_price).quantize(MONEY, rounding=ROUND_HALF_UP)
            if pnl < -pos.margin:
                logger.warning(f"💀 #{pos.id} {pos.symbol} loss {pnl} exceeds margin, "
                               f"liquidated at -{pos.margin}")
                pnl = -pos.margin
            pnl_percent = (pnl / pos.margin * HUNDRED).quantize(PERCENT, rounding=ROUND_HALF_UP)

            balance = self._account.balance + pos.margin + pnl
            account = replace(
                self._account,
                balance=balance,
                peak_balance=max(self._account.peak_balance, balance),
            )
            trade = ClosedTrade(
                position_id=pos.id,
                symbol=pos.symbol,
                side=pos.side,
                entry_price=pos.entry_price,
                exit_price=exit_price,
                quantity=pos.quantity,
                leverage=pos.leverage,
                margin=pos.margin,
                pnl=pnl,
                pnl_percent=pnl_percent,
                exit_reason=exit_reason,
                opened_at=pos.opened_at,
                closed_at=self._clock(),
                context=pos.context,
            )

            trade = self._store.close_position(trade, account)
            del self._positions[position_id]
            self._closed_ids.add(position_id)
            self._account = account
            self._expected_equity += pnl
            self._check_invariants("close")

        icon = "✅" if trade.is_win else "❌"
        logger.info(
            f"{icon} Closed {pos.side.upper()} #{pos.id} {pos.symbol} @ {exit_price} "
            f"({exit_reason}) P&L {pnl} USDT ({pnl_percent}%) balance {balance}"
        )
        return trade

    # ── Drawdown gate ───────────────────────────────────────────────────

    def check_drawdown(self, config: DrawdownConfig,
                       now: Optional[datetime] = None) -> DrawdownStatus:
        """Pause when the available balance falls ``max_drawdown_percent`` below
        its peak; resume once the pause has elapsed.  Margin committed to open
        positions counts as drawn down.  Callers must consult the result before
        any ``open()``."""
        now = now or self._clock()
        with self._lock:
            peak = self._account.peak_balance
            balance = self._account.balance
            drawdown = float((peak - balance) / peak * HUNDRED) if peak > 0 else 0.0

            if not config.enabled:
                return DrawdownStatus(paused=False, drawdown_percent=drawdown)

            if self._account.trading_paused:
                until = self._account.paused_until
                if until is not None and now >= until:
                    account = replace(self._account, trading_paused=False, paused_until=None)
                    self._store.save_account(account)
                    self._account = account
                    logger.info(f"▶️ Trading resumed (drawdown {drawdown:.2f}%)")
                    return DrawdownStatus(paused=False, drawdown_percent=drawdown, event="resumed")
                return DrawdownStatus(paused=True, drawdown_percent=drawdown, paused_until=until)

            if drawdown >= config.max_drawdown_percent:
                until = now + timedelta(minutes=config.pause_minutes)
                account = replace(self._account, trading_paused=True, paused_until=until)
                self._store.save_account(account)
                self._account = account
                logger.warning(
                    f"⏸️ Drawdown {drawdown:.2f}% ≥ {config.max_drawdown_percent}% "
                    f"(peak {peak}, balance {balance}); pausing until {until.isoformat()}"
                )
                return DrawdownStatus(paused=True, drawdown_percent=drawdown,
                                      paused_until=until, event="paused")

            return DrawdownStatus(paused=False, drawdown_percent=drawdown)

    # ── Invariants ──────────────────────────────────────────────────────

    def _violation(self, message: str) -> None:
        if self._strict:
            raise LedgerInvariantError(message)
        logger.error(f"Ledger invariant violated: {message}")

    def _check_invariants(self, operation: str) -> None:
        if self._account.balance < 0:
            self._violation(f"negative balance {self._account.balance} after {operation}")
        for pos in self._positions.values():
            if pos.margin <= 0 or pos.quantity <= 0:
                self._violation(f"position #{pos.id} has non-positive margin/quantity")
        if self.total_equity != self._expected_equity:
            self._violation(
                f"equity {self.total_equity} != expected {self._expected_equity} "
                f"after {operation}"
            )


def _fmt(value: Optional[Decimal]) -> str:
    return "-" if value is None else f"{value:.6f}"


def _stop_fill(pos: Position, stop: Decimal, reachable: Decimal) -> Decimal:
    """Stop price, or *reachable* when the market never traded back to the stop."""
    return min(stop, reachable) if pos.is_long else max(stop, reachable)
