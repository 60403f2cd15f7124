from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import NOW
from perpbot.config import DrawdownConfig, TrailingStopConfig
from perpbot.services.execution import (
    LONG,
    SHORT,
    InsufficientBalance,
    LedgerInvariantError,
    PositionLedger,
    PositionNotFound,
    TradeContext,
)
from perpbot.services.execution.models import (
    STOP_LOSS,
    TAKE_PROFIT,
    TRAILING_STOP,
)

SYMBOL = "SOL/USDT"


class TestOpen:
    def test_margin_moves_from_balance(self, ledger):
        pid = ledger.open(SYMBOL, LONG, 100, 10, 10, stop_loss_pct=2, take_profit_pct=3)
        pos = ledger.get_position(pid)
        assert pos.margin == Decimal("100")
        assert ledger.balance == Decimal("9900")
        assert ledger.total_equity == Decimal("10000")
        assert pos.stop_loss_price == Decimal("98")
        assert pos.take_profit_price == Decimal("103")

    def test_short_targets_are_mirrored(self, ledger):
        pid = ledger.open(SYMBOL, SHORT, 100, 1, 5, stop_loss_pct=2, take_profit_pct=3)
        pos = ledger.get_position(pid)
        assert pos.stop_loss_price == Decimal("102")
        assert pos.take_profit_price == Decimal("97")

    def test_insufficient_balance_mutates_nothing(self, ledger):
        with pytest.raises(InsufficientBalance) as exc:
            ledger.open(SYMBOL, LONG, 100, 1000, 5)
        assert exc.value.required == Decimal("20000")
        assert ledger.balance == Decimal("10000")
        assert ledger.positions() == []

    @pytest.mark.parametrize("args", [
        (SYMBOL, "sideways", 100, 1, 5),
        (SYMBOL, LONG, 0, 1, 5),
        (SYMBOL, LONG, 100, -1, 5),
        (SYMBOL, LONG, 100, 1, 0),
    ])
    def test_invalid_inputs(self, ledger, args):
        with pytest.raises(ValueError):
            ledger.open(*args)


class TestClose:
    def test_round_trip_at_entry_is_flat(self, ledger):
        pid = ledger.open(SYMBOL, LONG, 123.45, 3, 7)
        trade = ledger.close(pid, 123.45, "manual")
        assert trade.pnl == 0
        assert ledger.balance == Decimal("10000")
        assert ledger.positions() == []

    def test_conservation_with_overlapping_positions(self, ledger):
        # side, entry, exit, quantity, leverage, margin, pnl (worked by hand)
        legs = [
            (LONG, "100.25", "101.5", "0.3", 3, "10.025", "0.375"),
            (SHORT, "250", "240.75", "1.2", 5, "60", "11.1"),
            (LONG, "37.5", "36.1", "4", 2, "75", "-5.6"),
            (SHORT, "99.99", "100.49", "0.5", 10, "4.9995", "-0.25"),
            (LONG, "1200", "1212.12", "0.05", 20, "3", "0.606"),
        ]
        ids = [ledger.open(SYMBOL, side, Decimal(entry), Decimal(qty), lev)
               for side, entry, _, qty, lev, _, _ in legs]
        assert ledger.balance == Decimal("9846.9755")
        assert ledger.total_equity == Decimal("10000")

        realised = Decimal(0)
        for n in (3, 0):
            _, _, exit_price, _, _, margin, pnl = legs[n]
            trade = ledger.close(ids[n], Decimal(exit_price), "manual")
            assert trade.margin == Decimal(margin)
            assert trade.pnl == Decimal(pnl)
            realised += Decimal(pnl)
            assert ledger.total_equity == Decimal("10000") + realised

        # a fresh position while three others are still open
        extra = ledger.open(SYMBOL, LONG, Decimal("50"), Decimal("2"), 4)
        assert ledger.get_position(extra).margin == Decimal("25")
        assert len(ledger.positions()) == 4

        for n in (4, 1, 2):
            _, _, exit_price, _, _, _, pnl = legs[n]
            assert ledger.close(ids[n], Decimal(exit_price), "manual").pnl == Decimal(pnl)
            realised += Decimal(pnl)
        assert ledger.close(extra, Decimal("50"), "manual").pnl == 0

        assert realised == Decimal("6.231")
        assert ledger.positions() == []
        assert ledger.balance == Decimal("10006.231")

    def test_short_pnl(self, ledger):
        pid = ledger.open(SYMBOL, SHORT, 100, 2, 10)
        trade = ledger.close(pid, 95, "manual")
        assert trade.pnl == Decimal("10")
        assert trade.pnl_percent == Decimal("50")
        assert ledger.balance == Decimal("10010")

    def test_loss_is_floored_at_margin(self, ledger):
        pid = ledger.open(SYMBOL, LONG, 100, 10, 10)
        trade = ledger.close(pid, 50, "manual")
        assert trade.pnl == Decimal("-100")
        assert ledger.balance == Decimal("9900")
        assert ledger.balance >= 0

    def test_unknown_position(self, ledger):
        with pytest.raises(PositionNotFound):
            ledger.close(42, 100, "manual")
        assert ledger.balance == Decimal("10000")

    def test_double_close_is_an_invariant_violation(self, ledger):
        pid = ledger.open(SYMBOL, LONG, 100, 1, 5)
        ledger.close(pid, 101, "manual")
        with pytest.raises(LedgerInvariantError):
            ledger.close(pid, 101, "manual")

    def test_double_close_non_strict_raises_not_found(self, store, clock):
        ledger = PositionLedger(store, strict=False, clock=clock)
        pid = ledger.open(SYMBOL, LONG, 100, 1, 5)
        ledger.close(pid, 101, "manual")
        with pytest.raises(PositionNotFound):
            ledger.close(pid, 101, "manual")

    def test_context_carried_to_trade(self, ledger):
        ctx = TradeContext(rsi=28.5, trend="uptrend", hour_utc=12)
        pid = ledger.open(SYMBOL, LONG, 100, 1, 5, context=ctx)
        trade = ledger.close(pid, 99, "manual")
        assert trade.context.rsi == 28.5
        assert trade.result == "LOSS"


class TestEvaluate:
    def test_stop_loss(self, ledger):
        ledger.open(SYMBOL, LONG, 100, 10, 10, stop_loss_pct=2, take_profit_pct=3)
        assert ledger.evaluate(SYMBOL, 99) == []
        closed = ledger.evaluate(SYMBOL, 97)
        assert len(closed) == 1
        assert closed[0].exit_reason == STOP_LOSS
        assert closed[0].exit_price <= Decimal("98")
        assert closed[0].pnl < 0

    def test_take_profit(self, ledger):
        ledger.open(SYMBOL, LONG, 100, 10, 10, stop_loss_pct=2, take_profit_pct=3)
        closed = ledger.evaluate(SYMBOL, 105)
        assert closed[0].exit_reason == TAKE_PROFIT
        assert closed[0].pnl > 0

    def test_session_low_triggers_stop_before_target(self, ledger):
        ledger.open(SYMBOL, LONG, 100, 1, 10, stop_loss_pct=2, take_profit_pct=3)
        closed = ledger.evaluate(SYMBOL, 104, session_high=104, session_low=97)
        assert closed[0].exit_reason == STOP_LOSS

    def test_short_stop_uses_session_high(self, ledger):
        ledger.open(SYMBOL, SHORT, 100, 1, 10, stop_loss_pct=2, take_profit_pct=3)
        closed = ledger.evaluate(SYMBOL, 100, session_high=102.5, session_low=99.5)
        assert closed[0].exit_reason == STOP_LOSS
        assert closed[0].pnl < 0

    def test_other_symbols_untouched(self, ledger):
        ledger.open("ETH/USDT", LONG, 100, 1, 10, stop_loss_pct=2)
        assert ledger.evaluate(SYMBOL, 50) == []
        assert len(ledger.positions()) == 1

    def test_trailing_only_tightens(self, store, clock):
        ledger = PositionLedger(store, TrailingStopConfig(activation_percent=1.0,
                                                          trailing_percent=0.5), clock=clock)
        pid = ledger.open(SYMBOL, LONG, 100, 1, 10, stop_loss_pct=2)

        stops = []
        for price in (102, 103, 102.6, 102.5):
            assert ledger.evaluate(SYMBOL, price) == []
            pos = ledger.get_position(pid)
            assert pos.trailing_active
            stops.append(pos.stop_loss_price)
        assert stops == sorted(stops)
        assert stops[-1] == Decimal("102.485")

        closed = ledger.evaluate(SYMBOL, 102.3, session_high=102.6, session_low=102.3)
        assert closed[0].exit_reason == TRAILING_STOP
        assert closed[0].exit_price == Decimal("102.485")
        assert closed[0].pnl > 0

    def test_extremes_before_arming_are_ignored(self, store, clock):
        ledger = PositionLedger(store, TrailingStopConfig(activation_percent=1.0,
                                                          trailing_percent=0.5), clock=clock)
        pid = ledger.open(SYMBOL, LONG, 100, 1, 10, take_profit_pct=10)

        # a wick to 105 while the close is still below activation
        assert ledger.evaluate(SYMBOL, 100.5, session_high=105, session_low=100) == []
        pos = ledger.get_position(pid)
        assert not pos.trailing_active
        assert pos.highest_price == Decimal("100")

        assert ledger.evaluate(SYMBOL, 101.2, session_high=101.3, session_low=101.1) == []
        pos = ledger.get_position(pid)
        assert pos.trailing_active
        assert pos.highest_price == Decimal("101.3")
        assert pos.stop_loss_price == Decimal("100.7935")

    def test_trailing_exit_never_beats_the_market(self, store, clock):
        ledger = PositionLedger(store, TrailingStopConfig(activation_percent=1.0,
                                                          trailing_percent=0.5), clock=clock)
        ledger.open(SYMBOL, LONG, 100, 1, 10)
        # armed on a spike to 110, closed back at 104 in the same session
        [trade] = ledger.evaluate(SYMBOL, 104, session_high=110, session_low=103.5)
        assert trade.exit_reason == TRAILING_STOP
        assert trade.exit_price == Decimal("104")
        assert trade.pnl == Decimal("4")

    def test_short_trailing_exit_never_beats_the_market(self, store, clock):
        ledger = PositionLedger(store, TrailingStopConfig(activation_percent=1.0,
                                                          trailing_percent=0.5), clock=clock)
        ledger.open(SYMBOL, SHORT, 100, 1, 10)
        [trade] = ledger.evaluate(SYMBOL, 96, session_high=96.5, session_low=90)
        assert trade.exit_reason == TRAILING_STOP
        assert trade.exit_price == Decimal("96")

    def test_stop_gapped_through_fills_at_session_high(self, ledger):
        ledger.open(SYMBOL, LONG, 100, 10, 10, stop_loss_pct=2)
        [trade] = ledger.evaluate(SYMBOL, 95, session_high=96, session_low=94)
        assert trade.exit_reason == STOP_LOSS
        assert trade.exit_price == Decimal("96")
        assert trade.pnl == Decimal("-40")

    def test_trailing_state_persists(self, store, clock):
        ledger = PositionLedger(store, clock=clock)
        pid = ledger.open(SYMBOL, LONG, 100, 1, 10, stop_loss_pct=2)
        ledger.evaluate(SYMBOL, 102)
        reloaded = PositionLedger(store, clock=clock)
        pos = reloaded.get_position(pid)
        assert pos.trailing_active
        assert pos.highest_price == Decimal("102")


class TestDrawdown:
    def test_pause_and_resume(self, store, clock):
        ledger = PositionLedger(store, initial_balance=1000, clock=clock)
        config = DrawdownConfig(max_drawdown_percent=10, pause_minutes=30)
        pid = ledger.open(SYMBOL, LONG, 100, 50, 10)
        ledger.close(pid, 98, "manual")
        assert ledger.balance == Decimal("900")
        assert ledger.peak_balance == Decimal("1000")

        status = ledger.check_drawdown(config, NOW)
        assert status.paused and status.event == "paused"
        assert status.drawdown_percent == pytest.approx(10.0)
        assert ledger.is_paused()

        still = ledger.check_drawdown(config, NOW + timedelta(minutes=10))
        assert still.paused and still.event is None

        resumed = ledger.check_drawdown(config, NOW + timedelta(minutes=31))
        assert not resumed.paused and resumed.event == "resumed"

    def test_measured_on_available_balance(self, store, clock):
        ledger = PositionLedger(store, initial_balance=1000, clock=clock)
        config = DrawdownConfig(max_drawdown_percent=10)
        ledger.open(SYMBOL, LONG, 100, 5, 1)
        # (1000 - 500) / 1000: committed margin is drawn down too
        status = ledger.check_drawdown(config, NOW)
        assert status.drawdown_percent == pytest.approx(50.0)
        assert status.paused

    def test_peak_only_moves_at_close(self, store, clock):
        ledger = PositionLedger(store, initial_balance=1000, clock=clock)
        pid = ledger.open(SYMBOL, LONG, 100, 1, 1)
        assert ledger.peak_balance == Decimal("1000")
        ledger.close(pid, 150, "manual")
        assert ledger.balance == Decimal("1050")
        assert ledger.peak_balance == Decimal("1050")

    def test_peak_follows_gains(self, ledger):
        pid = ledger.open(SYMBOL, LONG, 100, 10, 10)
        ledger.close(pid, 110, "manual")
        assert ledger.peak_balance == Decimal("10100")

    def test_disabled(self, store, clock):
        ledger = PositionLedger(store, initial_balance=100, clock=clock)
        pid = ledger.open(SYMBOL, LONG, 100, 1, 1)
        ledger.close(pid, 50, "manual")
        assert not ledger.check_drawdown(DrawdownConfig(enabled=False)).paused


def test_state_reloads_from_store(store, clock):
    ledger = PositionLedger(store, clock=clock)
    pid = ledger.open(SYMBOL, LONG, Decimal("123.456789"), Decimal("0.12345678"), 3)
    again = PositionLedger(store, clock=clock)
    assert again.balance == ledger.balance
    pos = again.get_position(pid)
    assert pos.quantity == Decimal("0.12345678")
    assert pos.entry_price == Decimal("123.456789")
    assert pos.opened_at == NOW
