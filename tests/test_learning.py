from datetime import timedelta

from conftest import NOW, make_trade
from perpbot.config import HourOptimizerConfig, RsiOptimizerConfig
from perpbot.services.execution import LONG, SHORT
from perpbot.services.learning import (
    HourOptimizer,
    ParameterLearner,
    RsiOptimizer,
    RsiThresholds,
)


def closed_at(hour, pnl):
    return make_trade(pnl=pnl, closed_at=NOW.replace(hour=hour))


class StubStore:
    def __init__(self, trades=()):
        self.trades = list(trades)
        self.blocked = None
        self.params = {}

    def closed_trades(self, limit=None):
        return list(self.trades)

    def set_blocked_hours(self, hours):
        self.blocked = hours

    def get_param(self, key):
        return self.params.get(key)

    def set_param(self, key, value):
        self.params[key] = value


class TestHourOptimizer:
    def test_bad_hours_need_sample_and_low_win_rate(self):
        trades = [closed_at(3, -1), closed_at(3, -1), closed_at(3, 2),
                  closed_at(4, -1), closed_at(4, -1),
                  closed_at(5, 1), closed_at(5, 1), closed_at(5, -1)]
        bad = HourOptimizer(HourOptimizerConfig(enabled=True)).bad_hours(trades)
        assert list(bad) == [3]
        assert "33.3%" in bad[3]

    def test_uses_utc_close_hour(self):
        trade = make_trade(hour=1, closed_at=NOW + timedelta(hours=2))
        stats = HourOptimizer.win_rate_by_hour([trade])
        assert list(stats) == [14]


class TestRsiOptimizer:
    def test_good_oversold_band_raises_threshold(self):
        trades = [make_trade(LONG, 5, rsi=37)] * 3 + [make_trade(LONG, -5, rsi=36)]
        result = RsiOptimizer(RsiOptimizerConfig()).thresholds(trades)
        assert result == RsiThresholds(oversold=40.0, overbought=70.0)

    def test_oversold_is_clamped(self):
        trades = [make_trade(LONG, 5, rsi=48)] * 3
        assert RsiOptimizer(RsiOptimizerConfig()).thresholds(trades).oversold == 45.0

    def test_thin_or_losing_bands_are_ignored(self):
        trades = [make_trade(LONG, 5, rsi=41)] * 2 + [make_trade(LONG, -5, rsi=32)] * 5
        assert RsiOptimizer(RsiOptimizerConfig()).thresholds(trades).oversold == 30.0

    def test_short_bands_lower_overbought(self):
        trades = [make_trade(SHORT, 5, rsi=62)] * 2 + [make_trade(SHORT, -1, rsi=63)]
        assert RsiOptimizer(RsiOptimizerConfig()).thresholds(trades).overbought == 60.0


class TestParameterLearner:
    def test_hour_optimizer_runs_on_cadence(self):
        store = StubStore([closed_at(3, -1)] * 3)
        learner = ParameterLearner(store, HourOptimizerConfig(enabled=True, optimize_every=2),
                                   RsiOptimizerConfig())
        learner.on_trades_closed(total_closed=1, closed_now=1)
        assert store.blocked is None
        learner.on_trades_closed(total_closed=3, closed_now=2)
        assert list(store.blocked) == [3]

    def test_rsi_thresholds_become_overrides(self):
        store = StubStore([make_trade(LONG, 5, rsi=37)] * 3)
        learner = ParameterLearner(store, HourOptimizerConfig(),
                                   RsiOptimizerConfig(enabled=True, min_trades=3,
                                                      optimize_every=1))
        assert learner.strategy_overrides() == {}
        learner.on_trades_closed(total_closed=3, closed_now=1)
        assert learner.strategy_overrides() == {"rsi_oversold": 40.0, "rsi_overbought": 70.0}

    def test_disabled_optimizers_do_nothing(self):
        store = StubStore([closed_at(3, -1)] * 3)
        ParameterLearner(store, HourOptimizerConfig(), RsiOptimizerConfig()).on_trades_closed(10, 10)
        assert store.blocked is None and store.params == {}
