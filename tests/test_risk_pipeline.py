from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from conftest import NOW, FakeMarket, growth, make_candles, make_trade
from perpbot.config import (
    BtcCorrelationConfig,
    LeverageAdjustmentConfig,
    LossFilterConfig,
    MartingaleConfig,
    PositionSizingConfig,
    SentimentConfig,
    TimeFilterConfig,
    TradingConfig,
    VolatilityConfig,
)
from perpbot.services.execution import LONG, SHORT as SHORT_SIDE, TradeStats
from perpbot.services.risk import (
    BtcCorrelationStage,
    LossAnalyzer,
    LossPatternStage,
    MartingaleSizer,
    MartingaleStage,
    OrderDraft,
    PositionSizingStage,
    ReferenceMomentum,
    RiskContext,
    RiskPipeline,
    RiskStage,
    SentimentStage,
    TimeFilterStage,
    VolatilityStage,
    build_pipeline,
    volatility_multiplier,
)
from perpbot.services.sentiment import combine
from perpbot.services.strategies import BUY, HOLD, SHORT, Signal


def draft(direction=BUY, confidence=60.0, **kwargs):
    base = OrderDraft(
        symbol="SOL/USDT", direction=direction, confidence=confidence, rationale="test",
        stop_loss_pct=2.5, take_profit_pct=3.5, leverage=20, margin_amount=150.0,
    )
    return replace(base, **kwargs)


def ctx(**kwargs):
    return replace(RiskContext(symbol="SOL/USDT", now=NOW, price=100.0), **kwargs)


def sentiment(score):
    return combine(score, score)


class Spy(RiskStage):
    def __init__(self, name, veto=None):
        self.name = name
        self.veto_reason = veto
        self.calls = 0

    def apply(self, d, c):
        self.calls += 1
        return d.veto(self.name, self.veto_reason) if self.veto_reason else d


# ── Sentiment ────────────────────────────────────────────────────────────────

class TestSentimentStage:
    stage = SentimentStage(SentimentConfig())

    def test_buy_into_fear_is_boosted(self):
        out = self.stage.apply(draft(BUY, 60), ctx(sentiment=sentiment(20)))
        assert out.confidence == 75
        assert not out.vetoed

    def test_buy_into_greed_is_cut(self):
        out = self.stage.apply(draft(BUY, 80), ctx(sentiment=sentiment(75)))
        assert out.confidence == 60
        assert not out.vetoed

    def test_extreme_greed_downgrades_buy(self):
        out = self.stage.apply(draft(BUY, 60), ctx(sentiment=sentiment(90)))
        assert out.vetoed
        assert out.direction == HOLD
        assert out.veto_reason == "Buy signal blocked by extreme greed (90)"

    def test_extreme_fear_downgrades_short(self):
        out = self.stage.apply(draft(SHORT, 60), ctx(sentiment=sentiment(10)))
        assert out.vetoed
        assert out.veto_reason == "Short signal blocked by extreme fear (10)"

    def test_short_into_greed_is_boosted(self):
        out = self.stage.apply(draft(SHORT, 60), ctx(sentiment=sentiment(80)))
        assert out.confidence == 75

    def test_unavailable_sentiment_is_a_no_op(self):
        d = draft()
        assert self.stage.apply(d, ctx(sentiment=None)) is d


# ── Time filter ──────────────────────────────────────────────────────────────

class TestTimeFilterStage:
    def test_static_blocked_hour(self):
        stage = TimeFilterStage(TimeFilterConfig(blocked_hours=frozenset({12})))
        out = stage.apply(draft(), ctx())
        assert out.vetoed and out.vetoed_by == "time_filter"

    def test_learned_hours_from_store(self):
        stage = TimeFilterStage(TimeFilterConfig())
        assert stage.apply(draft(), ctx(learned_blocked_hours=frozenset({12}))).vetoed
        assert not stage.apply(draft(), ctx(learned_blocked_hours=frozenset({13}))).vetoed

    def test_hours_learned_from_losses(self):
        trades = [make_trade(pnl=-8, hour=12), make_trade(pnl=-7, hour=12)]
        summary = LossAnalyzer(min_losses=5).analyze(trades)
        stage = TimeFilterStage(TimeFilterConfig(learned_min_trades=2, learned_avg_loss=5))
        assert stage.apply(draft(), ctx(loss_patterns=summary)).vetoed
        off = TimeFilterStage(TimeFilterConfig(learn_from_losses=False))
        assert not off.apply(draft(), ctx(loss_patterns=summary)).vetoed

    def test_weekend(self):
        saturday = datetime(2024, 1, 6, 12, 0, tzinfo=timezone.utc)
        stage = TimeFilterStage(TimeFilterConfig(avoid_weekends=True))
        assert stage.apply(draft(), ctx(now=saturday)).vetoed
        assert not stage.apply(draft(), ctx()).vetoed


# ── BTC correlation ──────────────────────────────────────────────────────────

def reference(closes=None, failing=False, **cfg):
    config = BtcCorrelationConfig(**cfg)
    data = {} if closes is None else {config.symbol: {config.timeframe: make_candles(closes)}}
    market = FakeMarket(data, failing={config.symbol} if failing else ())
    return ReferenceMomentum(market, config), market


class TestBtcCorrelation:
    def test_bullish_reference_blocks_short(self):
        ref, _ = reference(growth(50, 1.01))
        stage = BtcCorrelationStage(ref.config, ref)
        assert stage.apply(draft(SHORT), ctx()).vetoed
        assert not stage.apply(draft(BUY), ctx()).vetoed

    def test_bearish_reference_blocks_buy(self):
        ref, _ = reference(growth(50, 0.99))
        stage = BtcCorrelationStage(ref.config, ref)
        out = stage.apply(draft(BUY), ctx())
        assert out.vetoed and "bearish" in out.veto_reason

    def test_unavailable_reference_is_neutral(self):
        ref, _ = reference(failing=True)
        stage = BtcCorrelationStage(ref.config, ref)
        assert not stage.apply(draft(BUY), ctx()).vetoed
        assert ref.last_error is not None

    def test_strict_mode_needs_agreement(self):
        ref, _ = reference(failing=True, strict=True)
        stage = BtcCorrelationStage(ref.config, ref)
        assert stage.apply(draft(BUY), ctx()).vetoed

    def test_momentum_is_cached(self):
        ref, market = reference(growth(50, 1.01))
        ref.momentum(NOW)
        ref.momentum(NOW + timedelta(seconds=100))
        assert len(market.calls) == 1
        ref.momentum(NOW + timedelta(seconds=301))
        assert len(market.calls) == 2

    def test_too_few_candles_is_neutral(self):
        ref, _ = reference(growth(10, 0.9))
        assert ref.momentum(NOW) == "neutral"


# ── Loss patterns ────────────────────────────────────────────────────────────

class TestLossPatternStage:
    stage = LossPatternStage(LossFilterConfig())

    def test_side_with_only_losses_is_hard_vetoed(self):
        summary = LossAnalyzer().analyze([make_trade(LONG, -1) for _ in range(5)])
        out = self.stage.apply(draft(BUY), ctx(loss_patterns=summary))
        assert out.vetoed and "LONG lost 5/5" in out.veto_reason
        assert not self.stage.apply(draft(SHORT), ctx(loss_patterns=summary)).vetoed

    def test_one_win_lifts_hard_veto(self):
        trades = [make_trade(LONG, -1) for _ in range(5)] + [make_trade(LONG, 5)]
        summary = LossAnalyzer().analyze(trades)
        assert not self.stage.apply(draft(BUY), ctx(loss_patterns=summary)).vetoed

    def test_two_warnings_veto(self):
        trades = [make_trade(LONG, -10, rsi=25, trend="uptrend") for _ in range(5)]
        trades += [make_trade(LONG, 20) for _ in range(5)]
        summary = LossAnalyzer().analyze(trades)
        d = draft(BUY, labels={"trend": "bullish"}, indicators={"rsi": 20.0})
        out = self.stage.apply(d, ctx(loss_patterns=summary))
        assert out.vetoed
        assert out.veto_reason.startswith("High-risk pattern")

    def test_single_warning_passes(self):
        trades = [make_trade(LONG, -10, trend="uptrend") for _ in range(5)]
        trades += [make_trade(SHORT_SIDE, -10, trend="uptrend") for _ in range(5)]
        trades += [make_trade(LONG, 20) for _ in range(5)]
        summary = LossAnalyzer().analyze(trades)
        d = draft(BUY, labels={"trend": "bullish"}, indicators={"rsi": 50.0})
        out = self.stage.apply(d, ctx(loss_patterns=summary, volatility_multiplier=1.0))
        assert not out.vetoed
        assert any("Loss-pattern warning" in n for n in out.notes)


def test_loss_analyzer_buckets():
    trades = [
        make_trade(LONG, -10, hour=3, rsi=25, trend="uptrend", volatility=1.5),
        make_trade(SHORT_SIDE, -4, hour=3, rsi=75, trend="downtrend", volatility=0.5),
        make_trade(LONG, 6, hour=4),
    ]
    summary = LossAnalyzer(min_losses=2).analyze(trades)
    assert summary.sufficient
    assert summary.total_losses == 2
    assert summary.by_hour[3].count == 2
    assert summary.by_hour[3].avg_loss == pytest.approx(7.0)
    assert summary.by_rsi["oversold"].count == 1
    assert summary.by_volatility["high"].total_loss == pytest.approx(10.0)
    assert summary.side_totals[LONG].trades == 2
    assert summary.side_totals[LONG].losses == 1


# ── Volatility ───────────────────────────────────────────────────────────────

class TestVolatility:
    stage = VolatilityStage(VolatilityConfig(), LeverageAdjustmentConfig())

    def test_multiplier_flat_market_is_one(self):
        candles = make_candles([100.0] * 40)
        assert volatility_multiplier(candles, 14, 100) == pytest.approx(1.0)

    def test_multiplier_needs_history(self):
        assert volatility_multiplier(make_candles([100.0] * 5), 14, 100) is None

    def test_high_volatility_widens_and_deleverages(self):
        out = self.stage.apply(draft(), ctx(volatility_multiplier=2.0))
        assert out.stop_loss_pct == 3.0
        assert out.take_profit_pct == 5.0
        assert out.leverage == 15

    def test_low_volatility_tightens_and_leverages(self):
        out = self.stage.apply(draft(), ctx(volatility_multiplier=0.4))
        assert out.stop_loss_pct == 1.0
        assert out.take_profit_pct == 1.4
        assert out.leverage == 25

    def test_normal_volatility_keeps_leverage(self):
        out = self.stage.apply(draft(), ctx(volatility_multiplier=1.0))
        assert (out.stop_loss_pct, out.take_profit_pct, out.leverage) == (2.5, 3.5, 20)


# ── Sizing ───────────────────────────────────────────────────────────────────

class TestPositionSizing:
    stage = PositionSizingStage(PositionSizingConfig())

    def test_neutral_below_min_trades(self):
        d = draft()
        assert self.stage.apply(d, ctx(stats=TradeStats(5, 5, 5, 5))) is d

    def test_winning_record_scales_up(self):
        out = self.stage.apply(draft(), ctx(stats=TradeStats(20, 15, 10, 8)))
        assert out.size_multiplier == pytest.approx(1.53)
        assert out.margin_amount == pytest.approx(150 * 1.53)

    def test_losing_record_is_bounded(self):
        out = self.stage.apply(draft(), ctx(stats=TradeStats(20, 0, 10, 0)))
        assert out.size_multiplier == pytest.approx(0.25)


# ── Martingale ───────────────────────────────────────────────────────────────

class TestMartingale:
    def test_anti_martingale_resets_on_loss(self):
        sizer = MartingaleSizer(MartingaleConfig(mode="anti_martingale"))
        assert [sizer.record_result(w) for w in (True, True, False)] == [1, 2, 0]

    def test_martingale_resets_on_win(self):
        sizer = MartingaleSizer(MartingaleConfig(mode="martingale"))
        assert [sizer.record_result(w) for w in (False, False, True)] == [1, 2, 0]

    def test_off_never_counts(self):
        sizer = MartingaleSizer(MartingaleConfig(mode="off"), streak=4)
        assert sizer.record_result(False) == 0
        assert sizer.multiplier() == 1.0

    def test_multiplier_is_capped(self):
        sizer = MartingaleSizer(MartingaleConfig(multiplier=1.5, max_multiplier=3.0), streak=3)
        assert sizer.multiplier() == 3.0
        out = MartingaleStage(sizer).apply(draft(), ctx())
        assert out.margin_amount == pytest.approx(450.0)

    def test_streak_never_negative(self):
        assert MartingaleSizer(MartingaleConfig(), streak=-3).streak == 0


# ── Composition ──────────────────────────────────────────────────────────────

def pipeline(stages):
    return RiskPipeline(stages, trade_amount=150, leverage=20,
                        stop_loss_pct=2.5, take_profit_pct=3.5)


class TestPipeline:
    def test_veto_short_circuits(self):
        time_stage = TimeFilterStage(TimeFilterConfig(blocked_hours=frozenset({12})))
        sizing, martingale = Spy("position_sizing"), Spy("martingale")
        order = pipeline([time_stage, sizing, martingale]).run(Signal(BUY, 70, "x"), ctx())
        assert not order.approved
        assert order.vetoed_by == "time_filter"
        assert order.stages_run == ("time_filter",)
        assert sizing.calls == 0 and martingale.calls == 0

    def test_hold_never_reaches_stages(self):
        spy = Spy("sentiment")
        order = pipeline([spy]).run(Signal.hold("nothing"), ctx())
        assert not order.approved
        assert order.vetoed_by == "signal"
        assert spy.calls == 0

    def test_approved_order_applies_leverage_once(self):
        order = pipeline([Spy("a"), Spy("b")]).run(Signal(SHORT, 70, "x"), ctx())
        assert order.approved and order.veto_reason is None
        assert order.notional_amount == pytest.approx(3000.0)
        assert str(order.quantity_at(100.0)) == "30.00000000"

    def test_default_order(self):
        ref, _ = reference(failing=True)
        stages = build_pipeline(TradingConfig(), ref, MartingaleSizer(MartingaleConfig())).stages
        assert [s.name for s in stages] == [
            "sentiment", "time_filter", "btc_correlation", "loss_patterns",
            "volatility", "position_sizing", "martingale",
        ]
