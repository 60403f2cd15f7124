"""
Trading Agent — one decision cycle per symbol
==============================================
Runs the engine over every configured symbol, sequentially:

  1. fetch candles for every timeframe the strategy needs
  2. ledger.evaluate() — SL → TP → trailing on the latest candle
  3. strategy signal (with learned RSI thresholds)
  4. risk pipeline (sentiment → time → BTC → loss patterns → volatility
     → sizing → martingale)
  5. drawdown gate
  6. reversal: close positions opposing the new direction
  7. open the approved order

The ledger lock covers step 2 and steps 5-7 only; the network lookups of
steps 3-4 run without it.

A failure in one symbol is logged and recorded in its ``CycleReport``;
the next symbol is processed regardless.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

from perpbot.config import TradingConfig
from perpbot.services.execution.ledger import InsufficientBalance, PositionLedger
from perpbot.services.execution.models import (
    LONG,
    REVERSAL,
    SHORT,
    STOP_LOSS,
    ClosedTrade,
    TradeContext,
)
from perpbot.services.execution.store import LedgerStore
from perpbot.services.learning import ParameterLearner
from perpbot.services.market_data import MarketDataService
from perpbot.services.risk import (
    LossAnalyzer,
    LossPatternSummary,
    MartingaleSizer,
    ReferenceMomentum,
    RiskAdjustedOrder,
    RiskContext,
    RiskPipeline,
    build_pipeline,
    volatility_multiplier,
)
from perpbot.services.risk.loss_patterns import trend_bucket
from perpbot.services.sentiment import SentimentReading, SentimentService
from perpbot.services.strategies import BUY, HOLD, Signal, StrategyEngine

logger = logging.getLogger(__name__)


@dataclass
class CycleReport:
    """What happened to one symbol in one cycle."""
    symbol: str
    signal: Optional[Signal] = None
    order: Optional[RiskAdjustedOrder] = None
    opened_position_id: Optional[int] = None
    closed: List[ClosedTrade] = field(default_factory=list)
    skipped: Optional[str] = None
    error: Optional[str] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TradingAgentService:
    """Paper trading agent wiring market data, strategy, risk and ledger."""

    def __init__(
        self,
        config: TradingConfig,
        ledger: PositionLedger,
        store: LedgerStore,
        market_service: MarketDataService,
        sentiment_service: Optional[SentimentService] = None,
        strategy: Optional[StrategyEngine] = None,
        sizer: Optional[MartingaleSizer] = None,
        reference: Optional[ReferenceMomentum] = None,
        pipeline: Optional[RiskPipeline] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.config = config
        self.ledger = ledger
        self.store = store
        self.market_service = market_service
        self.sentiment_service = sentiment_service
        self.strategy = strategy or StrategyEngine.create(config.strategy.name,
                                                          config.strategy.params)
        self.sizer = sizer or MartingaleSizer(config.martingale, store.martingale_streak())
        self.reference = reference or ReferenceMomentum(market_service, config.btc_correlation)
        self.pipeline = pipeline or build_pipeline(config, self.reference, self.sizer)
        self.learner = ParameterLearner(store, config.hour_optimizer, config.rsi_optimizer)
        self.analyzer = LossAnalyzer(
            config.loss_filter.min_losses,
            config.loss_filter.low_volatility,
            config.loss_filter.high_volatility,
        )
        self._clock = clock
        self._cooldown_until: Dict[str, datetime] = {}
        self._loss_cache: Optional[Tuple[int, LossPatternSummary]] = None

    # ── Cycle ─────────────────────────────────────────────────────────────

    def run_cycle(self, now: Optional[datetime] = None) -> List[CycleReport]:
        now = now or self._clock()
        reports = []
        for symbol in self.config.symbols:
            report = CycleReport(symbol)
            try:
                self._process_symbol(symbol, now, report)
            except Exception as e:
                logger.exception(f"❌ {symbol}: cycle failed: {e}")
                report.error = str(e)
            reports.append(report)

        opened = sum(1 for r in reports if r.opened_position_id is not None)
        closed = sum(len(r.closed) for r in reports)
        logger.info(f"🔄 Cycle done: {len(reports)} symbols, {opened} opened, {closed} closed, "
                    f"balance {self.ledger.balance} USDT")
        return reports

    def _process_symbol(self, symbol: str, now: datetime, report: CycleReport) -> None:
        fetched = self.market_service.fetch_timeframes(symbol, self.strategy.timeframes())
        if not fetched.success:
            report.skipped = f"market data unavailable: {fetched.error}"
            logger.warning(f"⚠️ {symbol}: {report.skipped}")
            return
        candles = fetched.data
        entry_candles = candles.get(self.entry_timeframe()) or []
        if not entry_candles:
            report.skipped = "no entry candles"
            return
        last = entry_candles[-1]
        price = last.close

        # Existing positions first
        with self.ledger.lock:
            report.closed.extend(self.ledger.evaluate(symbol, price, last.high, last.low))
            self._on_closed(report.closed, now)

        # Signal and risk run unlocked: sentiment and BTC lookups hit the network
        signal = self.strategy.evaluate(candles, self.learner.strategy_overrides())
        report.signal = signal
        logger.debug(f"{symbol} signal: {signal.direction} ({signal.confidence}) "
                     f"{signal.rationale}")

        ctx = self._risk_context(symbol, now, price, entry_candles)
        btc_momentum = (self.reference.momentum(now)
                        if self.config.btc_correlation.enabled else None)
        order = self.pipeline.run(signal, ctx)
        report.order = order

        with self.ledger.lock:
            drawdown = self.ledger.check_drawdown(self.config.drawdown, now)

            reversed_trades = self._reverse(symbol, order, price)
            report.closed.extend(reversed_trades)
            self._on_closed(reversed_trades, now)

            if not order.approved:
                report.skipped = f"{order.vetoed_by}: {order.veto_reason}"
                return
            if drawdown.paused:
                report.skipped = f"trading paused (drawdown {drawdown.drawdown_percent:.2f}%)"
                return
            blocked = self._entry_blocker(symbol, now)
            if blocked:
                report.skipped = blocked
                logger.info(f"⏭️ {symbol}: {blocked}")
                return

            report.opened_position_id = self._open(order, price, ctx, signal, btc_momentum)

    # ── Helpers ───────────────────────────────────────────────────────────

    def entry_timeframe(self) -> str:
        """The timeframe whose last candle drives price, SL/TP and ATR."""
        params = self.strategy.strategy.params
        timeframes = self.strategy.timeframes()
        entry = params.get("entry_timeframe")
        if entry in timeframes:
            return entry
        return next(iter(timeframes))

    def _loss_summary(self, total_trades: int) -> LossPatternSummary:
        if self._loss_cache is None or self._loss_cache[0] != total_trades:
            self._loss_cache = (total_trades, self.analyzer.analyze(self.store.closed_trades()))
        return self._loss_cache[1]

    def _risk_context(self, symbol: str, now: datetime, price: float,
                      entry_candles: List) -> RiskContext:
        sentiment = SentimentReading.neutral()
        if self.sentiment_service is not None:
            result = self.sentiment_service.get_sentiment(symbol)
            if result.success:
                sentiment = result.data
            else:
                logger.info(f"{symbol}: sentiment unavailable ({result.error}), using neutral")

        stats = self.store.trade_stats(self.config.position_sizing.recent_window)
        vol = self.config.volatility
        return RiskContext(
            symbol=symbol,
            now=now,
            price=price,
            candles=tuple(entry_candles),
            sentiment=sentiment,
            loss_patterns=self._loss_summary(stats.total),
            stats=stats,
            learned_blocked_hours=frozenset(self.store.blocked_hours()),
            volatility_multiplier=volatility_multiplier(entry_candles, vol.atr_period,
                                                        vol.avg_atr_period),
        )

    def _reverse(self, symbol: str, order: RiskAdjustedOrder, price: float) -> List[ClosedTrade]:
        """Close every position on *symbol* when all of them oppose the new direction."""
        if order.direction == HOLD:
            return []
        wanted = LONG if order.direction == BUY else SHORT
        open_positions = self.ledger.positions(symbol)
        if not open_positions or any(p.side == wanted for p in open_positions):
            return []

        closed = []
        for position in open_positions:
            logger.info(f"🔁 {symbol}: reversing #{position.id} {position.side.upper()} "
                        f"for {order.direction.upper()} signal")
            closed.append(self.ledger.close(position.id, price, REVERSAL))
        return closed

    def _entry_blocker(self, symbol: str, now: datetime) -> Optional[str]:
        until = self._cooldown_until.get(symbol)
        if until is not None and now < until:
            return f"stop-loss cooldown until {until.isoformat()}"
        if len(self.ledger.positions()) >= self.config.max_open_trades:
            return f"max open trades reached ({self.config.max_open_trades})"
        if len(self.ledger.positions(symbol)) >= self.config.max_open_trades_per_symbol:
            return f"max open trades for {symbol} reached ({self.config.max_open_trades_per_symbol})"
        return None

    def _open(self, order: RiskAdjustedOrder, price: float, ctx: RiskContext,
              signal: Signal, btc_momentum: Optional[str] = None) -> Optional[int]:
        quantity = order.quantity_at(price)
        if quantity <= 0:
            logger.warning(f"{order.symbol}: order size rounds to zero, skipping")
            return None
        context = TradeContext(
            rsi=signal.indicators.get("rsi"),
            trend=trend_bucket(signal.labels.get("trend")),
            volatility_multiplier=ctx.volatility_multiplier,
            btc_momentum=btc_momentum,
            sentiment_score=ctx.sentiment.score if ctx.sentiment else None,
            hour_utc=ctx.now.astimezone(timezone.utc).hour,
        )
        side = LONG if order.direction == BUY else SHORT
        try:
            return self.ledger.open(
                order.symbol, side, price, quantity, order.leverage,
                stop_loss_pct=order.stop_loss_pct,
                take_profit_pct=order.take_profit_pct,
                context=context,
            )
        except InsufficientBalance as e:
            logger.warning(f"💸 {order.symbol}: {e}, skipping entry")
            return None

    def _on_closed(self, trades: List[ClosedTrade], now: datetime) -> None:
        if not trades:
            return
        for trade in trades:
            streak = self.sizer.record_result(trade.is_win)
            self.store.set_martingale_streak(streak)
            if trade.exit_reason == STOP_LOSS and not trade.is_win:
                minutes = self.config.sl_cooldown_minutes
                if minutes > 0:
                    self._cooldown_until[trade.symbol] = now + timedelta(minutes=minutes)
                    logger.info(f"🧊 {trade.symbol}: stop-loss cooldown {minutes} min")
        total = self.store.trade_stats(self.config.position_sizing.recent_window).total
        self.learner.on_trades_closed(total, len(trades))
