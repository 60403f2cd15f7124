"""
Learned parameters
==================
Two optimizers that read the closed-trade history and write back into the
store, on a fixed cadence of closed trades:

  • HourOptimizer — UTC close hours with a poor win rate become blocked
  • RsiOptimizer  — RSI entry thresholds tuned from 5-point RSI bands

``ParameterLearner`` owns the cadence and is called by the trading agent
after every batch of closes.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import timezone
from typing import Dict, Optional, Sequence

from perpbot.config import HourOptimizerConfig, RsiOptimizerConfig
from perpbot.services.execution.models import LONG, SHORT, ClosedTrade
from perpbot.services.execution.store import LedgerStore

logger = logging.getLogger(__name__)

RSI_OVERSOLD_KEY = "rsi_oversold"
RSI_OVERBOUGHT_KEY = "rsi_overbought"
BAND = 5


class HourOptimizer:
    """Win rate per UTC close hour; hours under ``max_win_rate`` get blocked."""

    def __init__(self, config: HourOptimizerConfig):
        self.config = config

    @staticmethod
    def win_rate_by_hour(trades: Sequence[ClosedTrade]) -> Dict[int, Dict[str, float]]:
        stats: Dict[int, Dict[str, float]] = defaultdict(lambda: {"trades": 0, "wins": 0})
        for trade in trades:
            hour = trade.closed_at.astimezone(timezone.utc).hour
            stats[hour]["trades"] += 1
            if trade.is_win:
                stats[hour]["wins"] += 1
        for data in stats.values():
            data["win_rate"] = round(data["wins"] / data["trades"] * 100, 2)
        return dict(stats)

    def bad_hours(self, trades: Sequence[ClosedTrade]) -> Dict[int, str]:
        bad = {}
        for hour, data in sorted(self.win_rate_by_hour(trades).items()):
            if data["trades"] >= self.config.min_trades and data["win_rate"] < self.config.max_win_rate:
                bad[hour] = f"win rate {data['win_rate']:.1f}% over {int(data['trades'])} trades"
        return bad


@dataclass(frozen=True)
class RsiThresholds:
    oversold: float = 30.0
    overbought: float = 70.0


class RsiOptimizer:
    """
    Long trades are bucketed by entry RSI in 5-point bands.  Every band
    below 50 with enough trades and a win rate above ``min_win_rate``
    lets the oversold threshold rise to that band's upper bound (20–45).
    Short trades mirror it: bands from 50 up may lower the overbought
    threshold to their lower bound (55–80).
    """

    def __init__(self, config: RsiOptimizerConfig):
        self.config = config

    @staticmethod
    def bands(trades: Sequence[ClosedTrade], side: str) -> Dict[int, Dict[str, int]]:
        result: Dict[int, Dict[str, int]] = defaultdict(lambda: {"trades": 0, "wins": 0})
        for trade in trades:
            rsi = trade.context.rsi
            if trade.side != side or rsi is None or not 0 <= rsi < 100:
                continue
            band = int(rsi // BAND) * BAND
            result[band]["trades"] += 1
            if trade.is_win:
                result[band]["wins"] += 1
        return dict(result)

    def _good(self, data: Dict[str, int]) -> bool:
        return (data["trades"] >= self.config.min_trades_per_bucket
                and data["wins"] / data["trades"] > self.config.min_win_rate)

    def thresholds(self, trades: Sequence[ClosedTrade],
                   current: Optional[RsiThresholds] = None) -> RsiThresholds:
        current = current or RsiThresholds()

        oversold = 30.0
        for band, data in self.bands(trades, LONG).items():
            if band < 50 and self._good(data):
                oversold = max(oversold, float(band + BAND))
        oversold = min(max(oversold, 20.0), 45.0)

        overbought = 70.0
        for band, data in self.bands(trades, SHORT).items():
            if band >= 50 and self._good(data):
                overbought = min(overbought, float(band))
        overbought = min(max(overbought, 55.0), 80.0)

        if (oversold, overbought) != (current.oversold, current.overbought):
            logger.info(f"📐 RSI thresholds {current.oversold:.0f}/{current.overbought:.0f}"
                        f" → {oversold:.0f}/{overbought:.0f}")
        return RsiThresholds(oversold, overbought)


class ParameterLearner:
    """Runs the enabled optimizers every N closed trades and persists results."""

    def __init__(self, store: LedgerStore, hours: HourOptimizerConfig,
                 rsi: RsiOptimizerConfig):
        self.store = store
        self.hour_optimizer = HourOptimizer(hours) if hours.enabled else None
        self.rsi_optimizer = RsiOptimizer(rsi) if rsi.enabled else None

    def strategy_overrides(self) -> Dict[str, float]:
        """Learned RSI thresholds, as strategy parameter overrides."""
        overrides = {}
        oversold = self.store.get_param(RSI_OVERSOLD_KEY)
        overbought = self.store.get_param(RSI_OVERBOUGHT_KEY)
        if oversold is not None:
            overrides[RSI_OVERSOLD_KEY] = oversold
        if overbought is not None:
            overrides[RSI_OVERBOUGHT_KEY] = overbought
        return overrides

    def on_trades_closed(self, total_closed: int, closed_now: int) -> None:
        """*total_closed* counts after the batch; *closed_now* is the batch size."""
        if closed_now <= 0:
            return
        before = total_closed - closed_now

        def due(every: int) -> bool:
            return every > 0 and total_closed // every > before // every

        trades = None
        if self.hour_optimizer and due(self.hour_optimizer.config.optimize_every):
            trades = self.store.closed_trades()
            bad = self.hour_optimizer.bad_hours(trades)
            self.store.set_blocked_hours(bad)
            logger.info(f"🕐 Hour optimizer: blocked {sorted(bad) or 'none'}")

        cfg = self.rsi_optimizer.config if self.rsi_optimizer else None
        if cfg and due(cfg.optimize_every):
            trades = trades if trades is not None else self.store.closed_trades()
            if len(trades) < cfg.min_trades:
                logger.debug(f"RSI optimizer: {len(trades)}/{cfg.min_trades} trades, skipping")
                return
            current = RsiThresholds(
                self.store.get_param(RSI_OVERSOLD_KEY) or 30.0,
                self.store.get_param(RSI_OVERBOUGHT_KEY) or 70.0,
            )
            result = self.rsi_optimizer.thresholds(trades, current)
            self.store.set_param(RSI_OVERSOLD_KEY, result.oversold)
            self.store.set_param(RSI_OVERBOUGHT_KEY, result.overbought)
