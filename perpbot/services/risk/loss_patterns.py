"""
Loss pattern analysis.
======================
Aggregates closed trades into a read-only ``LossPatternSummary``:
losing trades bucketed by trend, volatility, side, RSI range, entry hour
and symbol (count + total loss), plus per-side trade/loss totals.
Recomputed by the trading agent whenever the trade history grows.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence

from perpbot.services.execution.models import ClosedTrade

logger = logging.getLogger(__name__)

UPTREND = "uptrend"
DOWNTREND = "downtrend"
SIDEWAYS = "sideways"


# ── Bucketing (shared by the analyzer and the filter stage) ─────────────────

def trend_bucket(label: Optional[str]) -> str:
    if label in ("bullish", "weak_bullish"):
        return UPTREND
    if label in ("bearish", "weak_bearish"):
        return DOWNTREND
    return SIDEWAYS


def rsi_bucket(rsi: Optional[float]) -> str:
    if rsi is None:
        return "unknown"
    if rsi < 30:
        return "oversold"
    if rsi > 70:
        return "overbought"
    return "normal"


def volatility_bucket(multiplier: Optional[float], low: float = 0.8, high: float = 1.3) -> str:
    if multiplier is None:
        return "unknown"
    if multiplier < low:
        return "low"
    if multiplier > high:
        return "high"
    return "normal"


# ── Summary ─────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class LossBucket:
    count: int = 0
    total_loss: float = 0.0         # positive USDT

    @property
    def avg_loss(self) -> float:
        return self.total_loss / self.count if self.count else 0.0


@dataclass(frozen=True)
class SideRecord:
    trades: int = 0
    losses: int = 0

    @property
    def all_lost(self) -> bool:
        return self.trades > 0 and self.losses == self.trades


@dataclass(frozen=True)
class LossPatternSummary:
    total_losses: int = 0
    sufficient: bool = False        # enough losses for the soft warnings
    by_trend: Dict[str, LossBucket] = field(default_factory=dict)
    by_volatility: Dict[str, LossBucket] = field(default_factory=dict)
    by_side: Dict[str, LossBucket] = field(default_factory=dict)
    by_rsi: Dict[str, LossBucket] = field(default_factory=dict)
    by_hour: Dict[int, LossBucket] = field(default_factory=dict)
    by_symbol: Dict[str, LossBucket] = field(default_factory=dict)
    side_totals: Dict[str, SideRecord] = field(default_factory=dict)

    def dangerous_hours(self, min_count: int, avg_loss: float) -> Dict[int, LossBucket]:
        return {h: b for h, b in self.by_hour.items()
                if b.count >= min_count and b.avg_loss > avg_loss}


class LossAnalyzer:
    """Builds a LossPatternSummary from closed trades."""

    def __init__(self, min_losses: int = 5, low_volatility: float = 0.8,
                 high_volatility: float = 1.3):
        self.min_losses = min_losses
        self.low_volatility = low_volatility
        self.high_volatility = high_volatility

    def analyze(self, trades: Sequence[ClosedTrade]) -> LossPatternSummary:
        sides: Dict[str, list] = defaultdict(lambda: [0, 0])
        buckets: Dict[str, Dict] = {name: defaultdict(lambda: [0, 0.0]) for name in
                                    ("trend", "volatility", "side", "rsi", "hour", "symbol")}
        losses = 0

        for trade in trades:
            sides[trade.side][0] += 1
            if trade.is_win:
                continue
            sides[trade.side][1] += 1
            losses += 1

            ctx = trade.context
            amount = float(-trade.pnl)
            hour = ctx.hour_utc if ctx.hour_utc is not None else trade.opened_at.hour
            keys = {
                # context.trend already holds the uptrend/downtrend/sideways bucket
                "trend": ctx.trend or SIDEWAYS,
                "volatility": volatility_bucket(ctx.volatility_multiplier,
                                                self.low_volatility, self.high_volatility),
                "side": trade.side,
                "rsi": rsi_bucket(ctx.rsi),
                "hour": hour,
                "symbol": trade.symbol,
            }
            for name, key in keys.items():
                bucket = buckets[name][key]
                bucket[0] += 1
                bucket[1] += amount

        def freeze(name: str) -> Dict:
            return {k: LossBucket(c, round(t, 8)) for k, (c, t) in buckets[name].items()}

        summary = LossPatternSummary(
            total_losses=losses,
            sufficient=losses >= self.min_losses,
            by_trend=freeze("trend"),
            by_volatility=freeze("volatility"),
            by_side=freeze("side"),
            by_rsi=freeze("rsi"),
            by_hour=freeze("hour"),
            by_symbol=freeze("symbol"),
            side_totals={s: SideRecord(t, l) for s, (t, l) in sides.items()},
        )
        logger.debug(f"Loss patterns: {losses} losses over {len(trades)} trades "
                     f"(sufficient={summary.sufficient})")
        return summary
