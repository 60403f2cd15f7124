"""
Data models for the strategy system.
Candle, Signal, StrategyConfig, and the STRATEGIES registry.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional

BUY = "buy"
SHORT = "short"
HOLD = "hold"


# ── Candle (immutable market input) ─────────────────────────────────────────

@dataclass(frozen=True)
class Candle:
    timestamp: int          # open time, epoch milliseconds
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    @classmethod
    def from_ohlcv(cls, row: List) -> "Candle":
        """Build from a ccxt-style ``[ts, o, h, l, c, v]`` row."""
        ts, o, h, l, c, v = row[:6]
        return cls(int(ts), float(o), float(h), float(l), float(c),
                   float(v) if v is not None else 0.0)


# ── Signal (output of every strategy evaluation) ────────────────────────────

@dataclass
class Signal:
    """Trading signal produced by a strategy evaluation."""
    direction: str                  # "buy", "short", "hold"
    confidence: float               # 0 – 100
    rationale: str                  # human-readable explanation
    indicators: Dict[str, float] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)   # trend / momentum / entry

    @classmethod
    def hold(cls, rationale: str, indicators: Optional[Dict[str, float]] = None,
             labels: Optional[Dict[str, str]] = None) -> "Signal":
        return cls(HOLD, 0.0, rationale, dict(indicators or {}), dict(labels or {}))

    @property
    def is_actionable(self) -> bool:
        return self.direction in (BUY, SHORT)


# ── Strategy Configuration ──────────────────────────────────────────────────

@dataclass(frozen=True)
class StrategyConfig:
    key: str
    name: str
    description: str
    style: str                          # trend, momentum, mean_reversion, confluence
    timeframes: Dict[str, int]          # timeframe → candle limit to fetch
    default_params: Dict[str, object] = field(default_factory=dict)


STRATEGIES: Dict[str, StrategyConfig] = {
    "multi_timeframe": StrategyConfig(
        key="multi_timeframe",
        name="Multi-Timeframe",
        description="15m EMA trend, 5m MACD momentum, 1m RSI entry trigger. "
                    "Strict mode needs all three aligned, relaxed mode two of three.",
        style="confluence",
        timeframes={"15m": 60, "5m": 60, "1m": 200},
        default_params={
            "trend_timeframe": "15m",
            "momentum_timeframe": "5m",
            "entry_timeframe": "1m",
            "trend_fast": 20,
            "trend_slow": 50,
            "macd_fast": 12,
            "macd_slow": 26,
            "macd_signal": 9,
            "rsi_period": 14,
            "rsi_oversold": 35,
            "rsi_overbought": 65,
            "require_all_timeframes": True,
            "min_buffer_bars": 5,
        },
    ),
    "rsi_ma_crossover": StrategyConfig(
        key="rsi_ma_crossover",
        name="RSI + MA Crossover",
        description="RSI extremes confirmed by a fast/slow EMA crossover; "
                    "RSI alone gives a weaker signal.",
        style="momentum",
        timeframes={"1m": 200},
        default_params={
            "rsi_period": 14,
            "rsi_oversold": 30,
            "rsi_overbought": 70,
            "ma_fast_period": 9,
            "ma_slow_period": 21,
        },
    ),
    "simple_rsi": StrategyConfig(
        key="simple_rsi",
        name="Simple RSI",
        description="Buy below the oversold line, short above the overbought line.",
        style="mean_reversion",
        timeframes={"1m": 200},
        default_params={"rsi_period": 14, "rsi_oversold": 30, "rsi_overbought": 70},
    ),
    "macd": StrategyConfig(
        key="macd",
        name="MACD Crossover",
        description="MACD/signal crossovers with histogram confirmation, "
                    "histogram zero-cross as a weaker signal.",
        style="momentum",
        timeframes={"1m": 200},
        default_params={
            "macd_fast": 12,
            "macd_slow": 26,
            "macd_signal": 9,
            "histogram_threshold": 0.0,
        },
    ),
    "bollinger_bands": StrategyConfig(
        key="bollinger_bands",
        name="Bollinger Bounce",
        description="Mean reversion on band touches, optionally waiting for a bounce.",
        style="mean_reversion",
        timeframes={"1m": 200},
        default_params={"bb_period": 20, "bb_std_dev": 2.0, "bounce_confirmation": True},
    ),
    "multi_indicator": StrategyConfig(
        key="multi_indicator",
        name="Multi-Indicator Confluence",
        description="RSI, MACD and Bollinger scored together; acts when the "
                    "confluence score reaches the minimum.",
        style="confluence",
        timeframes={"1m": 200},
        default_params={
            "rsi_period": 14,
            "rsi_oversold": 35,
            "rsi_overbought": 65,
            "macd_fast": 12,
            "macd_slow": 26,
            "macd_signal": 9,
            "bb_period": 20,
            "bb_std_dev": 2.0,
            "min_confluence": 2.0,
        },
    ),
}
