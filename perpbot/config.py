"""
Engine configuration.
=====================
One frozen dataclass per pipeline stage / ledger concern, validated once
at construction.  ``load_config()`` layers three sources, later wins:

  1. dataclass defaults
  2. a JSON file named by ``PERPBOT_CONFIG`` (nested keys per section)
  3. flat environment variables (``.env`` is read via python-dotenv)
"""
from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, fields, is_dataclass, replace
from typing import Any, Dict, FrozenSet, Optional, Tuple

from dotenv import load_dotenv

MARTINGALE_MODES = ("martingale", "anti_martingale", "off")


def _require(condition: bool, message: str) -> None:
    if not condition:
        raise ValueError(message)


# ── Ledger ──────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class TrailingStopConfig:
    """Trailing stop.

    activation_percent: unrealised gain (% of entry) that arms the trail.
    trailing_percent:   distance kept between the best price and the stop.
    """
    enabled: bool = True
    activation_percent: float = 1.0
    trailing_percent: float = 0.5

    def __post_init__(self):
        _require(self.activation_percent >= 0, "trailing activation_percent must be >= 0")
        _require(0 < self.trailing_percent < 100, "trailing_percent must be in (0, 100)")


@dataclass(frozen=True)
class DrawdownConfig:
    enabled: bool = True
    max_drawdown_percent: float = 10.0
    pause_minutes: int = 30

    def __post_init__(self):
        _require(0 < self.max_drawdown_percent <= 100, "max_drawdown_percent must be in (0, 100]")
        _require(self.pause_minutes >= 0, "pause_minutes must be >= 0")


# ── Pipeline stages ─────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SentimentConfig:
    """Contrarian confidence adjustment.

    Buy: fear below ``fear_threshold`` boosts, greed above ``greed_threshold``
    cuts; above ``extreme_greed`` a buy whose confidence ends under
    ``hold_floor`` becomes Hold.  Short mirrors it with its own numbers.
    """
    enabled: bool = True
    fear_threshold: float = 30.0
    greed_threshold: float = 70.0
    extreme_fear: float = 15.0
    extreme_greed: float = 85.0
    buy_boost: float = 15.0
    buy_penalty: float = 20.0
    short_boost: float = 15.0
    short_penalty: float = 15.0
    min_confidence: float = 30.0
    hold_floor: float = 50.0
    default_confidence: float = 60.0

    def __post_init__(self):
        _require(0 <= self.extreme_fear <= self.fear_threshold
                 < self.greed_threshold <= self.extreme_greed <= 100,
                 "sentiment thresholds must satisfy extreme_fear <= fear < greed <= extreme_greed")


@dataclass(frozen=True)
class TimeFilterConfig:
    enabled: bool = True
    blocked_hours: FrozenSet[int] = frozenset()
    avoid_weekends: bool = False
    learn_from_losses: bool = True
    learned_min_trades: int = 2
    learned_avg_loss: float = 5.0

    def __post_init__(self):
        object.__setattr__(self, "blocked_hours", frozenset(int(h) for h in self.blocked_hours))
        _require(all(0 <= h <= 23 for h in self.blocked_hours), "blocked_hours must be 0..23")


@dataclass(frozen=True)
class HourOptimizerConfig:
    enabled: bool = False
    min_trades: int = 3
    max_win_rate: float = 40.0
    optimize_every: int = 10


@dataclass(frozen=True)
class BtcCorrelationConfig:
    enabled: bool = True
    strict: bool = False
    symbol: str = "BTC/USDT"
    timeframe: str = "15m"
    limit: int = 50
    min_candles: int = 25
    ema_period: int = 20
    rsi_period: int = 14
    bullish_rsi: float = 55.0
    bearish_rsi: float = 45.0
    cache_seconds: int = 300

    def __post_init__(self):
        _require(self.limit >= self.min_candles, "btc limit must cover min_candles")
        _require(self.bearish_rsi <= self.bullish_rsi, "bearish_rsi must be <= bullish_rsi")


@dataclass(frozen=True)
class LossFilterConfig:
    enabled: bool = True
    min_losses: int = 5
    bucket_min_count: int = 5
    bucket_avg_loss: float = 6.0
    rsi_min_count: int = 3
    rsi_avg_loss: float = 6.0
    side_min_count: int = 3
    side_loss_margin: float = 3.0
    hard_veto_min_trades: int = 5
    max_warnings: int = 2
    low_volatility: float = 0.8
    high_volatility: float = 1.3


@dataclass(frozen=True)
class VolatilityConfig:
    enabled: bool = True
    atr_period: int = 14
    avg_atr_period: int = 100
    min_stop_loss: float = 0.5
    max_stop_loss: float = 3.0
    min_take_profit: float = 1.0
    max_take_profit: float = 5.0

    def __post_init__(self):
        _require(self.atr_period > 0 and self.avg_atr_period > 0, "ATR periods must be > 0")
        _require(0 < self.min_stop_loss <= self.max_stop_loss, "stop-loss bounds invalid")
        _require(0 < self.min_take_profit <= self.max_take_profit, "take-profit bounds invalid")


@dataclass(frozen=True)
class LeverageAdjustmentConfig:
    enabled: bool = True
    min_leverage: int = 15
    max_leverage: int = 25
    high_volatility: float = 2.0
    low_volatility: float = 0.5

    def __post_init__(self):
        _require(1 <= self.min_leverage <= self.max_leverage, "leverage bounds invalid")
        _require(self.low_volatility < self.high_volatility, "volatility thresholds inverted")


@dataclass(frozen=True)
class PositionSizingConfig:
    enabled: bool = True
    min_trades: int = 10
    base_win_rate: float = 50.0
    win_rate_weight: float = 0.7
    streak_weight: float = 0.3
    recent_window: int = 10
    min_multiplier: float = 0.25
    max_multiplier: float = 2.0

    def __post_init__(self):
        _require(0 < self.min_multiplier <= 1 <= self.max_multiplier,
                 "sizing multipliers must bracket 1.0")


@dataclass(frozen=True)
class MartingaleConfig:
    mode: str = "anti_martingale"
    multiplier: float = 1.5
    max_multiplier: float = 3.0

    def __post_init__(self):
        _require(self.mode in MARTINGALE_MODES, f"martingale mode must be one of {MARTINGALE_MODES}")
        _require(self.multiplier >= 1, "martingale multiplier must be >= 1")
        _require(self.max_multiplier >= 1, "martingale max_multiplier must be >= 1")


@dataclass(frozen=True)
class RsiOptimizerConfig:
    enabled: bool = False
    min_trades: int = 20
    min_trades_per_bucket: int = 3
    min_win_rate: float = 0.55
    optimize_every: int = 10


@dataclass(frozen=True)
class StrategySettings:
    name: str = "multi_timeframe"
    params: Dict[str, Any] = field(default_factory=dict)


# ── Aggregate ───────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class TradingConfig:
    symbols: Tuple[str, ...] = ("SOL/USDT", "ETH/USDT", "AVAX/USDT")
    initial_balance: float = 10000.0
    trade_amount: float = 150.0         # USDT margin per entry before multipliers
    leverage: int = 20
    stop_loss_percent: float = 2.5
    take_profit_percent: float = 3.5
    max_open_trades: int = 15
    max_open_trades_per_symbol: int = 5
    sl_cooldown_minutes: int = 5
    exchange: str = "binance"
    strict_invariants: bool = True

    strategy: StrategySettings = field(default_factory=StrategySettings)
    trailing: TrailingStopConfig = field(default_factory=TrailingStopConfig)
    drawdown: DrawdownConfig = field(default_factory=DrawdownConfig)
    sentiment: SentimentConfig = field(default_factory=SentimentConfig)
    time_filter: TimeFilterConfig = field(default_factory=TimeFilterConfig)
    hour_optimizer: HourOptimizerConfig = field(default_factory=HourOptimizerConfig)
    btc_correlation: BtcCorrelationConfig = field(default_factory=BtcCorrelationConfig)
    loss_filter: LossFilterConfig = field(default_factory=LossFilterConfig)
    volatility: VolatilityConfig = field(default_factory=VolatilityConfig)
    leverage_adjustment: LeverageAdjustmentConfig = field(default_factory=LeverageAdjustmentConfig)
    position_sizing: PositionSizingConfig = field(default_factory=PositionSizingConfig)
    martingale: MartingaleConfig = field(default_factory=MartingaleConfig)
    rsi_optimizer: RsiOptimizerConfig = field(default_factory=RsiOptimizerConfig)

    def __post_init__(self):
        object.__setattr__(self, "symbols", tuple(self.symbols))
        _require(len(self.symbols) > 0, "at least one symbol is required")
        _require(self.initial_balance > 0, "initial_balance must be > 0")
        _require(self.trade_amount > 0, "trade_amount must be > 0")
        _require(self.leverage >= 1, "leverage must be >= 1")
        _require(self.stop_loss_percent > 0 and self.take_profit_percent > 0,
                 "stop-loss and take-profit percents must be > 0")
        _require(self.max_open_trades >= 1 and self.max_open_trades_per_symbol >= 1,
                 "position caps must be >= 1")


# ── Loading ─────────────────────────────────────────────────────────────────

def _flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes")


_ENV_FIELDS = {
    "TRADING_SYMBOLS": ("symbols", lambda v: tuple(s.strip() for s in v.split(",") if s.strip())),
    "INITIAL_BALANCE": ("initial_balance", float),
    "TRADE_AMOUNT": ("trade_amount", float),
    "LEVERAGE": ("leverage", int),
    "STOP_LOSS_PERCENT": ("stop_loss_percent", float),
    "TAKE_PROFIT_PERCENT": ("take_profit_percent", float),
    "MAX_OPEN_TRADES": ("max_open_trades", int),
    "EXCHANGE": ("exchange", str),
    "LEDGER_STRICT": ("strict_invariants", _flag),
}

# env key -> (section, field, cast)
_SECTION_ENV_FIELDS = {
    "STRATEGY": ("strategy", "name", str),
    "MARTINGALE_MODE": ("martingale", "mode", str),
    "DRAWDOWN_ENABLED": ("drawdown", "enabled", _flag),
    "MAX_DRAWDOWN_PERCENT": ("drawdown", "max_drawdown_percent", float),
    "DRAWDOWN_PAUSE_MINUTES": ("drawdown", "pause_minutes", int),
}


def _build(cls, data: Dict[str, Any]):
    """Instantiate dataclass ``cls`` from a nested dict, recursing into
    dataclass-typed fields."""
    kwargs = {}
    defaults = cls()
    for f in fields(cls):
        if f.name not in data:
            continue
        value = data[f.name]
        current = getattr(defaults, f.name)
        if is_dataclass(current) and isinstance(value, dict):
            value = _build(type(current), value)
        kwargs[f.name] = value
    unknown = set(data) - {f.name for f in fields(cls)}
    if unknown:
        raise ValueError(f"Unknown config keys for {cls.__name__}: {sorted(unknown)}")
    return cls(**kwargs)


def load_config(path: Optional[str] = None) -> TradingConfig:
    load_dotenv()
    path = path or os.getenv("PERPBOT_CONFIG")
    data: Dict[str, Any] = {}
    if path:
        with open(path, "r", encoding="utf-8") as fh:
            data = json.load(fh)

    config = _build(TradingConfig, data)

    overrides = {}
    for env_key, (attr, cast) in _ENV_FIELDS.items():
        raw = os.getenv(env_key)
        if raw is not None and raw != "":
            overrides[attr] = cast(raw)
    if overrides:
        config = replace(config, **overrides)

    sections: Dict[str, Dict[str, Any]] = {}
    for env_key, (section, attr, cast) in _SECTION_ENV_FIELDS.items():
        raw = os.getenv(env_key)
        if raw is not None and raw != "":
            sections.setdefault(section, {})[attr] = cast(raw)
    for section, values in sections.items():
        config = replace(config, **{section: replace(getattr(config, section), **values)})
    return config
