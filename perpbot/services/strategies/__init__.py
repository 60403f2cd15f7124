"""
Strategies Package — re-exports the public symbols.

    from perpbot.services.strategies import StrategyEngine, Indicators, Signal, ...
"""
from perpbot.services.strategies.models import (
    BUY,
    HOLD,
    SHORT,
    STRATEGIES,
    Candle,
    Signal,
    StrategyConfig,
)
from perpbot.services.strategies.indicators import Indicators
from perpbot.services.strategies.engine import STRATEGY_REGISTRY, StrategyEngine

__all__ = [
    "BUY",
    "SHORT",
    "HOLD",
    "Candle",
    "Signal",
    "StrategyConfig",
    "STRATEGIES",
    "STRATEGY_REGISTRY",
    "Indicators",
    "StrategyEngine",
]
