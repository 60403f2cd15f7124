"""
Strategy Engine — registry + guarded evaluation.

The strategy is chosen once, at startup, from configuration; every cycle
then calls the same instance.  Exceptions raised inside a strategy become
a Hold signal so a bad candle never takes the cycle down.
"""
from __future__ import annotations

import logging
from typing import Dict, List, Optional, Type

from perpbot.services.strategies.base import BaseStrategy
from perpbot.services.strategies.bollinger_bounce import BollingerBounceStrategy
from perpbot.services.strategies.macd_crossover import MacdCrossoverStrategy
from perpbot.services.strategies.models import Candle, Signal
from perpbot.services.strategies.multi_indicator import MultiIndicatorStrategy
from perpbot.services.strategies.multi_timeframe import MultiTimeframeStrategy
from perpbot.services.strategies.rsi_ma_crossover import RsiMaCrossoverStrategy
from perpbot.services.strategies.simple_rsi import SimpleRsiStrategy

logger = logging.getLogger(__name__)


# ── Registry ────────────────────────────────────────────────────────────────

STRATEGY_REGISTRY: Dict[str, Type[BaseStrategy]] = {
    cls.key: cls
    for cls in (
        MultiTimeframeStrategy,
        RsiMaCrossoverStrategy,
        SimpleRsiStrategy,
        MacdCrossoverStrategy,
        BollingerBounceStrategy,
        MultiIndicatorStrategy,
    )
}


class StrategyEngine:
    """Wraps the configured strategy instance."""

    def __init__(self, strategy: BaseStrategy):
        self.strategy = strategy

    @classmethod
    def create(cls, key: str, params: Optional[Dict] = None) -> "StrategyEngine":
        """Instantiate a strategy by its registry key.

        Raises:
            ValueError: if *key* is not registered.
        """
        strategy_cls = STRATEGY_REGISTRY.get(key)
        if strategy_cls is None:
            raise ValueError(
                f"Unknown strategy '{key}'. "
                f"Available: {sorted(STRATEGY_REGISTRY.keys())}"
            )
        return cls(strategy_cls(params))

    @property
    def key(self) -> str:
        return self.strategy.key

    def timeframes(self) -> Dict[str, int]:
        return self.strategy.timeframes()

    def evaluate(self, candles: Dict[str, List[Candle]],
                 overrides: Optional[Dict] = None) -> Signal:
        try:
            return self.strategy.evaluate(candles, overrides)
        except Exception as e:
            logger.error(f"Strategy {self.key} error: {e}")
            return Signal.hold(f"Strategy error: {e}")
