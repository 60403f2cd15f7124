"""
Base strategy class shared by every signal strategy.
Concrete strategies set ``key`` and implement ``_evaluate``.
"""
from __future__ import annotations

from typing import Dict, List, Optional

from perpbot.services.strategies.models import Candle, Signal, StrategyConfig, STRATEGIES


class BaseStrategy:
    """Abstract base for all trading strategies."""

    key: str = ""

    def __init__(self, params: Optional[Dict] = None):
        self.config: StrategyConfig = STRATEGIES[self.key]
        self.params: Dict = dict(self.config.default_params)
        if params:
            unknown = set(params) - set(self.params)
            if unknown:
                raise ValueError(f"Unknown params for {self.key}: {sorted(unknown)}")
            self.params.update(params)

    def timeframes(self) -> Dict[str, int]:
        """Timeframe → number of candles the strategy wants each cycle."""
        return dict(self.config.timeframes)

    def evaluate(self, candles: Dict[str, List[Candle]],
                 overrides: Optional[Dict] = None) -> Signal:
        """Evaluate with the configured params, optionally overriding some
        (learned RSI thresholds, for instance) for this call only."""
        params = dict(self.params)
        if overrides:
            params.update({k: v for k, v in overrides.items() if k in params})
        return self._evaluate(candles, params)

    def _evaluate(self, candles: Dict[str, List[Candle]], params: Dict) -> Signal:
        raise NotImplementedError

    # ── Helpers ─────────────────────────────────────────────────────────

    def _primary(self, candles: Dict[str, List[Candle]]) -> List[Candle]:
        timeframe = next(iter(self.config.timeframes))
        return candles.get(timeframe) or []

    @staticmethod
    def _closes(candles: List[Candle]) -> List[float]:
        return [c.close for c in candles]
