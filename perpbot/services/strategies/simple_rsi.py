"""Simple RSI threshold strategy (fallback)."""
from __future__ import annotations

from typing import Dict, List

from perpbot.services.strategies.base import BaseStrategy
from perpbot.services.strategies.indicators import Indicators
from perpbot.services.strategies.models import BUY, SHORT, Candle, Signal

FIXED_CONFIDENCE = 60.0


class SimpleRsiStrategy(BaseStrategy):
    key = "simple_rsi"

    def _evaluate(self, candles: Dict[str, List[Candle]], params: Dict) -> Signal:
        closes = self._closes(self._primary(candles))
        rsi = Indicators.last(Indicators.rsi(closes, params["rsi_period"]))
        if rsi is None:
            return Signal.hold("Insufficient data")

        indicators = {"rsi": rsi}
        if rsi < params["rsi_oversold"]:
            return Signal(BUY, FIXED_CONFIDENCE,
                          f"RSI oversold ({rsi:.2f}) < {params['rsi_oversold']}", indicators)
        if rsi > params["rsi_overbought"]:
            return Signal(SHORT, FIXED_CONFIDENCE,
                          f"RSI overbought ({rsi:.2f}) > {params['rsi_overbought']}", indicators)
        return Signal.hold(f"RSI {rsi:.2f} is neutral", indicators)
