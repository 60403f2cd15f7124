"""
Bollinger Bounce Strategy — mean reversion on band touches.
With ``bounce_confirmation`` the previous close must have touched the band
and the current close be back inside it; without it, proximity (0.1%) is
enough.
"""
from __future__ import annotations

from typing import Dict, List

from perpbot.services.strategies.base import BaseStrategy
from perpbot.services.strategies.indicators import Indicators
from perpbot.services.strategies.models import BUY, SHORT, Candle, Signal


class BollingerBounceStrategy(BaseStrategy):
    key = "bollinger_bands"

    def _evaluate(self, candles: Dict[str, List[Candle]], params: Dict) -> Signal:
        closes = self._closes(self._primary(candles))
        bands = Indicators.bollinger_bands(closes, params["bb_period"], params["bb_std_dev"])
        upper, middle, lower = (Indicators.last(bands.upper), Indicators.last(bands.middle),
                                Indicators.last(bands.lower))
        prev_upper, prev_lower = Indicators.last(bands.upper, 1), Indicators.last(bands.lower, 1)

        if None in (upper, lower, prev_upper, prev_lower) or upper == lower:
            return Signal.hold("Insufficient data for Bollinger Bands")

        close, prev_close = closes[-1], closes[-2]
        position = (close - lower) / (upper - lower)
        indicators = {
            "bb_upper": upper,
            "bb_middle": middle,
            "bb_lower": lower,
            "band_width": (upper - lower) / middle if middle else 0.0,
            "price_position": position,
        }

        if params["bounce_confirmation"]:
            if prev_close <= prev_lower and close > lower:
                return Signal(BUY, min(85.0, 60 + (1 - position) * 50),
                              f"Price bounced from lower BB ({lower:.2f})", indicators)
            if prev_close >= prev_upper and close < upper:
                return Signal(SHORT, min(85.0, 60 + position * 50),
                              f"Price bounced from upper BB ({upper:.2f})", indicators)
        else:
            if close <= lower * 1.001:
                return Signal(BUY, min(75.0, 50 + (1 - position) * 40),
                              f"Price at lower BB ({lower:.2f})", indicators)
            if close >= upper * 0.999:
                return Signal(SHORT, min(75.0, 50 + position * 40),
                              f"Price at upper BB ({upper:.2f})", indicators)

        return Signal.hold(f"Price within BB ({position * 100:.1f}% from lower)", indicators)
