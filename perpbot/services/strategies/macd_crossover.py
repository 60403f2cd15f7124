"""
MACD Crossover Strategy.
MACD crossing its signal line with histogram confirmation; a histogram
zero-cross without a line cross is a weaker fixed-confidence signal.
"""
from __future__ import annotations

from typing import Dict, List

from perpbot.services.strategies.base import BaseStrategy
from perpbot.services.strategies.indicators import Indicators
from perpbot.services.strategies.models import BUY, SHORT, Candle, Signal


class MacdCrossoverStrategy(BaseStrategy):
    key = "macd"

    def _evaluate(self, candles: Dict[str, List[Candle]], params: Dict) -> Signal:
        closes = self._closes(self._primary(candles))
        result = Indicators.macd(closes, params["macd_fast"], params["macd_slow"],
                                 params["macd_signal"])
        line, signal = Indicators.last(result.macd), Indicators.last(result.signal)
        prev_line, prev_signal = Indicators.last(result.macd, 1), Indicators.last(result.signal, 1)
        hist, prev_hist = Indicators.last(result.histogram), Indicators.last(result.histogram, 1)

        if None in (line, signal, prev_line, prev_signal):
            return Signal.hold("Insufficient data for MACD")

        indicators = {"macd": line, "macd_signal": signal, "histogram": hist}
        threshold = params["histogram_threshold"]
        confidence = min(90.0, 50 + abs(hist) * 1000)

        if prev_line <= prev_signal and line > signal and hist > threshold:
            return Signal(BUY, confidence,
                          f"MACD bullish crossover ({line:.4f} > signal {signal:.4f})",
                          indicators)
        if prev_line >= prev_signal and line < signal and hist < -threshold:
            return Signal(SHORT, confidence,
                          f"MACD bearish crossover ({line:.4f} < signal {signal:.4f})",
                          indicators)

        if prev_hist is not None:
            if prev_hist < 0 < hist:
                return Signal(BUY, 55.0, f"MACD histogram turned positive ({hist:.4f})",
                              indicators)
            if prev_hist > 0 > hist:
                return Signal(SHORT, 55.0, f"MACD histogram turned negative ({hist:.4f})",
                              indicators)
        return Signal.hold(f"MACD neutral (histogram: {hist:.4f})", indicators)
