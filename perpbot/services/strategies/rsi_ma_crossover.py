"""
RSI + MA Crossover Strategy.
RSI extreme plus a fresh fast/slow EMA cross is the strong signal;
an RSI extreme on its own is a weaker one.
"""
from __future__ import annotations

from typing import Dict, List

from perpbot.services.strategies.base import BaseStrategy
from perpbot.services.strategies.indicators import Indicators
from perpbot.services.strategies.models import BUY, SHORT, Candle, Signal


class RsiMaCrossoverStrategy(BaseStrategy):
    key = "rsi_ma_crossover"

    def _evaluate(self, candles: Dict[str, List[Candle]], params: Dict) -> Signal:
        closes = self._closes(self._primary(candles))
        oversold = params["rsi_oversold"]
        overbought = params["rsi_overbought"]

        rsi = Indicators.last(Indicators.rsi(closes, params["rsi_period"]))
        fast = Indicators.ema(closes, params["ma_fast_period"])
        slow = Indicators.ema(closes, params["ma_slow_period"])
        fast_now, slow_now = Indicators.last(fast), Indicators.last(slow)
        fast_prev, slow_prev = Indicators.last(fast, 1), Indicators.last(slow, 1)

        if None in (rsi, fast_now, slow_now, fast_prev, slow_prev):
            return Signal.hold("Insufficient data")

        indicators = {"rsi": rsi, "ma_fast": fast_now, "ma_slow": slow_now}
        cross_up = fast_prev <= slow_prev and fast_now > slow_now
        cross_down = fast_prev >= slow_prev and fast_now < slow_now

        if rsi < oversold and cross_up:
            return Signal(BUY, min(100.0, (oversold - rsi) * 3 + 50),
                          f"RSI oversold ({rsi:.2f}) + MA bullish crossover", indicators)
        if rsi > overbought and cross_down:
            return Signal(SHORT, min(100.0, (rsi - overbought) * 3 + 50),
                          f"RSI overbought ({rsi:.2f}) + MA bearish crossover", indicators)
        if rsi < oversold:
            return Signal(BUY, min(80.0, (oversold - rsi) * 2 + 30),
                          f"RSI oversold ({rsi:.2f})", indicators)
        if rsi > overbought:
            return Signal(SHORT, min(80.0, (rsi - overbought) * 2 + 30),
                          f"RSI overbought ({rsi:.2f})", indicators)
        return Signal.hold(f"RSI neutral ({rsi:.2f}), waiting for signal", indicators)
