"""
Multi-Indicator Confluence Strategy.
RSI, MACD and Bollinger each add to a buy or short score; the side that
reaches ``min_confluence`` and outscores the other wins.
"""
from __future__ import annotations

from typing import Dict, List

from perpbot.services.strategies.base import BaseStrategy
from perpbot.services.strategies.indicators import Indicators
from perpbot.services.strategies.models import BUY, SHORT, Candle, Signal


class MultiIndicatorStrategy(BaseStrategy):
    key = "multi_indicator"

    def _evaluate(self, candles: Dict[str, List[Candle]], params: Dict) -> Signal:
        closes = self._closes(self._primary(candles))
        rsi = Indicators.last(Indicators.rsi(closes, params["rsi_period"]))
        macd = Indicators.macd(closes, params["macd_fast"], params["macd_slow"],
                               params["macd_signal"])
        bands = Indicators.bollinger_bands(closes, params["bb_period"], params["bb_std_dev"])

        line, signal, hist = (Indicators.last(macd.macd), Indicators.last(macd.signal),
                              Indicators.last(macd.histogram))
        prev_line, prev_signal, prev_hist = (Indicators.last(macd.macd, 1),
                                             Indicators.last(macd.signal, 1),
                                             Indicators.last(macd.histogram, 1))
        upper, lower = Indicators.last(bands.upper), Indicators.last(bands.lower)

        if None in (rsi, line, signal, hist, upper, lower) or upper == lower:
            return Signal.hold("Insufficient data for multi-indicator analysis")

        close = closes[-1]
        buy_score = 0.0
        short_score = 0.0
        reasons: List[str] = []

        # RSI
        if rsi < params["rsi_oversold"]:
            buy_score += 1
            reasons.append(f"RSI oversold ({rsi:.1f})")
        elif rsi > params["rsi_overbought"]:
            short_score += 1
            reasons.append(f"RSI overbought ({rsi:.1f})")

        # MACD
        have_prev = prev_line is not None and prev_signal is not None
        if have_prev and prev_line <= prev_signal and line > signal:
            buy_score += 1.5
            reasons.append("MACD bullish crossover")
        elif hist > 0 and (prev_hist is None or hist > prev_hist):
            buy_score += 0.5
            reasons.append("MACD bullish momentum")
        if have_prev and prev_line >= prev_signal and line < signal:
            short_score += 1.5
            reasons.append("MACD bearish crossover")
        elif hist < 0 and (prev_hist is None or hist < prev_hist):
            short_score += 0.5
            reasons.append("MACD bearish momentum")

        # Bollinger
        position = (close - lower) / (upper - lower)
        if close <= lower:
            buy_score += 1
            reasons.append("Price at lower BB")
        elif position < 0.2:
            buy_score += 0.5
            reasons.append(f"Price near lower BB ({position * 100:.0f}%)")
        if close >= upper:
            short_score += 1
            reasons.append("Price at upper BB")
        elif position > 0.8:
            short_score += 0.5
            reasons.append(f"Price near upper BB ({position * 100:.0f}%)")

        indicators = {
            "rsi": rsi,
            "macd": line,
            "macd_signal": signal,
            "histogram": hist,
            "bb_upper": upper,
            "bb_lower": lower,
            "price_position": position,
            "buy_score": buy_score,
            "short_score": short_score,
        }
        minimum = params["min_confluence"]
        if buy_score >= minimum and buy_score > short_score:
            return Signal(BUY, min(95.0, 50 + buy_score * 15),
                          f"Multi-indicator BUY (score: {buy_score:.1f}): {', '.join(reasons)}",
                          indicators)
        if short_score >= minimum and short_score > buy_score:
            return Signal(SHORT, min(95.0, 50 + short_score * 15),
                          f"Multi-indicator SHORT (score: {short_score:.1f}): {', '.join(reasons)}",
                          indicators)
        return Signal.hold(
            f"No confluence (buy: {buy_score:.1f}, short: {short_score:.1f})", indicators
        )
