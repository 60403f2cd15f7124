"""
Multi-Timeframe Strategy — primary signal generator.
====================================================
Three aligned timeframes, each answering one question:

  1. Trend    (15m) — fast vs slow EMA and the close relative to the fast EMA.
  2. Momentum  (5m) — MACD histogram sign and its change versus the prior bar.
  3. Entry     (1m) — RSI beyond the oversold / overbought thresholds.

Strict mode needs trend, momentum and entry all pointing the same way.
Relaxed mode counts satisfied conditions per side and acts on two of three
when that side has the majority.  Confidence is the average of the three
component strengths, capped at 95.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional

from perpbot.services.strategies.base import BaseStrategy
from perpbot.services.strategies.indicators import Indicators
from perpbot.services.strategies.models import BUY, SHORT, Candle, Signal

BULLISH = "bullish"
WEAK_BULLISH = "weak_bullish"
BEARISH = "bearish"
WEAK_BEARISH = "weak_bearish"
NEUTRAL = "neutral"
OVERSOLD = "oversold"
OVERBOUGHT = "overbought"

MAX_CONFIDENCE = 95.0


@dataclass(frozen=True)
class Reading:
    """One timeframe's classification and its 0–100 strength."""
    state: str
    strength: float
    value: Optional[float] = None

    @property
    def bullish(self) -> bool:
        return self.state in (BULLISH, WEAK_BULLISH)

    @property
    def bearish(self) -> bool:
        return self.state in (BEARISH, WEAK_BEARISH)


def classify_trend(closes: List[float], fast: int, slow: int) -> Reading:
    ema_fast = Indicators.last(Indicators.ema(closes, fast))
    ema_slow = Indicators.last(Indicators.ema(closes, slow))
    if ema_fast is None or ema_slow is None or ema_slow == 0:
        return Reading(NEUTRAL, 0.0)

    close = closes[-1]
    diff_pct = (ema_fast - ema_slow) / ema_slow * 100
    if ema_fast > ema_slow and close > ema_fast:
        return Reading(BULLISH, min(100.0, abs(diff_pct) * 20), diff_pct)
    if ema_fast < ema_slow and close < ema_fast:
        return Reading(BEARISH, min(100.0, abs(diff_pct) * 20), diff_pct)
    if ema_fast > ema_slow:
        return Reading(WEAK_BULLISH, min(50.0, abs(diff_pct) * 10), diff_pct)
    if ema_fast < ema_slow:
        return Reading(WEAK_BEARISH, min(50.0, abs(diff_pct) * 10), diff_pct)
    return Reading(NEUTRAL, 0.0, diff_pct)


def classify_momentum(closes: List[float], fast: int, slow: int, signal: int) -> Reading:
    histogram = Indicators.macd(closes, fast, slow, signal).histogram
    hist = Indicators.last(histogram)
    prev = Indicators.last(histogram, 1)
    if hist is None or prev is None:
        return Reading(NEUTRAL, 0.0)

    if hist > 0 and hist > prev:
        return Reading(BULLISH, min(100.0, abs(hist) * 500 + 30), hist)
    if hist > 0:
        return Reading(WEAK_BULLISH, min(50.0, abs(hist) * 300), hist)
    if hist < 0 and hist < prev:
        return Reading(BEARISH, min(100.0, abs(hist) * 500 + 30), hist)
    if hist < 0:
        return Reading(WEAK_BEARISH, min(50.0, abs(hist) * 300), hist)
    return Reading(NEUTRAL, 0.0, hist)


def classify_entry(closes: List[float], period: int, oversold: float,
                   overbought: float) -> Reading:
    rsi = Indicators.last(Indicators.rsi(closes, period))
    if rsi is None:
        return Reading(NEUTRAL, 0.0)
    if rsi < oversold:
        return Reading(OVERSOLD, min(100.0, (oversold - rsi) * 3 + 40), rsi)
    if rsi > overbought:
        return Reading(OVERBOUGHT, min(100.0, (rsi - overbought) * 3 + 40), rsi)
    return Reading(NEUTRAL, 0.0, rsi)


class MultiTimeframeStrategy(BaseStrategy):
    """15m trend → 5m momentum → 1m entry."""

    key = "multi_timeframe"

    def _evaluate(self, candles: Dict[str, List[Candle]], params: Dict) -> Signal:
        buffer = params["min_buffer_bars"]
        required = {
            params["trend_timeframe"]: params["trend_slow"] + buffer,
            params["momentum_timeframe"]: params["macd_slow"] + params["macd_signal"] + buffer,
            params["entry_timeframe"]: params["rsi_period"] + buffer,
        }
        for timeframe, need in required.items():
            have = len(candles.get(timeframe) or [])
            if have < need:
                return Signal.hold(
                    f"Insufficient data: {timeframe} has {have} candles, needs {need}"
                )

        trend = classify_trend(
            self._closes(candles[params["trend_timeframe"]]),
            params["trend_fast"], params["trend_slow"],
        )
        momentum = classify_momentum(
            self._closes(candles[params["momentum_timeframe"]]),
            params["macd_fast"], params["macd_slow"], params["macd_signal"],
        )
        entry = classify_entry(
            self._closes(candles[params["entry_timeframe"]]),
            params["rsi_period"], params["rsi_oversold"], params["rsi_overbought"],
        )

        indicators = {
            "trend_strength": trend.strength,
            "momentum_strength": momentum.strength,
            "entry_strength": entry.strength,
        }
        if trend.value is not None:
            indicators["ema_diff_pct"] = trend.value
        if momentum.value is not None:
            indicators["macd_histogram"] = momentum.value
        if entry.value is not None:
            indicators["rsi"] = entry.value
        labels = {"trend": trend.state, "momentum": momentum.state, "entry": entry.state}

        confidence = float(min(
            MAX_CONFIDENCE,
            round((trend.strength + momentum.strength + entry.strength) / 3),
        ))
        summary = (f"{params['trend_timeframe']}: {trend.state}, "
                   f"{params['momentum_timeframe']}: {momentum.state}, "
                   f"{params['entry_timeframe']}: {entry.state}")

        if params["require_all_timeframes"]:
            if trend.bullish and momentum.bullish and entry.state == OVERSOLD:
                return Signal(BUY, confidence, f"MTF BUY (all aligned) {summary}",
                              indicators, labels)
            if trend.bearish and momentum.bearish and entry.state == OVERBOUGHT:
                return Signal(SHORT, confidence, f"MTF SHORT (all aligned) {summary}",
                              indicators, labels)
            return Signal.hold(f"MTF: No alignment ({summary})", indicators, labels)

        buy_score = sum([trend.bullish, momentum.bullish, entry.state == OVERSOLD])
        short_score = sum([trend.bearish, momentum.bearish, entry.state == OVERBOUGHT])
        indicators["buy_score"] = float(buy_score)
        indicators["short_score"] = float(short_score)

        if buy_score >= 2 and buy_score > short_score:
            return Signal(BUY, confidence, f"MTF BUY ({buy_score}/3) {summary}",
                          indicators, labels)
        if short_score >= 2 and short_score > buy_score:
            return Signal(SHORT, confidence, f"MTF SHORT ({short_score}/3) {summary}",
                          indicators, labels)
        return Signal.hold(
            f"MTF: No majority (buy {buy_score}, short {short_score}; {summary})",
            indicators, labels,
        )
