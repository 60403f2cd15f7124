"""
Technical Indicator Library.
Stateless computations used by all strategies.

Every series function returns a list the same length as its input,
oldest → newest, with ``None`` where the window is not yet filled or the
input itself is missing.  Nothing here raises on short or gappy data.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import List, Optional, Sequence

from perpbot.services.strategies.models import Candle

Series = List[Optional[float]]


@dataclass(frozen=True)
class MACDResult:
    macd: Series
    signal: Series
    histogram: Series


@dataclass(frozen=True)
class BollingerBands:
    upper: Series
    middle: Series
    lower: Series


class Indicators:
    """Stateless library of technical indicator computations."""

    # ── Moving averages ─────────────────────────────────────────────────

    @staticmethod
    def sma(data: Sequence[Optional[float]], period: int) -> Series:
        """Simple moving average. A window containing ``None`` is ``None``."""
        out: Series = [None] * len(data)
        if period <= 0:
            return out
        for i in range(period - 1, len(data)):
            window = data[i - period + 1:i + 1]
            if any(v is None for v in window):
                continue
            out[i] = sum(window) / period
        return out

    @staticmethod
    def ema(data: Sequence[Optional[float]], period: int) -> Series:
        """Exponential moving average seeded with the SMA of the first window.

        Leading ``None`` values are skipped, so the seed lands at
        ``first_valid + period - 1``; for a fully numeric input that is
        index ``period - 1``.  A ``None`` after the seed yields ``None`` at
        that index and the running average carries over unchanged.
        """
        out: Series = [None] * len(data)
        if period <= 0:
            return out
        start = next((i for i, v in enumerate(data) if v is not None), None)
        if start is None:
            return out
        seed_end = start + period
        if seed_end > len(data):
            return out
        seed = data[start:seed_end]
        if any(v is None for v in seed):
            return out

        k = 2.0 / (period + 1)
        prev = sum(seed) / period
        out[seed_end - 1] = prev
        for i in range(seed_end, len(data)):
            value = data[i]
            if value is None:
                continue
            prev = (value - prev) * k + prev
            out[i] = prev
        return out

    # ── Oscillators ─────────────────────────────────────────────────────

    @staticmethod
    def rsi(closes: Sequence[Optional[float]], period: int = 14) -> Series:
        """RSI from a plain trailing average of the last ``period`` changes.

        Index ``i`` averages the changes ``closes[j] - closes[j-1]`` for
        ``j`` in ``i-period+1 .. i``.  ``avg_loss == 0`` gives 100.
        """
        out: Series = [None] * len(closes)
        if period <= 0:
            return out
        for i in range(period, len(closes)):
            window = closes[i - period:i + 1]
            if any(v is None for v in window):
                continue
            gains = 0.0
            losses = 0.0
            for j in range(1, len(window)):
                change = window[j] - window[j - 1]
                if change > 0:
                    gains += change
                else:
                    losses -= change
            avg_gain = gains / period
            avg_loss = losses / period
            if avg_loss == 0:
                out[i] = 100.0
            else:
                out[i] = 100 - 100 / (1 + avg_gain / avg_loss)
        return out

    # ── MACD ────────────────────────────────────────────────────────────

    @staticmethod
    def macd(closes: Sequence[Optional[float]], fast: int = 12, slow: int = 26,
             signal: int = 9) -> MACDResult:
        ema_fast = Indicators.ema(closes, fast)
        ema_slow = Indicators.ema(closes, slow)
        line: Series = [
            f - s if f is not None and s is not None else None
            for f, s in zip(ema_fast, ema_slow)
        ]
        # EMA skips the leading gap, which realigns the signal line
        signal_line = Indicators.ema(line, signal)
        histogram: Series = [
            m - s if m is not None and s is not None else None
            for m, s in zip(line, signal_line)
        ]
        return MACDResult(macd=line, signal=signal_line, histogram=histogram)

    # ── Bollinger Bands ─────────────────────────────────────────────────

    @staticmethod
    def bollinger_bands(closes: Sequence[Optional[float]], period: int = 20,
                        std_dev: float = 2.0) -> BollingerBands:
        middle = Indicators.sma(closes, period)
        upper: Series = [None] * len(closes)
        lower: Series = [None] * len(closes)
        for i, mean in enumerate(middle):
            if mean is None:
                continue
            window = closes[i - period + 1:i + 1]
            variance = sum((v - mean) ** 2 for v in window) / period
            sigma = math.sqrt(variance)
            upper[i] = mean + std_dev * sigma
            lower[i] = mean - std_dev * sigma
        return BollingerBands(upper=upper, middle=middle, lower=lower)

    # ── ATR ─────────────────────────────────────────────────────────────

    @staticmethod
    def true_range(candles: Sequence[Candle]) -> Series:
        """True range per candle; index 0 has no previous close."""
        out: Series = [None] * len(candles)
        for i in range(1, len(candles)):
            cur, prev_close = candles[i], candles[i - 1].close
            out[i] = max(
                cur.high - cur.low,
                abs(cur.high - prev_close),
                abs(cur.low - prev_close),
            )
        return out

    @staticmethod
    def atr(candles: Sequence[Candle], period: int = 14) -> Series:
        """SMA of true range, aligned to ``candles``.

        Returns an empty list when fewer than ``period + 1`` candles exist.
        """
        if period <= 0 or len(candles) < period + 1:
            return []
        return Indicators.sma(Indicators.true_range(candles), period)

    # ── Point helpers ───────────────────────────────────────────────────

    @staticmethod
    def last(series: Sequence[Optional[float]], offset: int = 0) -> Optional[float]:
        """Value ``offset`` bars back from the newest, or ``None``."""
        idx = len(series) - 1 - offset
        if idx < 0:
            return None
        return series[idx]

    @staticmethod
    def valid(series: Sequence[Optional[float]]) -> List[float]:
        return [v for v in series if v is not None]
