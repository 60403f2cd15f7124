"""
Cross-asset correlation stage.

The reference asset (BTC/USDT by default) is classified from its own EMA
and RSI on a fixed cadence:

    bullish  price > EMA and RSI > bullish_rsi
    bearish  price < EMA and RSI < bearish_rsi
    neutral  otherwise, or whenever the data is unavailable

Non-strict mode vetoes a buy against a bearish reference and a short
against a bullish one; strict mode needs exact agreement.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from perpbot.config import BtcCorrelationConfig
from perpbot.services.results import FetchError
from perpbot.services.risk.pipeline import OrderDraft, RiskContext, RiskStage
from perpbot.services.strategies.indicators import Indicators
from perpbot.services.strategies.models import BUY, SHORT, Candle

logger = logging.getLogger(__name__)

BULLISH = "bullish"
BEARISH = "bearish"
NEUTRAL = "neutral"


def classify_momentum(candles: List[Candle], config: BtcCorrelationConfig) -> str:
    if len(candles) < config.min_candles:
        return NEUTRAL
    closes = [c.close for c in candles]
    ema = Indicators.last(Indicators.ema(closes, config.ema_period))
    rsi = Indicators.last(Indicators.rsi(closes, config.rsi_period))
    if ema is None or rsi is None:
        return NEUTRAL
    price = closes[-1]
    if price > ema and rsi > config.bullish_rsi:
        return BULLISH
    if price < ema and rsi < config.bearish_rsi:
        return BEARISH
    return NEUTRAL


class ReferenceMomentum:
    """Cached momentum of the reference asset."""

    def __init__(self, market, config: BtcCorrelationConfig):
        self._market = market
        self.config = config
        self._value: Optional[str] = None
        self._fetched_at: Optional[datetime] = None
        self.last_error: Optional[FetchError] = None

    def momentum(self, now: datetime) -> str:
        if (self._value is not None and self._fetched_at is not None
                and now - self._fetched_at < timedelta(seconds=self.config.cache_seconds)):
            return self._value

        cfg = self.config
        result = self._market.fetch_candles(cfg.symbol, cfg.timeframe, cfg.limit)
        if result.success:
            self.last_error = None
            value = classify_momentum(result.data, cfg)
        else:
            self.last_error = result.error
            logger.warning(f"{cfg.symbol} momentum unavailable ({result.error}), treating as neutral")
            value = NEUTRAL

        self._value = value
        self._fetched_at = now
        return value


class BtcCorrelationStage(RiskStage):
    name = "btc_correlation"

    def __init__(self, config: BtcCorrelationConfig, reference: ReferenceMomentum):
        self.config = config
        self.reference = reference

    def apply(self, draft: OrderDraft, ctx: RiskContext) -> OrderDraft:
        if not self.config.enabled:
            return draft
        momentum = self.reference.momentum(ctx.now)
        ref = self.config.symbol

        if self.config.strict:
            wanted = BULLISH if draft.direction == BUY else BEARISH
            if momentum != wanted:
                return draft.veto(self.name, f"{ref} is {momentum}, strict mode needs {wanted}")
            return draft.note(f"{ref} {momentum} agrees")

        if draft.direction == BUY and momentum == BEARISH:
            return draft.veto(self.name, f"{ref} is bearish, blocking buy")
        if draft.direction == SHORT and momentum == BULLISH:
            return draft.veto(self.name, f"{ref} is bullish, blocking short")
        return draft.note(f"{ref} {momentum}")
