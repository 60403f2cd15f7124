"""
Volatility stage — ATR-scaled stop-loss, take-profit and leverage.

    multiplier = current ATR / mean of the last ``avg_atr_period`` ATRs

SL% and TP% are the base values times the multiplier, clamped and rounded
to two decimals.  Leverage is halved at or above ``high_volatility`` and
raised 50% at or below ``low_volatility``, then clamped.
"""
from __future__ import annotations

from typing import Optional, Sequence

from perpbot.config import LeverageAdjustmentConfig, VolatilityConfig
from perpbot.services.risk.pipeline import OrderDraft, RiskContext, RiskStage
from perpbot.services.strategies.indicators import Indicators
from perpbot.services.strategies.models import Candle


def volatility_multiplier(candles: Sequence[Candle], atr_period: int = 14,
                          avg_atr_period: int = 100) -> Optional[float]:
    """None when there are not enough candles for a single ATR value."""
    values = Indicators.valid(Indicators.atr(candles, atr_period))
    if not values:
        return None
    window = values[-avg_atr_period:]
    average = sum(window) / len(window)
    if average == 0:
        return 1.0
    return values[-1] / average


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


class VolatilityStage(RiskStage):
    name = "volatility"

    def __init__(self, config: VolatilityConfig, leverage: LeverageAdjustmentConfig):
        self.config = config
        self.leverage_config = leverage

    def adjust_leverage(self, base: int, multiplier: float) -> int:
        cfg = self.leverage_config
        adjusted = float(base)
        if multiplier >= cfg.high_volatility:
            adjusted = base / 2
        elif multiplier <= cfg.low_volatility:
            adjusted = base * 1.5
        return int(round(_clamp(adjusted, cfg.min_leverage, cfg.max_leverage)))

    def apply(self, draft: OrderDraft, ctx: RiskContext) -> OrderDraft:
        cfg = self.config
        if not cfg.enabled:
            return draft

        multiplier = ctx.volatility_multiplier
        if multiplier is None:
            multiplier = volatility_multiplier(ctx.candles, cfg.atr_period, cfg.avg_atr_period)
        if multiplier is None:
            return draft.note("Volatility unknown, base SL/TP kept")

        stop_loss = round(_clamp(draft.stop_loss_pct * multiplier,
                                 cfg.min_stop_loss, cfg.max_stop_loss), 2)
        take_profit = round(_clamp(draft.take_profit_pct * multiplier,
                                   cfg.min_take_profit, cfg.max_take_profit), 2)
        leverage = draft.leverage
        if self.leverage_config.enabled:
            leverage = self.adjust_leverage(draft.leverage, multiplier)

        return draft.note(
            f"Volatility x{multiplier:.2f}: SL {stop_loss}% TP {take_profit}% {leverage}x",
            stop_loss_pct=stop_loss,
            take_profit_pct=take_profit,
            leverage=leverage,
        )
