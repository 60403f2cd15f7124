"""
Position sizing stage — scale the entry by recent performance.

    wr_factor     = (win_rate − base_win_rate) / 50
    streak_factor = (recent_win_rate/100 − 0.5) × 2
    combined      = w_wr × wr_factor + w_streak × streak_factor

Positive ``combined`` maps toward ``max_multiplier``, negative toward
``min_multiplier``.  Below ``min_trades`` closed trades the multiplier is 1.
"""
from __future__ import annotations

from perpbot.config import PositionSizingConfig
from perpbot.services.execution.models import TradeStats
from perpbot.services.risk.pipeline import OrderDraft, RiskContext, RiskStage


def size_multiplier(stats: TradeStats, config: PositionSizingConfig) -> float:
    if not config.enabled or stats.total < config.min_trades:
        return 1.0

    win_rate_factor = (stats.win_rate - config.base_win_rate) / 50
    recent = stats.recent_win_rate if stats.recent_total else stats.win_rate
    streak_factor = (recent / 100 - 0.5) * 2
    combined = config.win_rate_weight * win_rate_factor + config.streak_weight * streak_factor

    if combined >= 0:
        multiplier = 1 + combined * (config.max_multiplier - 1)
    else:
        multiplier = 1 + combined * (1 - config.min_multiplier)
    multiplier = max(config.min_multiplier, min(config.max_multiplier, multiplier))
    return round(multiplier, 2)


class PositionSizingStage(RiskStage):
    name = "position_sizing"

    def __init__(self, config: PositionSizingConfig):
        self.config = config

    def apply(self, draft: OrderDraft, ctx: RiskContext) -> OrderDraft:
        multiplier = size_multiplier(ctx.stats, self.config)
        if multiplier == 1.0:
            return draft
        return draft.note(
            f"Sizing x{multiplier} (win rate {ctx.stats.win_rate:.1f}% over {ctx.stats.total})",
            margin_amount=draft.margin_amount * multiplier,
            size_multiplier=draft.size_multiplier * multiplier,
        )
