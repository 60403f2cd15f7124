"""
Time-of-day / weekend stage.

Blocked hours for a cycle are the union of:
  • the static configuration,
  • hours stored by the hour optimizer (low win rate),
  • hours whose average loss exceeds a threshold over a minimum sample.
"""
from __future__ import annotations

import logging
from datetime import timezone
from typing import FrozenSet

from perpbot.config import TimeFilterConfig
from perpbot.services.risk.pipeline import OrderDraft, RiskContext, RiskStage

logger = logging.getLogger(__name__)

WEEKEND = (5, 6)  # Saturday, Sunday


class TimeFilterStage(RiskStage):
    name = "time_filter"

    def __init__(self, config: TimeFilterConfig):
        self.config = config

    def blocked_hours(self, ctx: RiskContext) -> FrozenSet[int]:
        hours = set(self.config.blocked_hours) | set(ctx.learned_blocked_hours)
        if self.config.learn_from_losses:
            hours |= set(ctx.loss_patterns.dangerous_hours(
                self.config.learned_min_trades, self.config.learned_avg_loss))
        return frozenset(hours)

    def apply(self, draft: OrderDraft, ctx: RiskContext) -> OrderDraft:
        if not self.config.enabled:
            return draft
        now = ctx.now.astimezone(timezone.utc)
        if now.hour in self.blocked_hours(ctx):
            return draft.veto(self.name, f"Hour {now.hour:02d}:00 UTC is blocked")
        if self.config.avoid_weekends and now.weekday() in WEEKEND:
            return draft.veto(self.name, f"Weekend trading disabled ({now:%A})")
        return draft
