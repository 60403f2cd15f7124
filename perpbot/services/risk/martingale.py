"""
Martingale / anti-martingale overlay.

The streak counts consecutive losses (martingale) or wins
(anti-martingale) and resets on the opposite result.  Size is multiplied
by ``min(multiplier ** streak, max_multiplier)``.  The sizer is the only
owner of the streak; the pipeline stage reads it and never changes it.
"""
from __future__ import annotations

import logging

from perpbot.config import MartingaleConfig
from perpbot.services.risk.pipeline import OrderDraft, RiskContext, RiskStage

logger = logging.getLogger(__name__)

MARTINGALE = "martingale"
ANTI_MARTINGALE = "anti_martingale"
OFF = "off"


class MartingaleSizer:
    def __init__(self, config: MartingaleConfig, streak: int = 0):
        self.config = config
        self._streak = max(0, int(streak))

    @property
    def mode(self) -> str:
        return self.config.mode

    @property
    def streak(self) -> int:
        return self._streak

    def record_result(self, win: bool) -> int:
        """Advance the streak for one closed trade and return it."""
        if self.mode == MARTINGALE:
            self._streak = 0 if win else self._streak + 1
        elif self.mode == ANTI_MARTINGALE:
            self._streak = self._streak + 1 if win else 0
        else:
            self._streak = 0
        logger.debug(f"Martingale ({self.mode}) streak → {self._streak}")
        return self._streak

    def multiplier(self) -> float:
        if self.mode == OFF or self._streak == 0:
            return 1.0
        return min(self.config.multiplier ** self._streak, self.config.max_multiplier)


class MartingaleStage(RiskStage):
    name = "martingale"

    def __init__(self, sizer: MartingaleSizer):
        self.sizer = sizer

    def apply(self, draft: OrderDraft, ctx: RiskContext) -> OrderDraft:
        multiplier = self.sizer.multiplier()
        if multiplier == 1.0:
            return draft
        return draft.note(
            f"{self.sizer.mode} streak {self.sizer.streak}: x{multiplier:.2f}",
            margin_amount=draft.margin_amount * multiplier,
            size_multiplier=draft.size_multiplier * multiplier,
        )
