"""
Risk / adjustment pipeline.
===========================
An ordered chain of stages.  Each stage takes the current ``OrderDraft``
and the cycle's ``RiskContext`` and returns a new draft, vetoed or
transformed.  The first veto ends the run; later stages are never called.

Default order:

  1. sentiment         — contrarian confidence adjustment / Hold downgrade
  2. time filter       — blocked UTC hours, weekends
  3. BTC correlation   — reference-asset momentum must not oppose
  4. loss patterns     — historical losing conditions
  5. volatility        — ATR-scaled SL/TP and leverage
  6. position sizing   — win-rate / streak multiplier
  7. martingale        — consecutive-result overlay

Vetoes are data: the resulting ``RiskAdjustedOrder`` carries
``approved=False`` and a human-readable ``veto_reason``.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import ROUND_DOWN, Decimal
from typing import Dict, FrozenSet, List, Optional, Sequence, Tuple

from perpbot.services.execution.models import MONEY, TradeStats, to_decimal
from perpbot.services.risk.loss_patterns import LossPatternSummary
from perpbot.services.sentiment import SentimentReading
from perpbot.services.strategies.models import HOLD, Candle, Signal

logger = logging.getLogger(__name__)


# ── Data passed through the stages ──────────────────────────────────────────

@dataclass(frozen=True)
class RiskContext:
    """Everything the stages may read for one symbol in one cycle."""
    symbol: str
    now: datetime                                   # timezone-aware UTC
    price: float
    candles: Sequence[Candle] = ()                  # entry timeframe, for ATR
    sentiment: Optional[SentimentReading] = None    # None = unavailable
    loss_patterns: LossPatternSummary = field(default_factory=LossPatternSummary)
    stats: TradeStats = field(default_factory=TradeStats)
    learned_blocked_hours: FrozenSet[int] = frozenset()
    volatility_multiplier: Optional[float] = None


@dataclass(frozen=True)
class OrderDraft:
    symbol: str
    direction: str
    confidence: float
    rationale: str
    stop_loss_pct: float
    take_profit_pct: float
    leverage: int
    margin_amount: float                            # USDT committed, before leverage
    size_multiplier: float = 1.0
    indicators: Dict[str, float] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)
    notes: Tuple[str, ...] = ()
    veto_reason: Optional[str] = None
    vetoed_by: Optional[str] = None

    @property
    def vetoed(self) -> bool:
        return self.veto_reason is not None

    def veto(self, stage: str, reason: str) -> "OrderDraft":
        return replace(self, veto_reason=reason, vetoed_by=stage)

    def note(self, message: str, **changes) -> "OrderDraft":
        return replace(self, notes=self.notes + (message,), **changes)


@dataclass(frozen=True)
class RiskAdjustedOrder:
    symbol: str
    direction: str
    approved: bool
    veto_reason: Optional[str]
    stop_loss_pct: float
    take_profit_pct: float
    leverage: int
    size_multiplier: float
    margin_amount: float
    notional_amount: float                          # margin × leverage
    confidence: float
    rationale: str
    vetoed_by: Optional[str] = None
    stages_run: Tuple[str, ...] = ()
    notes: Tuple[str, ...] = ()

    def quantity_at(self, price: float) -> Decimal:
        """Base-asset quantity for the notional at *price* (rounded down)."""
        return (to_decimal(self.notional_amount) / to_decimal(price)).quantize(
            MONEY, rounding=ROUND_DOWN)


# ── Stage interface ─────────────────────────────────────────────────────────

class RiskStage(ABC):
    """One pipeline step; must not mutate shared state."""

    name: str = ""

    @abstractmethod
    def apply(self, draft: OrderDraft, ctx: RiskContext) -> OrderDraft: ...


class RiskPipeline:
    """Threads an OrderDraft through the stages, stopping at the first veto."""

    def __init__(self, stages: Sequence[RiskStage], trade_amount: float,
                 leverage: int, stop_loss_pct: float, take_profit_pct: float):
        self.stages: List[RiskStage] = list(stages)
        self.trade_amount = trade_amount
        self.leverage = leverage
        self.stop_loss_pct = stop_loss_pct
        self.take_profit_pct = take_profit_pct

    def _draft(self, signal: Signal, symbol: str) -> OrderDraft:
        return OrderDraft(
            symbol=symbol,
            direction=signal.direction,
            confidence=signal.confidence,
            rationale=signal.rationale,
            stop_loss_pct=self.stop_loss_pct,
            take_profit_pct=self.take_profit_pct,
            leverage=self.leverage,
            margin_amount=self.trade_amount,
            indicators=dict(signal.indicators),
            labels=dict(signal.labels),
        )

    def run(self, signal: Signal, ctx: RiskContext) -> RiskAdjustedOrder:
        draft = self._draft(signal, ctx.symbol)
        ran: List[str] = []

        if not signal.is_actionable:
            return self._finish(draft.veto("signal", signal.rationale or "hold"), ran)

        for stage in self.stages:
            draft = stage.apply(draft, ctx)
            ran.append(stage.name)
            if not draft.vetoed and draft.direction == HOLD:
                draft = draft.veto(stage.name, f"downgraded to hold by {stage.name}")
            if draft.vetoed:
                logger.info(f"🚫 {ctx.symbol} {signal.direction.upper()} vetoed by "
                            f"{stage.name}: {draft.veto_reason}")
                break
            logger.debug(f"{ctx.symbol} passed {stage.name}")

        return self._finish(draft, ran)

    @staticmethod
    def _finish(draft: OrderDraft, ran: List[str]) -> RiskAdjustedOrder:
        return RiskAdjustedOrder(
            symbol=draft.symbol,
            direction=draft.direction,
            approved=not draft.vetoed,
            veto_reason=draft.veto_reason,
            stop_loss_pct=draft.stop_loss_pct,
            take_profit_pct=draft.take_profit_pct,
            leverage=draft.leverage,
            size_multiplier=round(draft.size_multiplier, 4),
            margin_amount=draft.margin_amount,
            notional_amount=draft.margin_amount * draft.leverage,
            confidence=draft.confidence,
            rationale=draft.rationale,
            vetoed_by=draft.vetoed_by,
            stages_run=tuple(ran),
            notes=draft.notes,
        )
