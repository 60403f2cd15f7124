"""
Historical loss-pattern stage.

Hard veto: the signal's side has at least ``hard_veto_min_trades`` trades
and every one of them lost.  Otherwise each matching losing bucket adds a
warning; ``max_warnings`` or more co-occurring warnings veto the entry.
"""
from __future__ import annotations

from typing import List

from perpbot.config import LossFilterConfig
from perpbot.services.execution.models import LONG, SHORT
from perpbot.services.risk.loss_patterns import rsi_bucket, trend_bucket, volatility_bucket
from perpbot.services.risk.pipeline import OrderDraft, RiskContext, RiskStage
from perpbot.services.strategies.models import BUY


class LossPatternStage(RiskStage):
    name = "loss_patterns"

    def __init__(self, config: LossFilterConfig):
        self.config = config

    def apply(self, draft: OrderDraft, ctx: RiskContext) -> OrderDraft:
        cfg = self.config
        if not cfg.enabled:
            return draft
        summary = ctx.loss_patterns
        side = LONG if draft.direction == BUY else SHORT
        other = SHORT if side == LONG else LONG

        record = summary.side_totals.get(side)
        if record is not None and record.trades >= cfg.hard_veto_min_trades and record.all_lost:
            return draft.veto(
                self.name,
                f"{side.upper()} lost {record.losses}/{record.trades} historical trades",
            )

        if not summary.sufficient:
            return draft

        warnings: List[str] = []

        trend = trend_bucket(draft.labels.get("trend"))
        bucket = summary.by_trend.get(trend)
        if bucket and bucket.count >= cfg.bucket_min_count and bucket.avg_loss > cfg.bucket_avg_loss:
            warnings.append(f"{trend} losses avg {bucket.avg_loss:.2f} ({bucket.count})")

        vol = volatility_bucket(ctx.volatility_multiplier, cfg.low_volatility, cfg.high_volatility)
        bucket = summary.by_volatility.get(vol)
        if bucket and bucket.count >= cfg.bucket_min_count and bucket.avg_loss > cfg.bucket_avg_loss:
            warnings.append(f"{vol} volatility losses avg {bucket.avg_loss:.2f} ({bucket.count})")

        mine, theirs = summary.by_side.get(side), summary.by_side.get(other)
        if mine and mine.count >= cfg.side_min_count:
            baseline = theirs.avg_loss if theirs else 0.0
            if mine.avg_loss > baseline + cfg.side_loss_margin:
                warnings.append(f"{side} losses avg {mine.avg_loss:.2f} vs {baseline:.2f}")

        rsi = rsi_bucket(draft.indicators.get("rsi"))
        bucket = summary.by_rsi.get(rsi)
        if bucket and bucket.count >= cfg.rsi_min_count and bucket.avg_loss > cfg.rsi_avg_loss:
            warnings.append(f"RSI {rsi} losses avg {bucket.avg_loss:.2f} ({bucket.count})")

        if len(warnings) >= cfg.max_warnings:
            return draft.veto(self.name, "High-risk pattern: " + "; ".join(warnings))
        if warnings:
            return draft.note("Loss-pattern warning: " + "; ".join(warnings))
        return draft
