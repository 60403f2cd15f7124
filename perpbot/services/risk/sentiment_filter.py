"""
Sentiment stage — contrarian confidence adjustment.

Buy into fear gets a boost, buy into greed a cut (and, under extreme
greed, a Hold if confidence ends below the floor).  Short mirrors it with
its own, asymmetric numbers.  Unavailable sentiment leaves the draft as is.
"""
from __future__ import annotations

from perpbot.config import SentimentConfig
from perpbot.services.risk.pipeline import OrderDraft, RiskContext, RiskStage
from perpbot.services.strategies.models import BUY, HOLD, SHORT


class SentimentStage(RiskStage):
    name = "sentiment"

    def __init__(self, config: SentimentConfig):
        self.config = config

    def apply(self, draft: OrderDraft, ctx: RiskContext) -> OrderDraft:
        cfg = self.config
        reading = ctx.sentiment
        if not cfg.enabled or reading is None:
            return draft

        score = reading.score
        label = f"{reading.classification} ({score})"
        confidence = draft.confidence if draft.confidence else cfg.default_confidence

        if draft.direction == BUY:
            if score < cfg.fear_threshold:
                return draft.note(f"Sentiment boost: {label}",
                                  confidence=min(100.0, confidence + cfg.buy_boost))
            if score > cfg.greed_threshold:
                confidence = max(cfg.min_confidence, confidence - cfg.buy_penalty)
                draft = draft.note(f"Sentiment caution: {label}", confidence=confidence)
                if score > cfg.extreme_greed and confidence < cfg.hold_floor:
                    return draft.note("hold", direction=HOLD).veto(
                        self.name, f"Buy signal blocked by extreme greed ({score})")
                return draft

        elif draft.direction == SHORT:
            if score > cfg.greed_threshold:
                return draft.note(f"Sentiment boost: {label}",
                                  confidence=min(100.0, confidence + cfg.short_boost))
            if score < cfg.fear_threshold:
                confidence = max(cfg.min_confidence, confidence - cfg.short_penalty)
                draft = draft.note(f"Sentiment caution: {label}", confidence=confidence)
                if score < cfg.extreme_fear and confidence < cfg.hold_floor:
                    return draft.note("hold", direction=HOLD).veto(
                        self.name, f"Short signal blocked by extreme fear ({score})")
                return draft

        return draft
