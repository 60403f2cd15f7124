"""Risk Package — the ordered adjustment pipeline and its stages."""
from __future__ import annotations

__all__ = [
    "RiskPipeline", "RiskStage", "RiskContext", "OrderDraft", "RiskAdjustedOrder",
    "SentimentStage", "TimeFilterStage", "BtcCorrelationStage", "ReferenceMomentum",
    "LossPatternStage", "LossAnalyzer", "LossPatternSummary",
    "VolatilityStage", "volatility_multiplier",
    "PositionSizingStage", "MartingaleStage", "MartingaleSizer",
    "build_pipeline",
]

from perpbot.config import TradingConfig
from perpbot.services.risk.pipeline import (
    OrderDraft,
    RiskAdjustedOrder,
    RiskContext,
    RiskPipeline,
    RiskStage,
)
from perpbot.services.risk.sentiment_filter import SentimentStage
from perpbot.services.risk.time_filter import TimeFilterStage
from perpbot.services.risk.btc_correlation import BtcCorrelationStage, ReferenceMomentum
from perpbot.services.risk.loss_patterns import LossAnalyzer, LossPatternSummary
from perpbot.services.risk.loss_filter import LossPatternStage
from perpbot.services.risk.volatility import VolatilityStage, volatility_multiplier
from perpbot.services.risk.position_sizer import PositionSizingStage
from perpbot.services.risk.martingale import MartingaleSizer, MartingaleStage


def build_pipeline(config: TradingConfig, reference: ReferenceMomentum,
                   sizer: MartingaleSizer) -> RiskPipeline:
    """The default stage order."""
    stages = [
        SentimentStage(config.sentiment),
        TimeFilterStage(config.time_filter),
        BtcCorrelationStage(config.btc_correlation, reference),
        LossPatternStage(config.loss_filter),
        VolatilityStage(config.volatility, config.leverage_adjustment),
        PositionSizingStage(config.position_sizing),
        MartingaleStage(sizer),
    ]
    return RiskPipeline(
        stages,
        trade_amount=config.trade_amount,
        leverage=config.leverage,
        stop_loss_pct=config.stop_loss_percent,
        take_profit_pct=config.take_profit_percent,
    )
