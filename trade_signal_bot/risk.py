from __future__ import annotations

from typing import List, Optional

from .config import StrategyConfig
from .indicators import clamp
from .models import Direction, LiquidationSnapshot, MarketContext, RiskAdjustment


def is_vetoed(direction: Direction, liq: LiquidationSnapshot, thr_high: float) -> bool:
    """Heavy liquidation flow on the same side as the exposure."""
    if liq.intensity_score < thr_high:
        return False
    if direction == Direction.LONG and liq.direction_bias == 1:
        return True
    if direction == Direction.SHORT and liq.direction_bias == -1:
        return True
    return False


def funding_warning(context: Optional[MarketContext], now_ms: int, cfg: StrategyConfig) -> Optional[str]:
    if context is None or context.funding_rate is None or context.next_funding_time_ms is None:
        return None
    minutes_to = (context.next_funding_time_ms - now_ms) / 60_000.0
    if 0 <= minutes_to <= cfg.funding_warn_minutes and abs(context.funding_rate) >= cfg.funding_rate_abs_warn:
        return "FUNDING_SOON_HIGH_RATE"
    return None


def adjust_for_risk(
    direction: Direction,
    confidence: int,
    liq: LiquidationSnapshot,
    context: Optional[MarketContext] = None,
    *,
    now_ms: int = 0,
    cfg: Optional[StrategyConfig] = None,
) -> RiskAdjustment:
    cfg = cfg or StrategyConfig()
    warnings: List[str] = []
    conf = confidence

    veto = is_vetoed(direction, liq, cfg.liq_thr_high)

    # Highest matching tier only.
    if liq.intensity_score >= cfg.liq_thr_high:
        conf -= cfg.liq_penalty_high
        warnings.append("LIQ_INTENSITY_HIGH")
    elif liq.intensity_score >= cfg.liq_thr_med:
        conf -= cfg.liq_penalty_med
        warnings.append("LIQ_INTENSITY_MED")
    elif liq.intensity_score >= cfg.liq_thr_low:
        conf -= cfg.liq_penalty_low
        warnings.append("LIQ_INTENSITY_LOW")

    contrarian = (direction == Direction.SHORT and liq.direction_bias == 1) or (
        direction == Direction.LONG and liq.direction_bias == -1
    )
    if contrarian:
        conf += cfg.liq_bonus_align
        warnings.append("LIQ_ALIGNS_WITH_SIGNAL")

    fw = funding_warning(context, now_ms, cfg)
    if fw:
        warnings.append(fw)

    return RiskAdjustment(confidence=int(clamp(conf, 0, 100)), veto=veto, warnings=tuple(warnings))
