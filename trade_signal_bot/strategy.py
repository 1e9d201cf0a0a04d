from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

from .config import StrategyConfig
from .indicators import clamp, compute_indicators
from .models import (
    Candle,
    Direction,
    DirectionCandidate,
    IndicatorSnapshot,
    LiquidationSnapshot,
    MarketContext,
    MomentumProfile,
    RiskAdjustment,
    Strength,
    TargetPlan,
    Trend,
)
from .risk import adjust_for_risk
from .targets import plan_targets

# Evaluation failure codes (DataUnavailable / IndicatorIncomplete / NoEdge).
NO_DATA = "NO_DATA"
BAD_INDICATORS = "BAD_INDICATORS"
NO_TRADE = "NO_TRADE"


def classify_trend(percent_change_24h: float, ind: IndicatorSnapshot, *, up_pct: float = 2.0, dn_pct: float = -2.0) -> Trend:
    score = 0
    if percent_change_24h > up_pct:
        score += 2
    elif percent_change_24h < dn_pct:
        score -= 2

    if ind.macd is not None:
        if ind.macd.histogram > 0:
            score += 1
        elif ind.macd.histogram < 0:
            score -= 1
    score += ind.bb_position

    if score >= 2:
        return Trend.UP
    if score <= -2:
        return Trend.DOWN
    return Trend.SIDE


def momentum_strength(score: int) -> Strength:
    if abs(score) >= 4:
        return Strength.STRONG
    if abs(score) >= 2:
        return Strength.MED
    return Strength.WEAK


def compute_momentum(ind: IndicatorSnapshot) -> MomentumProfile:
    score = 0
    rsi = ind.rsi
    if rsi is not None:
        if rsi >= 60:
            score += 2
        elif rsi >= 52:
            score += 1
        elif rsi <= 40:
            score -= 2
        elif rsi <= 48:
            score -= 1

    vr = ind.volume_ratio
    if vr >= 1.5:
        score += 2
    elif vr >= 1.1:
        score += 1
    elif vr <= 0.7:
        score -= 1

    if ind.bb_width_class == "high":
        score += 1
    elif ind.bb_width_class == "low":
        score -= 1

    return MomentumProfile(score=score, strength=momentum_strength(score))


def direction_candidate(trend: Trend, ind: IndicatorSnapshot) -> DirectionCandidate:
    rsi = ind.rsi
    hist = ind.macd.histogram if ind.macd is not None else None

    if trend == Trend.UP:
        if rsi is not None and rsi >= 70:
            return DirectionCandidate(Direction.SHORT, True, "RSI_OVERBOUGHT_IN_UPTREND")
        return DirectionCandidate(Direction.LONG, False, "UPTREND_RSI_OK")
    if trend == Trend.DOWN:
        if rsi is not None and rsi <= 30:
            return DirectionCandidate(Direction.LONG, True, "RSI_OVERSOLD_IN_DOWNTREND")
        return DirectionCandidate(Direction.SHORT, False, "DOWNTREND_RSI_OK")

    if rsi is not None and hist is not None:
        if rsi > 55 and hist > 0:
            return DirectionCandidate(Direction.LONG, False, "SIDE_BULL_BIAS")
        if rsi < 45 and hist < 0:
            return DirectionCandidate(Direction.SHORT, False, "SIDE_BEAR_BIAS")
    return DirectionCandidate(Direction.NO_TRADE, False, "SIDE_NO_EDGE")


def is_aligned(trend: Trend, momentum: MomentumProfile) -> bool:
    return (
        (trend == Trend.UP and momentum.score > 0)
        or (trend == Trend.DOWN and momentum.score < 0)
        or (trend == Trend.SIDE and abs(momentum.score) >= 2)
    )


def score_confidence(trend: Trend, momentum: MomentumProfile, volatility_proxy: float) -> int:
    conf = 50
    conf += 10 if is_aligned(trend, momentum) else -8

    if momentum.strength == Strength.STRONG:
        conf += 15
    elif momentum.strength == Strength.MED:
        conf += 8
    else:
        conf -= 5

    vol = abs(volatility_proxy)
    if vol > 5:
        conf += 8
    elif vol > 2:
        conf += 4
    else:
        conf -= 3

    return int(clamp(conf, 0, 100))


@dataclass(frozen=True)
class Assessment:
    """Scored view of one symbol at one point in time."""

    indicators: IndicatorSnapshot
    trend: Trend
    momentum: MomentumProfile
    candidate: DirectionCandidate
    base_confidence: int
    risk: RiskAdjustment
    entry_price: float
    plan: Optional[TargetPlan]

    @property
    def direction(self) -> Direction:
        return self.candidate.direction

    @property
    def confidence(self) -> int:
        return self.risk.confidence

    def reasons(self) -> Tuple[str, ...]:
        return (
            self.candidate.reason,
            f"TREND={self.trend.value}",
            f"MOM={self.momentum.strength.value}",
            "ATR_TPSL",
        )

    def snapshot(self) -> dict:
        return {
            "momentum_score": self.momentum.score,
            "rsi": self.indicators.rsi,
            "bb_width_class": self.indicators.bb_width_class,
            "atr": self.indicators.atr,
            "last_candle_close_time_ms": self.indicators.last_candle_close_time_ms,
        }


def assess(
    candles: Sequence[Candle],
    context: Optional[MarketContext],
    liquidation: LiquidationSnapshot,
    cfg: StrategyConfig,
    *,
    now_ms: int,
) -> Tuple[Optional[Assessment], str]:
    """Run indicators through target planning.

    Returns ``(assessment, "")`` or ``(None, code)`` where code is one of
    NO_DATA, BAD_INDICATORS, NO_TRADE. Veto, confidence and entry checks are
    left to the caller since the thresholds differ by lifecycle phase.
    """
    if context is None or not candles:
        return None, NO_DATA

    ind = compute_indicators(candles, atr_period=cfg.atr_period)
    if not ind.is_complete:
        return None, BAD_INDICATORS

    trend = classify_trend(context.percent_change_24h, ind, up_pct=cfg.trend_up_pct, dn_pct=cfg.trend_dn_pct)
    momentum = compute_momentum(ind)
    cand = direction_candidate(trend, ind)
    if cand.direction == Direction.NO_TRADE:
        return None, NO_TRADE

    base = score_confidence(trend, momentum, context.volatility_proxy)
    risk = adjust_for_risk(cand.direction, base, liquidation, context, now_ms=now_ms, cfg=cfg)

    entry = context.reference_price if context.reference_price is not None else ind.last_close
    entry = float(entry or 0.0)
    plan = None
    if entry > 0:
        plan = plan_targets(
            entry=entry,
            atr=ind.atr,
            direction=cand.direction,
            confidence=risk.confidence,
            momentum_strength=momentum.strength,
            is_reversal=cand.is_reversal,
            liq_intensity=liquidation.intensity_score,
            bb_width_class=ind.bb_width_class,
            tick_size=context.tick_size,
            cfg=cfg,
        )

    return Assessment(
        indicators=ind,
        trend=trend,
        momentum=momentum,
        candidate=cand,
        base_confidence=base,
        risk=risk,
        entry_price=entry,
        plan=plan,
    ), ""
