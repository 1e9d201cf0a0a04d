from __future__ import annotations

from decimal import Decimal, ROUND_CEILING, ROUND_FLOOR
from typing import Optional

from .config import StrategyConfig
from .indicators import bps_to_distance
from .models import Direction, Strength, TargetPlan


def choose_sl_mult(
    confidence: int,
    is_reversal: bool,
    liq_intensity: float,
    bb_width_class: str,
    cfg: StrategyConfig,
) -> float:
    mult = cfg.sl_atr_mult_low
    if is_reversal or confidence < 68 or liq_intensity >= cfg.liq_thr_med or bb_width_class == "high":
        mult = max(mult, cfg.sl_atr_mult_mid)
    return min(cfg.sl_atr_mult_high, mult)


def choose_rr(confidence: int, momentum_strength: Strength, cfg: StrategyConfig) -> float:
    if confidence >= 75 and momentum_strength == Strength.STRONG:
        return cfg.rr_high
    return cfg.rr_base


def round_to_tick(price: float, tick: float, *, up: bool) -> float:
    d_tick = Decimal(str(tick))
    steps = (Decimal(str(price)) / d_tick).to_integral_value(rounding=ROUND_CEILING if up else ROUND_FLOOR)
    return float(steps * d_tick)


def _apply_ticks(entry: float, sl: float, tp: float, direction: Direction, tick: float) -> tuple:
    if direction == Direction.LONG:
        sl = round_to_tick(sl, tick, up=False)
        tp = round_to_tick(tp, tick, up=True)
        sl = min(sl, round_to_tick(entry - tick, tick, up=False))
        tp = max(tp, round_to_tick(entry + tick, tick, up=True))
    else:
        sl = round_to_tick(sl, tick, up=True)
        tp = round_to_tick(tp, tick, up=False)
        sl = max(sl, round_to_tick(entry + tick, tick, up=True))
        tp = min(tp, round_to_tick(entry - tick, tick, up=False))
    return sl, tp


def plan_targets(
    *,
    entry: float,
    atr: Optional[float],
    direction: Direction,
    confidence: int,
    momentum_strength: Strength,
    is_reversal: bool,
    liq_intensity: float = 0.0,
    bb_width_class: str = "mid",
    tick_size: Optional[float] = None,
    cfg: Optional[StrategyConfig] = None,
) -> Optional[TargetPlan]:
    """ATR-based stop/target around `entry`; None without a usable ATR."""
    cfg = cfg or StrategyConfig()
    if atr is None or not (atr > 0) or direction == Direction.NO_TRADE:
        return None

    sl_mult = choose_sl_mult(confidence, is_reversal, liq_intensity, bb_width_class, cfg)
    rr = choose_rr(confidence, momentum_strength, cfg)

    sl_dist = max(sl_mult * atr, bps_to_distance(entry, cfg.min_sl_bps))
    tp_dist = max(rr * sl_dist, bps_to_distance(entry, cfg.min_tp_bps))

    if direction == Direction.LONG:
        sl = entry - sl_dist
        tp = entry + tp_dist
    else:
        sl = entry + sl_dist
        tp = entry - tp_dist

    if tick_size is not None and tick_size > 0:
        sl, tp = _apply_ticks(entry, sl, tp, direction, tick_size)

    return TargetPlan(stop_loss=sl, take_profit=tp, atr=atr, sl_atr_mult=sl_mult, risk_reward=rr)
