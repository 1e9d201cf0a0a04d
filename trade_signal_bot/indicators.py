from __future__ import annotations
from typing import List, Optional, Sequence
import math

from .models import BollingerValue, Candle, IndicatorSnapshot, MacdValue

RSI_LEN = 14
MACD_FAST = 12
MACD_SLOW = 26
MACD_SIGNAL = 9
BB_LEN = 20
BB_STD = 2.0
ATR_LEN = 14
VOLUME_LOOKBACK = 20

BB_WIDTH_HIGH = 0.04
BB_WIDTH_LOW = 0.02

# Longest window in the snapshot (MACD signal line).
MIN_CANDLES = MACD_SLOW + MACD_SIGNAL - 1


def ema_next(prev_ema: Optional[float], x: float, length: int) -> float:
    if length <= 1:
        return x
    alpha = 2.0 / (length + 1.0)
    return x if prev_ema is None else (alpha * x + (1.0 - alpha) * prev_ema)


def sma(values: Sequence[float], length: int) -> Optional[float]:
    if length <= 0 or len(values) < length:
        return None
    return sum(values[-length:]) / float(length)


def ema_series(values: Sequence[float], length: int) -> List[float]:
    out: List[float] = []
    prev: Optional[float] = None
    for x in values:
        prev = ema_next(prev, x, length)
        out.append(prev)
    return out


def rsi_wilder(closes: Sequence[float], length: int = RSI_LEN) -> Optional[float]:
    """Wilder RSI over the full series, seeded with the first `length` changes."""
    if length <= 0 or len(closes) < length + 1:
        return None
    gains = 0.0
    losses = 0.0
    for i in range(1, length + 1):
        ch = closes[i] - closes[i - 1]
        if ch >= 0:
            gains += ch
        else:
            losses -= ch
    avg_gain = gains / length
    avg_loss = losses / length
    for i in range(length + 1, len(closes)):
        ch = closes[i] - closes[i - 1]
        avg_gain = (avg_gain * (length - 1) + max(ch, 0.0)) / length
        avg_loss = (avg_loss * (length - 1) + max(-ch, 0.0)) / length
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100.0 - (100.0 / (1.0 + rs))


def macd(
    closes: Sequence[float],
    fast: int = MACD_FAST,
    slow: int = MACD_SLOW,
    signal: int = MACD_SIGNAL,
) -> Optional[MacdValue]:
    if len(closes) < slow + signal - 1:
        return None
    fast_ema = ema_series(closes, fast)
    slow_ema = ema_series(closes, slow)
    # MACD line only counts once the slow window is filled.
    line = [f - s for f, s in zip(fast_ema[slow - 1:], slow_ema[slow - 1:])]
    sig = ema_series(line, signal)
    return MacdValue(line=line[-1], signal=sig[-1], histogram=line[-1] - sig[-1])


def bollinger(closes: Sequence[float], length: int = BB_LEN, mult: float = BB_STD) -> Optional[BollingerValue]:
    mid = sma(closes, length)
    if mid is None:
        return None
    window = closes[-length:]
    var = sum((x - mid) ** 2 for x in window) / float(length)
    sd = math.sqrt(var)
    return BollingerValue(upper=mid + mult * sd, middle=mid, lower=mid - mult * sd)


def true_range(high: float, low: float, prev_close: float) -> float:
    return max(high - low, abs(high - prev_close), abs(low - prev_close))


def atr_wilder(highs: Sequence[float], lows: Sequence[float], closes: Sequence[float], length: int = ATR_LEN) -> Optional[float]:
    if length <= 0 or len(closes) < length + 1:
        return None
    trs = [true_range(highs[i], lows[i], closes[i - 1]) for i in range(1, len(closes))]
    atr = sum(trs[:length]) / length
    for tr in trs[length:]:
        atr = (atr * (length - 1) + tr) / length
    return atr


def volume_ratio(volumes: Sequence[float], lookback: int = VOLUME_LOOKBACK) -> float:
    if not volumes:
        return 1.0
    window = volumes[-lookback:] if len(volumes) >= lookback else volumes
    avg = sum(window) / max(1, len(window))
    return volumes[-1] / avg if avg > 0 else 1.0


def bb_width_class(bb: Optional[BollingerValue]) -> str:
    if bb is None or not bb.middle:
        return "mid"
    width = (bb.upper - bb.lower) / bb.middle
    if width >= BB_WIDTH_HIGH:
        return "high"
    if width <= BB_WIDTH_LOW:
        return "low"
    return "mid"


def bb_position(last_close: Optional[float], bb: Optional[BollingerValue]) -> int:
    if bb is None or last_close is None:
        return 0
    if last_close > bb.middle:
        return 1
    if last_close < bb.middle:
        return -1
    return 0


def clamp(x: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, x))


def pct_change(new: float, old: float) -> Optional[float]:
    if old == 0:
        return None
    return (new - old) / old * 100.0


def bps_to_distance(price: float, bps: float) -> float:
    return price * (bps / 10000.0)


def compute_indicators(candles: Sequence[Candle], atr_period: int = ATR_LEN) -> IndicatorSnapshot:
    closes = [c.close for c in candles]
    highs = [c.high for c in candles]
    lows = [c.low for c in candles]
    vols = [c.volume for c in candles]

    bb = bollinger(closes)
    last_close = closes[-1] if closes else None
    return IndicatorSnapshot(
        rsi=rsi_wilder(closes),
        macd=macd(closes),
        bollinger=bb,
        atr=atr_wilder(highs, lows, closes, atr_period),
        volume_ratio=volume_ratio(vols),
        bb_width_class=bb_width_class(bb),
        bb_position=bb_position(last_close, bb),
        last_close=last_close,
        last_candle_close_time_ms=candles[-1].close_time_ms if candles else None,
    )
