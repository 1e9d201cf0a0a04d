from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class Trend(str, Enum):
    UP = "UP"
    DOWN = "DOWN"
    SIDE = "SIDE"


class Direction(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"
    NO_TRADE = "NO_TRADE"


class Strength(str, Enum):
    WEAK = "WEAK"
    MED = "MED"
    STRONG = "STRONG"


class SignalMode(str, Enum):
    PREVIEW = "PREVIEW"
    CONFIRMED = "CONFIRMED"
    INVALIDATED = "INVALIDATED"


@dataclass(frozen=True)
class Candle:
    open_time_ms: int
    close_time_ms: int
    open: float
    high: float
    low: float
    close: float
    volume: float


@dataclass(frozen=True)
class MacdValue:
    line: float
    signal: float
    histogram: float


@dataclass(frozen=True)
class BollingerValue:
    upper: float
    middle: float
    lower: float


@dataclass(frozen=True)
class IndicatorSnapshot:
    rsi: Optional[float]
    macd: Optional[MacdValue]
    bollinger: Optional[BollingerValue]
    atr: Optional[float]
    volume_ratio: float
    bb_width_class: str  # low | mid | high
    bb_position: int  # -1 | 0 | 1
    last_close: Optional[float]
    last_candle_close_time_ms: Optional[int]

    @property
    def is_complete(self) -> bool:
        return None not in (self.rsi, self.macd, self.bollinger, self.atr, self.last_close)


@dataclass(frozen=True)
class MomentumProfile:
    score: int
    strength: Strength


@dataclass(frozen=True)
class DirectionCandidate:
    direction: Direction
    is_reversal: bool
    reason: str


@dataclass(frozen=True)
class RiskAdjustment:
    confidence: int
    veto: bool
    warnings: Tuple[str, ...] = ()


@dataclass(frozen=True)
class TargetPlan:
    stop_loss: float
    take_profit: float
    atr: float
    sl_atr_mult: float
    risk_reward: float


@dataclass(frozen=True)
class MarketContext:
    percent_change_24h: float
    reference_volatility: Optional[float] = None  # percent daily range
    reference_price: Optional[float] = None  # mark/index price
    funding_rate: Optional[float] = None
    next_funding_time_ms: Optional[int] = None
    tick_size: Optional[float] = None

    @property
    def volatility_proxy(self) -> float:
        if self.reference_volatility is not None:
            return self.reference_volatility
        return self.percent_change_24h


@dataclass(frozen=True)
class LiquidationSnapshot:
    intensity_score: float = 0.0
    direction_bias: int = 0  # +1 longs liquidating, -1 shorts liquidating
    notional_sum: float = 0.0


@dataclass(frozen=True)
class Signal:
    id: str
    symbol: str
    mode: SignalMode
    direction: Direction
    confidence: int
    entry_price: Optional[float]
    stop_loss: Optional[float]
    take_profit: Optional[float]
    metadata: Dict[str, Any] = field(default_factory=dict)
    reasons: Tuple[str, ...] = ()
    warnings: Tuple[str, ...] = ()
    created_at_ms: int = 0
    confirmed_at_ms: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "mode": self.mode.value,
            "direction": self.direction.value,
            "confidence": self.confidence,
            "entry_price": self.entry_price,
            "stop_loss": self.stop_loss,
            "take_profit": self.take_profit,
            "metadata": dict(self.metadata),
            "reasons": list(self.reasons),
            "warnings": list(self.warnings),
            "created_at_ms": self.created_at_ms,
            "confirmed_at_ms": self.confirmed_at_ms,
        }


@dataclass
class PendingConfirmation:
    """Live preview awaiting a confirmation request and a close re-check."""

    signal_id: str
    direction: Direction
    created_at_ms: int
    confirm_requested: bool = False
    snapshot: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "signal_id": self.signal_id,
            "direction": self.direction.value,
            "created_at_ms": self.created_at_ms,
            "confirm_requested": self.confirm_requested,
            "snapshot": dict(self.snapshot),
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "PendingConfirmation":
        return cls(
            signal_id=str(raw["signal_id"]),
            direction=Direction(raw["direction"]),
            created_at_ms=int(raw.get("created_at_ms") or 0),
            confirm_requested=bool(raw.get("confirm_requested", False)),
            snapshot=dict(raw.get("snapshot") or {}),
        )
