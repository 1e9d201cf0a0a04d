from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from .config import StrategyConfig
from .models import (
    Candle,
    Direction,
    LiquidationSnapshot,
    MarketContext,
    PendingConfirmation,
    Signal,
    SignalMode,
)
from .providers.base import MarketDataProvider
from .signal_ids import claim_signal_id, confirmed_id, invalidated_id, preview_id
from .state_store import LiquidationFeed, StateKeys, StateStore, wall_clock_ms
from .strategy import Assessment, assess

log = logging.getLogger("lifecycle")

NO_PENDING_PREVIEW = "NO_PENDING_PREVIEW"

CLOSE_DIRECTION_CHANGED = "CLOSE_DIRECTION_CHANGED"
CLOSE_REVERSAL_NOT_CONFIRMED = "CLOSE_REVERSAL_NOT_CONFIRMED"
CLOSE_LIQ_VETO = "CLOSE_LIQ_VETO"
CLOSE_CONFIDENCE_LOW = "CLOSE_CONFIDENCE_LOW"
CLOSE_BAD_ENTRY = "CLOSE_BAD_ENTRY"
CLOSE_NO_ATR = "CLOSE_NO_ATR"


def reversal_confirmed(a: Assessment, pending: PendingConfirmation) -> bool:
    """RSI back inside the 70/30 band, or momentum moved since the preview."""
    rsi = a.indicators.rsi
    if a.direction == Direction.SHORT and rsi is not None and rsi < 70:
        return True
    if a.direction == Direction.LONG and rsi is not None and rsi > 30:
        return True
    prev = pending.snapshot.get("momentum_score")
    return prev is not None and int(prev) != a.momentum.score


def _signal_metadata(a: Assessment, context: Optional[MarketContext]) -> Dict[str, Any]:
    plan = a.plan
    return {
        "trend": a.trend.value,
        "momentum_score": a.momentum.score,
        "momentum_strength": a.momentum.strength.value,
        "is_reversal": a.candidate.is_reversal,
        "rsi": a.indicators.rsi,
        "bb_width_class": a.indicators.bb_width_class,
        "base_confidence": a.base_confidence,
        "atr": plan.atr if plan else a.indicators.atr,
        "sl_atr_mult": plan.sl_atr_mult if plan else None,
        "rr": plan.risk_reward if plan else None,
        "tick_size": context.tick_size if context else None,
        "candle_close_time_ms": a.indicators.last_candle_close_time_ms,
    }


class SignalLifecycle:
    """Per-symbol PREVIEW -> CONFIRMED / INVALIDATED state machine.

    All state lives in the injected store; the instance only keeps
    per-symbol locks so overlapping cycles in one process serialise their
    read-modify-write sequences.
    """

    def __init__(
        self,
        provider: MarketDataProvider,
        store: StateStore,
        *,
        cfg: Optional[StrategyConfig] = None,
        liquidation: Optional[LiquidationFeed] = None,
        keys: Optional[StateKeys] = None,
        interval: str = "1h",
        candle_limit: int = 200,
        clock: Callable[[], int] = wall_clock_ms,
    ):
        self.provider = provider
        self.store = store
        self.cfg = cfg or StrategyConfig()
        self.liquidation = liquidation
        self.keys = keys or StateKeys()
        self.interval = interval
        self.candle_limit = candle_limit
        self.clock = clock
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock(self, symbol: str) -> asyncio.Lock:
        lock = self._locks.get(symbol)
        if lock is None:
            lock = self._locks[symbol] = asyncio.Lock()
        return lock

    async def _liq(self, symbol: str) -> LiquidationSnapshot:
        if self.liquidation is None:
            return LiquidationSnapshot()
        return await self.liquidation.get(symbol)

    async def _load_inputs(
        self, symbol: str, *, now_ms: int, closed_only: bool
    ) -> Tuple[List[Candle], Optional[MarketContext], LiquidationSnapshot]:
        candles, context, liq = await asyncio.gather(
            self.provider.fetch_candles(symbol, self.interval, self.candle_limit),
            self.provider.fetch_context(symbol),
            self._liq(symbol),
        )
        candles = list(candles or [])
        if closed_only:
            candles = [c for c in candles if c.close_time_ms <= now_ms]
        return candles, context, liq

    async def cooldown_until(self, symbol: str) -> int:
        raw = await self.store.get(self.keys.cooldown(symbol))
        return int((raw or {}).get("cooldown_until_ms") or 0)

    async def pending(self, symbol: str) -> Optional[PendingConfirmation]:
        raw = await self.store.get(self.keys.pending(symbol))
        return PendingConfirmation.from_dict(raw) if raw else None

    async def state(self, symbol: str) -> Dict[str, Any]:
        cooldown, pending, last = await asyncio.gather(
            self.cooldown_until(symbol),
            self.store.get(self.keys.pending(symbol)),
            self.store.get(self.keys.last_signal(symbol)),
        )
        return {"symbol": symbol, "cooldown_until_ms": cooldown, "pending": pending, "last_signal": last}

    async def _arm_cooldown(self, symbol: str, minutes: int, now_ms: int) -> int:
        until = now_ms + int(minutes) * 60_000
        await self.store.set(self.keys.cooldown(symbol), {"cooldown_until_ms": until}, self.cfg.ttl_cooldown_s)
        return until

    async def _save_last_signal(self, symbol: str, record: Dict[str, Any]) -> None:
        await self.store.set(self.keys.last_signal(symbol), record, self.cfg.ttl_last_signal_s)

    # ------------------------------------------------------------------
    # Intrabar preview
    # ------------------------------------------------------------------

    async def evaluate_intrabar(self, symbol: str, min_confidence: Optional[int] = None) -> Optional[Signal]:
        async with self._lock(symbol):
            return await self._evaluate_intrabar(symbol, min_confidence)

    async def _evaluate_intrabar(self, symbol: str, min_confidence: Optional[int]) -> Optional[Signal]:
        now = self.clock()
        until = await self.cooldown_until(symbol)
        if now < until:
            log.debug("intrabar_skip symbol=%s reason=COOLDOWN until=%d", symbol, until)
            return None
        # A requested confirmation is only settled by the close evaluation.
        current = await self.pending(symbol)
        if current is not None and current.confirm_requested:
            log.debug("intrabar_skip symbol=%s reason=AWAITING_CLOSE signal_id=%s", symbol, current.signal_id)
            return None

        candles, context, liq = await self._load_inputs(symbol, now_ms=now, closed_only=False)
        a, code = assess(candles, context, liq, self.cfg, now_ms=now)
        if a is None:
            log.debug("intrabar_skip symbol=%s reason=%s candles=%d", symbol, code, len(candles))
            return None

        threshold = self.cfg.min_conf_show if min_confidence is None else int(min_confidence)
        if a.risk.veto:
            log.info("intrabar_skip symbol=%s reason=LIQ_VETO dir=%s liq=%.1f", symbol, a.direction.value, liq.intensity_score)
            return None
        if a.confidence < threshold:
            log.debug("intrabar_skip symbol=%s reason=CONFIDENCE_LOW conf=%d thr=%d", symbol, a.confidence, threshold)
            return None
        if not (a.entry_price > 0) or a.plan is None:
            log.debug("intrabar_skip symbol=%s reason=NO_PLAN entry=%s", symbol, a.entry_price)
            return None

        sig_id = preview_id(symbol, a.direction, now, self.cfg.dedupe_scope_s)
        if not await claim_signal_id(self.store, self.keys, sig_id, self.cfg.dedupe_ttl_s):
            log.debug("intrabar_duplicate symbol=%s signal_id=%s", symbol, sig_id)
            return None

        signal = Signal(
            id=sig_id,
            symbol=symbol,
            mode=SignalMode.PREVIEW,
            direction=a.direction,
            confidence=a.confidence,
            entry_price=a.entry_price,
            stop_loss=a.plan.stop_loss,
            take_profit=a.plan.take_profit,
            metadata=_signal_metadata(a, context),
            reasons=a.reasons(),
            warnings=a.risk.warnings,
            created_at_ms=now,
        )
        pending = PendingConfirmation(
            signal_id=sig_id,
            direction=a.direction,
            created_at_ms=now,
            confirm_requested=False,
            snapshot=a.snapshot(),
        )
        await asyncio.gather(
            self.store.set(self.keys.pending(symbol), pending.to_dict(), self.cfg.ttl_pending_s),
            self._save_last_signal(symbol, {"ts": now, "id": sig_id, "mode": SignalMode.PREVIEW.value}),
        )
        log.info(
            "preview symbol=%s dir=%s conf=%d entry=%s sl=%s tp=%s signal_id=%s",
            symbol,
            a.direction.value,
            a.confidence,
            a.entry_price,
            a.plan.stop_loss,
            a.plan.take_profit,
            sig_id,
        )
        return signal

    # ------------------------------------------------------------------
    # Confirmation request
    # ------------------------------------------------------------------

    async def request_confirmation(self, symbol: str) -> Dict[str, Any]:
        async with self._lock(symbol):
            pending = await self.pending(symbol)
            if pending is None:
                return {"ok": False, "reason": NO_PENDING_PREVIEW}
            pending.confirm_requested = True
            await self.store.set(self.keys.pending(symbol), pending.to_dict(), self.cfg.ttl_pending_s)
            log.info("confirm_requested symbol=%s signal_id=%s", symbol, pending.signal_id)
            return {"ok": True}

    # ------------------------------------------------------------------
    # Close confirmation
    # ------------------------------------------------------------------

    async def evaluate_on_close(self, symbol: str, min_confidence: Optional[int] = None) -> Optional[Signal]:
        async with self._lock(symbol):
            return await self._evaluate_on_close(symbol, min_confidence)

    async def _evaluate_on_close(self, symbol: str, min_confidence: Optional[int]) -> Optional[Signal]:
        pending = await self.pending(symbol)
        if pending is None or not pending.confirm_requested:
            return None

        now = self.clock()
        candles, context, liq = await self._load_inputs(symbol, now_ms=now, closed_only=True)
        a, code = assess(candles, context, liq, self.cfg, now_ms=now)
        if a is None:
            return await self._invalidate(symbol, pending, f"CLOSE_{code}", now)

        if a.direction != pending.direction:
            return await self._invalidate(symbol, pending, CLOSE_DIRECTION_CHANGED, now, a)
        if a.candidate.is_reversal and not reversal_confirmed(a, pending):
            return await self._invalidate(symbol, pending, CLOSE_REVERSAL_NOT_CONFIRMED, now, a)
        if a.risk.veto:
            return await self._invalidate(symbol, pending, CLOSE_LIQ_VETO, now, a)
        threshold = self.cfg.min_conf_confirmed if min_confidence is None else int(min_confidence)
        if a.confidence < threshold:
            return await self._invalidate(symbol, pending, CLOSE_CONFIDENCE_LOW, now, a)
        if not (a.entry_price > 0):
            return await self._invalidate(symbol, pending, CLOSE_BAD_ENTRY, now, a)
        if a.plan is None:
            return await self._invalidate(symbol, pending, CLOSE_NO_ATR, now, a)

        candle_close = int(a.indicators.last_candle_close_time_ms or 0)
        sig_id = confirmed_id(symbol, a.direction, candle_close)
        if not await claim_signal_id(self.store, self.keys, sig_id, self.cfg.dedupe_ttl_s):
            log.debug("close_duplicate symbol=%s signal_id=%s", symbol, sig_id)
            return None

        metadata = _signal_metadata(a, context)
        metadata["preview_id"] = pending.signal_id
        signal = Signal(
            id=sig_id,
            symbol=symbol,
            mode=SignalMode.CONFIRMED,
            direction=a.direction,
            confidence=a.confidence,
            entry_price=a.entry_price,
            stop_loss=a.plan.stop_loss,
            take_profit=a.plan.take_profit,
            metadata=metadata,
            reasons=a.reasons() + ("CONFIRMED_ON_CLOSE",),
            warnings=a.risk.warnings,
            created_at_ms=pending.created_at_ms,
            confirmed_at_ms=now,
        )
        until = await self._arm_cooldown(symbol, self.cfg.cooldown_confirmed_min, now)
        await asyncio.gather(
            self.store.delete(self.keys.pending(symbol)),
            self._save_last_signal(symbol, {"ts": now, "id": sig_id, "mode": SignalMode.CONFIRMED.value}),
        )
        log.info(
            "confirmed symbol=%s dir=%s conf=%d entry=%s sl=%s tp=%s candle_close_ms=%d cooldown_until=%d signal_id=%s",
            symbol,
            a.direction.value,
            a.confidence,
            a.entry_price,
            a.plan.stop_loss,
            a.plan.take_profit,
            candle_close,
            until,
            sig_id,
        )
        return signal

    async def _invalidate(
        self,
        symbol: str,
        pending: PendingConfirmation,
        reason: str,
        now_ms: int,
        a: Optional[Assessment] = None,
    ) -> Optional[Signal]:
        inv_id = invalidated_id(symbol, reason, now_ms)
        if not await claim_signal_id(self.store, self.keys, inv_id, self.cfg.dedupe_ttl_s):
            return None

        until = await self._arm_cooldown(symbol, self.cfg.cooldown_invalidated_min, now_ms)
        await asyncio.gather(
            self.store.delete(self.keys.pending(symbol)),
            self._save_last_signal(
                symbol, {"ts": now_ms, "id": inv_id, "mode": SignalMode.INVALIDATED.value, "reason": reason}
            ),
        )
        log.info(
            "invalidated symbol=%s dir=%s reason=%s cooldown_until=%d preview_id=%s",
            symbol,
            pending.direction.value,
            reason,
            until,
            pending.signal_id,
        )
        metadata: Dict[str, Any] = {"preview_id": pending.signal_id}
        if a is not None:
            metadata["direction_now"] = a.direction.value
            metadata["confidence_now"] = a.confidence
        return Signal(
            id=inv_id,
            symbol=symbol,
            mode=SignalMode.INVALIDATED,
            direction=pending.direction,
            confidence=0,
            entry_price=None,
            stop_loss=None,
            take_profit=None,
            metadata=metadata,
            reasons=(reason,),
            warnings=a.risk.warnings if a is not None else (),
            created_at_ms=now_ms,
        )
