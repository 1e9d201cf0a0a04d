import asyncio
from types import SimpleNamespace

from trade_signal_bot.lifecycle import (
    CLOSE_BAD_ENTRY,
    CLOSE_CONFIDENCE_LOW,
    CLOSE_DIRECTION_CHANGED,
    CLOSE_LIQ_VETO,
    CLOSE_NO_ATR,
    CLOSE_REVERSAL_NOT_CONFIRMED,
    NO_PENDING_PREVIEW,
    SignalLifecycle,
    reversal_confirmed,
)
from trade_signal_bot.models import Candle, Direction, MarketContext, PendingConfirmation, SignalMode
from trade_signal_bot.signal_ids import confirmed_id
from trade_signal_bot.state_store import LiquidationFeed, MemoryStateStore, StateKeys

HOUR = 3_600_000
MINUTE = 60_000
NOW = 1_700_000_000_000

UP_CONTEXT = MarketContext(percent_change_24h=3.0, reference_volatility=6.0)
DOWN_CONTEXT = MarketContext(percent_change_24h=-3.0, reference_volatility=6.0)


def _series(n: int = 60, up: float = 2.0, down: float = -1.0, last_volume: float = 300.0):
    """Zigzag candles ending with a closed bar at NOW - 1."""
    out = []
    price = 100.0
    base = NOW - n * HOUR
    for i in range(n):
        prev = price
        if i > 0:
            price += up if i % 2 == 1 else down
        vol = last_volume if i == n - 1 else 100.0
        out.append(Candle(base + i * HOUR, base + (i + 1) * HOUR - 1, prev, price + 0.5, price - 0.5, price, vol))
    return out


UP_CANDLES = _series()
DOWN_CANDLES = _series(up=-2.0, down=1.0)
# RSI stays above 70, so an uptrend reads as a SHORT reversal.
OVERBOUGHT_CANDLES = _series(up=3.0, down=-1.0)
# Zero true range: ATR 0 and exactly flat EMAs.
FLAT_CANDLES = [Candle(NOW - (60 - i) * HOUR, NOW - (59 - i) * HOUR - 1, 1.0, 1.0, 1.0, 1.0, 100.0) for i in range(60)]


class _Clock:
    def __init__(self, ms: int = NOW):
        self.ms = ms

    def __call__(self) -> int:
        return self.ms

    def advance(self, minutes: float) -> None:
        self.ms += int(minutes * MINUTE)


class _Provider:
    def __init__(self, candles=UP_CANDLES, context=UP_CONTEXT):
        self.candles = list(candles)
        self.context = context
        self.calls = 0

    async def fetch_candles(self, symbol, interval, limit):
        self.calls += 1
        return list(self.candles)

    async def fetch_context(self, symbol):
        return self.context

    async def close(self):
        return None


def _lifecycle(provider=None, clock=None):
    clock = clock or _Clock()
    store = MemoryStateStore(clock=clock)
    provider = provider or _Provider()
    lc = SignalLifecycle(
        provider,
        store,
        liquidation=LiquidationFeed(store, "liq"),
        keys=StateKeys("sig"),
        clock=clock,
    )
    return lc, store, provider, clock


def test_preview_emitted_once_per_bucket():
    lc, store, _, _ = _lifecycle()

    async def _run():
        sig = await lc.evaluate_intrabar("BTCUSDT")
        assert sig is not None
        assert sig.mode == SignalMode.PREVIEW
        assert sig.direction == Direction.LONG
        assert sig.confidence == 83
        assert sig.entry_price == UP_CANDLES[-1].close
        assert sig.stop_loss < sig.entry_price < sig.take_profit
        assert sig.metadata["sl_atr_mult"] == 2.5
        assert sig.metadata["rr"] == 2.0

        pending = await lc.pending("BTCUSDT")
        assert pending.signal_id == sig.id
        assert pending.confirm_requested is False
        assert pending.snapshot["momentum_score"] == 5

        assert await lc.evaluate_intrabar("BTCUSDT") is None

        state = await lc.state("BTCUSDT")
        assert state["last_signal"]["id"] == sig.id
        assert state["last_signal"]["mode"] == "PREVIEW"

    asyncio.run(_run())


def test_preview_threshold_override():
    lc, store, _, _ = _lifecycle()

    async def _run():
        assert await lc.evaluate_intrabar("BTCUSDT", min_confidence=90) is None
        assert await lc.pending("BTCUSDT") is None

    asyncio.run(_run())


def test_confirm_without_preview():
    lc, _, _, _ = _lifecycle()

    async def _run():
        assert await lc.request_confirmation("BTCUSDT") == {"ok": False, "reason": NO_PENDING_PREVIEW}

    asyncio.run(_run())


def test_close_without_confirm_request_is_noop():
    lc, _, provider, _ = _lifecycle()

    async def _run():
        await lc.evaluate_intrabar("BTCUSDT")
        calls = provider.calls
        assert await lc.evaluate_on_close("BTCUSDT") is None
        assert provider.calls == calls
        assert (await lc.pending("BTCUSDT")) is not None

    asyncio.run(_run())


def test_confirm_flow_and_cooldown():
    lc, store, _, clock = _lifecycle()

    async def _run():
        preview = await lc.evaluate_intrabar("BTCUSDT")
        assert await lc.request_confirmation("BTCUSDT") == {"ok": True}
        assert (await lc.pending("BTCUSDT")).confirm_requested is True

        clock.advance(5)
        sig = await lc.evaluate_on_close("BTCUSDT")
        assert sig is not None
        assert sig.mode == SignalMode.CONFIRMED
        assert sig.id == confirmed_id("BTCUSDT", Direction.LONG, UP_CANDLES[-1].close_time_ms)
        assert sig.metadata["preview_id"] == preview.id
        assert sig.created_at_ms == preview.created_at_ms
        assert sig.confirmed_at_ms == clock.ms
        assert "CONFIRMED_ON_CLOSE" in sig.reasons

        assert await lc.pending("BTCUSDT") is None
        assert await lc.cooldown_until("BTCUSDT") == clock.ms + 30 * MINUTE
        assert await lc.evaluate_on_close("BTCUSDT") is None

        clock.advance(29)
        assert await lc.evaluate_intrabar("BTCUSDT") is None
        clock.advance(2)
        again = await lc.evaluate_intrabar("BTCUSDT")
        assert again is not None
        assert again.mode == SignalMode.PREVIEW

    asyncio.run(_run())


def test_direction_change_invalidates_and_arms_short_cooldown():
    lc, _, provider, clock = _lifecycle()

    async def _run():
        preview = await lc.evaluate_intrabar("BTCUSDT")
        await lc.request_confirmation("BTCUSDT")

        provider.candles = list(DOWN_CANDLES)
        provider.context = DOWN_CONTEXT
        sig = await lc.evaluate_on_close("BTCUSDT")
        assert sig.mode == SignalMode.INVALIDATED
        assert sig.reasons == (CLOSE_DIRECTION_CHANGED,)
        assert sig.direction == Direction.LONG
        assert sig.confidence == 0
        assert sig.entry_price is None and sig.stop_loss is None and sig.take_profit is None
        assert sig.metadata["preview_id"] == preview.id
        assert sig.metadata["direction_now"] == "SHORT"

        assert await lc.pending("BTCUSDT") is None
        state = await lc.state("BTCUSDT")
        assert state["last_signal"]["reason"] == CLOSE_DIRECTION_CHANGED
        assert state["cooldown_until_ms"] == clock.ms + 15 * MINUTE

        provider.candles = list(UP_CANDLES)
        provider.context = UP_CONTEXT
        clock.advance(14)
        assert await lc.evaluate_intrabar("BTCUSDT") is None
        clock.advance(2)
        assert await lc.evaluate_intrabar("BTCUSDT") is not None

    asyncio.run(_run())


def test_missing_data_on_close_invalidates():
    lc, _, provider, _ = _lifecycle()

    async def _run():
        await lc.evaluate_intrabar("BTCUSDT")
        await lc.request_confirmation("BTCUSDT")
        provider.candles = []
        sig = await lc.evaluate_on_close("BTCUSDT")
        assert sig.mode == SignalMode.INVALIDATED
        assert sig.reasons == ("CLOSE_NO_DATA",)
        assert "direction_now" not in sig.metadata

    asyncio.run(_run())


def test_confidence_gate_on_close():
    lc, _, _, _ = _lifecycle()

    async def _run():
        await lc.evaluate_intrabar("BTCUSDT")
        await lc.request_confirmation("BTCUSDT")
        sig = await lc.evaluate_on_close("BTCUSDT", min_confidence=90)
        assert sig.reasons == (CLOSE_CONFIDENCE_LOW,)
        assert sig.metadata["confidence_now"] == 83

    asyncio.run(_run())


def test_liquidation_veto_blocks_preview_and_confirmation():
    lc, store, _, _ = _lifecycle()

    async def _run():
        await store.set("liq:BTCUSDT", {"intensityScore": 9, "dirBias": 1, "notionalSum": 1e6}, 3600)
        assert await lc.evaluate_intrabar("BTCUSDT") is None
        assert await lc.pending("BTCUSDT") is None

        await store.delete("liq:BTCUSDT")
        assert await lc.evaluate_intrabar("BTCUSDT") is not None
        await lc.request_confirmation("BTCUSDT")

        await store.set("liq:BTCUSDT", {"intensityScore": 9, "dirBias": 1}, 3600)
        sig = await lc.evaluate_on_close("BTCUSDT")
        assert sig.mode == SignalMode.INVALIDATED
        assert sig.reasons == (CLOSE_LIQ_VETO,)
        assert "LIQ_INTENSITY_HIGH" in sig.warnings

    asyncio.run(_run())


def test_confirmed_id_already_claimed_leaves_state_alone():
    lc, store, _, _ = _lifecycle()
    keys = StateKeys("sig")

    async def _run():
        await lc.evaluate_intrabar("BTCUSDT")
        await lc.request_confirmation("BTCUSDT")
        sid = confirmed_id("BTCUSDT", Direction.LONG, UP_CANDLES[-1].close_time_ms)
        assert await store.set_if_absent(keys.dedupe(sid), {"claimed": 1}, 120)

        assert await lc.evaluate_on_close("BTCUSDT") is None
        assert (await lc.pending("BTCUSDT")).confirm_requested is True
        assert await lc.cooldown_until("BTCUSDT") == 0

    asyncio.run(_run())


def test_close_evaluation_ignores_open_candle():
    open_bar = Candle(NOW, NOW + HOUR - 1, 131.0, 200.0, 130.0, 199.0, 5000.0)
    lc, _, _, _ = _lifecycle(provider=_Provider(candles=UP_CANDLES + [open_bar]))

    async def _run():
        candles, _, _ = await lc._load_inputs("BTCUSDT", now_ms=NOW, closed_only=True)
        assert candles[-1] == UP_CANDLES[-1]
        candles, _, _ = await lc._load_inputs("BTCUSDT", now_ms=NOW, closed_only=False)
        assert candles[-1] == open_bar

    asyncio.run(_run())


def test_concurrent_intrabar_calls_emit_one_preview():
    lc, _, _, _ = _lifecycle()

    async def _run():
        results = await asyncio.gather(*[lc.evaluate_intrabar("BTCUSDT") for _ in range(5)])
        assert sum(1 for r in results if r is not None) == 1

    asyncio.run(_run())


def _assessment(direction, rsi, score):
    return SimpleNamespace(
        direction=direction,
        indicators=SimpleNamespace(rsi=rsi),
        momentum=SimpleNamespace(score=score),
    )


def test_reversal_confirmation_rules():
    pending = PendingConfirmation("x", Direction.LONG, NOW, True, {"momentum_score": -3})
    assert not reversal_confirmed(_assessment(Direction.LONG, 25.0, -3), pending)
    assert reversal_confirmed(_assessment(Direction.LONG, 25.0, -2), pending)
    assert reversal_confirmed(_assessment(Direction.LONG, 35.0, -3), pending)

    short = PendingConfirmation("y", Direction.SHORT, NOW, True, {})
    assert not reversal_confirmed(_assessment(Direction.SHORT, 75.0, 4), short)
    assert reversal_confirmed(_assessment(Direction.SHORT, 65.0, 4), short)


def test_requested_confirmation_survives_later_intrabar_polls():
    lc, _, _, clock = _lifecycle()

    async def _run():
        preview = await lc.evaluate_intrabar("BTCUSDT")
        await lc.request_confirmation("BTCUSDT")

        # next poll lands in a new preview bucket
        clock.advance(5)
        assert await lc.evaluate_intrabar("BTCUSDT") is None
        pending = await lc.pending("BTCUSDT")
        assert pending.signal_id == preview.id
        assert pending.confirm_requested is True

        sig = await lc.evaluate_on_close("BTCUSDT")
        assert sig.mode == SignalMode.CONFIRMED
        assert sig.metadata["preview_id"] == preview.id

    asyncio.run(_run())


def test_unrequested_preview_is_replaced_by_newer_one():
    lc, _, _, clock = _lifecycle()

    async def _run():
        first = await lc.evaluate_intrabar("BTCUSDT")
        clock.advance(5)
        second = await lc.evaluate_intrabar("BTCUSDT")
        assert second is not None and second.id != first.id
        assert (await lc.pending("BTCUSDT")).signal_id == second.id

    asyncio.run(_run())


def _close_after_preview(provider, close_candles, close_context, *, min_confidence=None):
    lc, _, _, _ = _lifecycle(provider=provider)

    async def _run():
        preview = await lc.evaluate_intrabar("BTCUSDT", min_confidence=min_confidence)
        assert preview is not None
        assert await lc.request_confirmation("BTCUSDT") == {"ok": True}
        provider.candles = list(close_candles)
        provider.context = close_context
        sig = await lc.evaluate_on_close("BTCUSDT", min_confidence=min_confidence)
        return preview, sig, await lc.pending("BTCUSDT")

    return asyncio.run(_run())


def test_reversal_without_momentum_change_is_invalidated():
    provider = _Provider(candles=OVERBOUGHT_CANDLES)
    preview, sig, pending = _close_after_preview(provider, OVERBOUGHT_CANDLES, UP_CONTEXT)
    assert preview.direction == Direction.SHORT
    assert preview.metadata["is_reversal"] is True
    assert sig.mode == SignalMode.INVALIDATED
    assert sig.reasons == (CLOSE_REVERSAL_NOT_CONFIRMED,)
    assert sig.metadata["direction_now"] == "SHORT"
    assert pending is None


def test_reversal_confirmed_when_momentum_moves():
    provider = _Provider(candles=OVERBOUGHT_CANDLES)
    calmer = _series(up=3.0, down=-1.0, last_volume=100.0)
    preview, sig, pending = _close_after_preview(provider, calmer, UP_CONTEXT)
    assert sig.mode == SignalMode.CONFIRMED
    assert sig.direction == Direction.SHORT
    assert sig.metadata["momentum_score"] != preview.metadata["momentum_score"]
    assert sig.stop_loss > sig.entry_price > sig.take_profit
    assert pending is None


def test_no_edge_on_close_is_invalidated():
    side = MarketContext(percent_change_24h=0.0, reference_volatility=6.0)
    _, sig, _ = _close_after_preview(_Provider(), FLAT_CANDLES, side)
    assert sig.reasons == ("CLOSE_NO_TRADE",)


def test_short_history_on_close_is_invalidated():
    _, sig, _ = _close_after_preview(_Provider(), UP_CANDLES[-20:], UP_CONTEXT)
    assert sig.reasons == ("CLOSE_BAD_INDICATORS",)


def test_zero_reference_price_on_close_is_invalidated():
    no_price = MarketContext(percent_change_24h=3.0, reference_volatility=6.0, reference_price=0.0)
    _, sig, _ = _close_after_preview(_Provider(), UP_CANDLES, no_price)
    assert sig.reasons == (CLOSE_BAD_ENTRY,)
    assert sig.metadata["confidence_now"] == 83


def test_zero_atr_on_close_is_invalidated():
    provider = _Provider(candles=DOWN_CANDLES, context=DOWN_CONTEXT)
    preview, sig, _ = _close_after_preview(provider, FLAT_CANDLES, DOWN_CONTEXT, min_confidence=0)
    assert preview.direction == Direction.SHORT
    assert sig.reasons == (CLOSE_NO_ATR,)
    assert sig.metadata["direction_now"] == "SHORT"
