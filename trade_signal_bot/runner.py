from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .config import Config, interval_ms
from .formatters import format_signal
from .lifecycle import SignalLifecycle
from .models import Signal, SignalMode
from .notifier.telegram import TelegramNotifier
from .notifier.webhook import WebhookNotifier
from .providers.base import MarketDataProvider
from .providers.binance import BinanceProvider, KlineEvent
from .state_store import LiquidationFeed, StateKeys, StateStore, build_store, wall_clock_ms

log = logging.getLogger("runner")

INTRABAR = "intrabar"
CLOSE = "close"


def next_close_delay_s(now_ms: int, interval: str, grace_s: float = 0.0) -> float:
    """Seconds until the current bar closes, plus a grace period."""
    step = interval_ms(interval)
    boundary = (int(now_ms) // step + 1) * step
    return (boundary - int(now_ms)) / 1000.0 + max(0.0, float(grace_s))


@dataclass
class CycleReport:
    mode: str
    signals: List[Signal] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)
    elapsed_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "mode": self.mode,
            "signals": [s.to_dict() for s in self.signals],
            "errors": list(self.errors),
            "ms": self.elapsed_ms,
        }


class SignalRunner:
    def __init__(
        self,
        cfg: Config,
        *,
        provider: Optional[MarketDataProvider] = None,
        store: Optional[StateStore] = None,
        clock: Callable[[], int] = wall_clock_ms,
    ):
        self.cfg = cfg
        self.clock = clock
        self.provider = provider or BinanceProvider(
            market=cfg.provider.market,
            rest_timeout_s=cfg.provider.rest_timeout_s,
            ws_heartbeat_s=cfg.provider.ws_heartbeat_s,
        )
        self.store = store or build_store(cfg.state.backend, cfg.state.redis_url, clock=clock)
        self.lifecycle = SignalLifecycle(
            self.provider,
            self.store,
            cfg=cfg.strategy,
            liquidation=LiquidationFeed(self.store, cfg.state.liquidation_prefix),
            keys=StateKeys(cfg.state.key_prefix),
            interval=cfg.provider.interval,
            candle_limit=cfg.provider.candle_limit,
            clock=clock,
        )
        self.tg = TelegramNotifier(
            token=cfg.telegram.token if cfg.telegram.enabled else "",
            chat_ids=cfg.telegram.chat_ids,
            disable_web_page_preview=cfg.telegram.disable_web_page_preview,
        )
        self.webhook = WebhookNotifier(
            enabled=cfg.webhook.enabled,
            url=cfg.webhook.url,
            secret=cfg.webhook.secret,
            timeout_s=cfg.webhook.timeout_s,
            headers=cfg.webhook.headers or {},
        )
        self._last_close: Dict[str, int] = {}

    @property
    def symbols(self) -> List[str]:
        return list(self.cfg.provider.symbols or [])

    async def close(self) -> None:
        for closer in (self.provider.close, self.store.close):
            try:
                await closer()
            except Exception as e:
                log.warning("close_failed err=%s", e)

    async def run_cycle(self, mode: str, *, min_confidence: Optional[int] = None, notify: bool = True) -> CycleReport:
        """Evaluate every watch-list symbol concurrently and fan the results back in."""
        if mode == INTRABAR:
            evaluate = self.lifecycle.evaluate_intrabar
        elif mode == CLOSE:
            evaluate = self.lifecycle.evaluate_on_close
        else:
            raise ValueError(f"Unsupported cycle mode: {mode}")

        t0 = self.clock()
        sem = asyncio.Semaphore(max(1, int(self.cfg.provider.concurrency)))

        async def _one(sym: str):
            try:
                async with sem:
                    return await evaluate(sym, min_confidence), None
            except Exception as e:
                return None, (sym, repr(e))

        results = await asyncio.gather(*[_one(sym) for sym in self.symbols])

        report = CycleReport(mode=mode)
        for sig, err in results:
            if err is not None:
                sym, msg = err
                log.warning("cycle_symbol_failed mode=%s symbol=%s err=%s", mode, sym, msg)
                report.errors.append({"symbol": sym, "error": msg})
            elif sig is not None:
                report.signals.append(sig)
        report.elapsed_ms = self.clock() - t0

        log.info(
            "cycle_done mode=%s symbols=%d signals=%d errors=%d ms=%d",
            mode,
            len(self.symbols),
            len(report.signals),
            len(report.errors),
            report.elapsed_ms,
        )
        if notify:
            for sig in report.signals:
                await self._handle_signal(sig)
        return report

    async def request_confirmation(self, symbol: str) -> Dict[str, Any]:
        symbol = (symbol or "").strip().upper()
        if symbol not in self.symbols:
            return {"ok": False, "reason": "UNKNOWN_SYMBOL"}
        return await self.lifecycle.request_confirmation(symbol)

    async def _handle_signal(self, sig: Signal) -> None:
        alerts_cfg = self.cfg.alerts
        if sig.mode == SignalMode.PREVIEW and not alerts_cfg.include_previews:
            return
        if sig.mode == SignalMode.INVALIDATED and not alerts_cfg.include_invalidations:
            return

        if self.webhook.enabled:
            await self.webhook.send_signal(sig)

        if not self.tg.enabled():
            return
        parse_mode = getattr(alerts_cfg, "parse_mode", "HTML") or "HTML"
        try:
            await self.tg.send(format_signal(sig, alerts_cfg), parse_mode=parse_mode)
        except Exception as e:
            log.warning("telegram_failed symbol=%s signal_id=%s err=%s", sig.symbol, sig.id, e)

    def _is_duplicate(self, evt: KlineEvent) -> bool:
        last = self._last_close.get(evt.symbol)
        ct = evt.candle.close_time_ms
        if last is not None and ct <= last:
            return True
        self._last_close[evt.symbol] = ct
        return False

    async def _intrabar_loop(self) -> None:
        interval_s = max(1, int(self.cfg.scheduler.intrabar_interval_s))
        while True:
            try:
                await self.run_cycle(INTRABAR)
            except Exception as e:
                log.exception("intrabar_cycle_failed err=%s", e)
            await asyncio.sleep(interval_s)

    async def _close_stream_loop(self) -> None:
        symbols = set(self.symbols)
        async for evt in self.provider.stream_klines(self.symbols, [self.cfg.provider.interval]):
            if evt.symbol not in symbols or self._is_duplicate(evt):
                continue
            try:
                sig = await self.lifecycle.evaluate_on_close(evt.symbol)
            except Exception as e:
                log.warning("close_eval_failed symbol=%s err=%s", evt.symbol, e)
                continue
            if sig is not None:
                await self._handle_signal(sig)

    async def _close_timer_loop(self) -> None:
        interval = self.cfg.provider.interval
        while True:
            delay = next_close_delay_s(self.clock(), interval, self.cfg.scheduler.close_grace_s)
            await asyncio.sleep(delay)
            try:
                await self.run_cycle(CLOSE)
            except Exception as e:
                log.exception("close_cycle_failed err=%s", e)

    async def run_forever(self) -> None:
        if not self.symbols:
            raise ValueError("No symbols configured (provider.symbols or WATCHLIST).")
        log.info(
            "start symbols=%d interval=%s intrabar_every=%ss close_on_stream=%s",
            len(self.symbols),
            self.cfg.provider.interval,
            self.cfg.scheduler.intrabar_interval_s,
            self.cfg.scheduler.close_on_stream,
        )
        if self.tg.enabled():
            await self.tg.send(f"{self.cfg.app.name}: monitoring {len(self.symbols)} symbols on {self.cfg.provider.interval}.")

        if self.cfg.state.backend == "memory":
            log.warning("state_backend memory: confirmations from other processes (--mode confirm) are not visible")

        close_loop = self._close_stream_loop() if self.cfg.scheduler.close_on_stream else self._close_timer_loop()
        await asyncio.gather(self._intrabar_loop(), close_loop)
