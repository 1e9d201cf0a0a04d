from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional

import aiohttp
import websockets

from ..indicators import pct_change
from ..models import Candle, MarketContext
from .base import ProviderError

log = logging.getLogger("binance")


def _rest_base(market: str) -> str:
    return "https://fapi.binance.com" if market == "futures" else "https://api.binance.com"


def _api_prefix(market: str) -> str:
    return "/fapi/v1" if market == "futures" else "/api/v3"


def _ws_url(market: str) -> str:
    return "wss://fstream.binance.com/ws" if market == "futures" else "wss://stream.binance.com:9443/ws"


def _stream_name(symbol: str, tf: str) -> str:
    return f"{symbol.lower()}@kline_{tf}"


def _opt_float(x: Any) -> Optional[float]:
    if x is None or x == "":
        return None
    try:
        return float(x)
    except (TypeError, ValueError):
        return None


def parse_kline_row(row: List[Any]) -> Candle:
    # [0]=open time, [6]=close time
    return Candle(
        open_time_ms=int(row[0]),
        close_time_ms=int(row[6]),
        open=float(row[1]),
        high=float(row[2]),
        low=float(row[3]),
        close=float(row[4]),
        volume=float(row[5]),
    )


def parse_context(ticker: Dict[str, Any], premium: Optional[Dict[str, Any]], tick_size: Optional[float]) -> MarketContext:
    high = _opt_float(ticker.get("highPrice"))
    low = _opt_float(ticker.get("lowPrice"))
    daily_range = pct_change(high, low) if (high is not None and low) else None

    ref_price = None
    funding_rate = None
    next_funding = None
    if premium:
        ref_price = _opt_float(premium.get("markPrice"))
        funding_rate = _opt_float(premium.get("lastFundingRate"))
        nft = premium.get("nextFundingTime")
        next_funding = int(nft) if nft else None
    if ref_price is None:
        ref_price = _opt_float(ticker.get("lastPrice"))

    return MarketContext(
        percent_change_24h=_opt_float(ticker.get("priceChangePercent")) or 0.0,
        reference_volatility=daily_range,
        reference_price=ref_price,
        funding_rate=funding_rate,
        next_funding_time_ms=next_funding,
        tick_size=tick_size,
    )


@dataclass(frozen=True)
class KlineEvent:
    symbol: str
    timeframe: str
    candle: Candle


class BinanceProvider:
    def __init__(
        self,
        market: str = "futures",
        *,
        rest_timeout_s: int = 20,
        ws_heartbeat_s: int = 20,
        rest_conn_limit: int = 40,
        rest_conn_limit_per_host: int = 10,
    ):
        self.market = market
        self.rest_timeout_s = rest_timeout_s
        self.ws_heartbeat_s = ws_heartbeat_s
        self.rest_conn_limit = rest_conn_limit
        self.rest_conn_limit_per_host = rest_conn_limit_per_host

        self._session: Optional[aiohttp.ClientSession] = None
        self._tick_sizes: Optional[Dict[str, float]] = None
        self._tick_lock = asyncio.Lock()

    async def close(self) -> None:
        """Close the shared aiohttp session (best-effort)."""
        if self._session is not None and not self._session.closed:
            await self._session.close()

    def _timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(
            total=self.rest_timeout_s,
            connect=min(10, self.rest_timeout_s),
            sock_connect=min(10, self.rest_timeout_s),
            sock_read=max(10, int(self.rest_timeout_s * 0.75)),
        )

    def _connector(self) -> aiohttp.TCPConnector:
        return aiohttp.TCPConnector(
            limit=self.rest_conn_limit,
            limit_per_host=self.rest_conn_limit_per_host,
            ttl_dns_cache=300,
            enable_cleanup_closed=True,
        )

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout(), connector=self._connector())
        return self._session

    async def _get_json(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Single attempt; failures surface to the caller's cycle."""
        url = _rest_base(self.market) + _api_prefix(self.market) + endpoint
        sess = await self._get_session()
        async with sess.get(url, params=params) as resp:
            if resp.status in (418, 429):
                txt = await resp.text()
                log.warning(
                    "rest_rate_limited status=%s endpoint=%s retry_after=%s body=%s",
                    resp.status,
                    endpoint,
                    resp.headers.get("Retry-After"),
                    txt[:200],
                )
                raise ProviderError(f"Binance rate limited: {resp.status}")
            if resp.status != 200:
                txt = await resp.text()
                raise ProviderError(f"Binance {endpoint} failed: {resp.status} {txt[:500]}")
            # Some proxies return a wrong content-type; be tolerant.
            return await resp.json(content_type=None)

    async def fetch_candles(self, symbol: str, interval: str, limit: int) -> List[Candle]:
        data = await self._get_json("/klines", {"symbol": symbol.upper(), "interval": interval, "limit": int(limit)})
        if not isinstance(data, list):
            raise ProviderError(f"Binance klines malformed payload for {symbol}")
        return [parse_kline_row(row) for row in data]

    async def _load_tick_sizes(self) -> Dict[str, float]:
        async with self._tick_lock:
            if self._tick_sizes is not None:
                return self._tick_sizes
            data = await self._get_json("/exchangeInfo")
            sizes: Dict[str, float] = {}
            for s in (data or {}).get("symbols", []):
                for f in s.get("filters", []):
                    if f.get("filterType") == "PRICE_FILTER":
                        tick = _opt_float(f.get("tickSize"))
                        if tick:
                            sizes[str(s.get("symbol", "")).upper()] = tick
            self._tick_sizes = sizes
            log.info("exchange_info_loaded symbols=%d market=%s", len(sizes), self.market)
            return sizes

    async def fetch_context(self, symbol: str) -> Optional[MarketContext]:
        sym = symbol.upper()
        if self.market == "futures":
            ticker, premium, ticks = await asyncio.gather(
                self._get_json("/ticker/24hr", {"symbol": sym}),
                self._get_json("/premiumIndex", {"symbol": sym}),
                self._load_tick_sizes(),
            )
        else:
            ticker, ticks = await asyncio.gather(
                self._get_json("/ticker/24hr", {"symbol": sym}),
                self._load_tick_sizes(),
            )
            premium = None
        if not isinstance(ticker, dict) or "priceChangePercent" not in ticker:
            return None
        return parse_context(ticker, premium if isinstance(premium, dict) else None, ticks.get(sym))

    async def stream_klines(self, symbols: List[str], timeframes: List[str]) -> AsyncIterator[KlineEvent]:
        """Yields CLOSED klines for all (symbol, tf). Auto-reconnects."""
        streams = [_stream_name(sym, tf) for sym in symbols for tf in timeframes]
        ws_url = _ws_url(self.market)

        sub_msg = {"method": "SUBSCRIBE", "params": streams, "id": 1}

        backoff = 1
        while True:
            try:
                async with websockets.connect(
                    ws_url,
                    ping_interval=self.ws_heartbeat_s,
                    ping_timeout=self.ws_heartbeat_s,
                    close_timeout=5,
                    max_queue=5000,
                ) as ws:
                    backoff = 1
                    await ws.send(json.dumps(sub_msg))
                    log.info("ws_subscribed streams=%d market=%s", len(streams), self.market)

                    async for msg in ws:
                        try:
                            j = json.loads(msg)
                        except ValueError:
                            continue
                        if "result" in j and j.get("id") == 1:
                            continue  # subscribe ack

                        data = j.get("data") or j
                        if not isinstance(data, dict) or data.get("e") != "kline":
                            continue

                        k = data.get("k", {})
                        if not k.get("x", False):
                            continue  # only closed candles

                        c = Candle(
                            open_time_ms=int(k.get("t")),
                            close_time_ms=int(k.get("T")),
                            open=float(k.get("o")),
                            high=float(k.get("h")),
                            low=float(k.get("l")),
                            close=float(k.get("c")),
                            volume=float(k.get("v")),
                        )
                        yield KlineEvent(symbol=k.get("s", "").upper(), timeframe=k.get("i", ""), candle=c)

            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.warning("ws_error err=%s reconnect_in=%ss", e, backoff)
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, 60)
