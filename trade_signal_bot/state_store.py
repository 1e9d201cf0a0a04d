from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

import redis.asyncio as aioredis

from .models import LiquidationSnapshot

log = logging.getLogger("store")


def wall_clock_ms() -> int:
    return int(time.time() * 1000)


class StateStore(Protocol):
    """TTL-capable key-value store holding JSON-compatible records."""

    async def get(self, key: str) -> Optional[Dict[str, Any]]: ...

    async def set(self, key: str, value: Dict[str, Any], ttl_s: int) -> None: ...

    async def set_if_absent(self, key: str, value: Dict[str, Any], ttl_s: int) -> bool: ...

    async def delete(self, key: str) -> None: ...

    async def close(self) -> None: ...


class MemoryStateStore:
    """Single-process store; expiry is checked lazily on access."""

    def __init__(self, clock: Callable[[], int] = wall_clock_ms) -> None:
        self._clock = clock
        self._data: Dict[str, Tuple[Optional[int], Dict[str, Any]]] = {}

    def _live(self, key: str) -> Optional[Dict[str, Any]]:
        item = self._data.get(key)
        if item is None:
            return None
        expires_at, value = item
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return value

    def _expiry(self, ttl_s: int) -> Optional[int]:
        return self._clock() + int(ttl_s) * 1000 if ttl_s and ttl_s > 0 else None

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        value = self._live(key)
        # Copy so callers never mutate stored state in place.
        return json.loads(json.dumps(value)) if value is not None else None

    async def set(self, key: str, value: Dict[str, Any], ttl_s: int) -> None:
        self._data[key] = (self._expiry(ttl_s), json.loads(json.dumps(value)))

    async def set_if_absent(self, key: str, value: Dict[str, Any], ttl_s: int) -> bool:
        if self._live(key) is not None:
            return False
        self._data[key] = (self._expiry(ttl_s), json.loads(json.dumps(value)))
        return True

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def close(self) -> None:
        self._data.clear()

    def __len__(self) -> int:
        return sum(1 for k in list(self._data) if self._live(k) is not None)


class RedisStateStore:
    """Shared store over redis-py's asyncio client (SET EX / SET NX EX)."""

    def __init__(self, url: str, *, client: Optional[aioredis.Redis] = None) -> None:
        self.url = url
        self._redis = client or aioredis.Redis.from_url(url, decode_responses=True)

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        raw = await self._redis.get(key)
        if raw is None:
            return None
        try:
            value = json.loads(raw)
        except ValueError:
            log.warning("store_bad_json key=%s", key)
            return None
        return value if isinstance(value, dict) else None

    async def set(self, key: str, value: Dict[str, Any], ttl_s: int) -> None:
        await self._redis.set(key, json.dumps(value, separators=(",", ":")), ex=int(ttl_s))

    async def set_if_absent(self, key: str, value: Dict[str, Any], ttl_s: int) -> bool:
        ok = await self._redis.set(key, json.dumps(value, separators=(",", ":")), ex=int(ttl_s), nx=True)
        return bool(ok)

    async def delete(self, key: str) -> None:
        await self._redis.delete(key)

    async def close(self) -> None:
        await self._redis.aclose()


class StateKeys:
    def __init__(self, prefix: str = "sig") -> None:
        self.prefix = prefix

    def cooldown(self, symbol: str) -> str:
        return f"{self.prefix}:cooldown:{symbol}"

    def pending(self, symbol: str) -> str:
        return f"{self.prefix}:pending:{symbol}"

    def last_signal(self, symbol: str) -> str:
        return f"{self.prefix}:lastsig:{symbol}"

    def dedupe(self, signal_id: str) -> str:
        return f"{self.prefix}:dedupe:{signal_id}"


class LiquidationFeed:
    """Reads rolling liquidation stats written by an external producer."""

    def __init__(self, store: StateStore, prefix: str = "liq") -> None:
        self.store = store
        self.prefix = prefix

    async def get(self, symbol: str) -> LiquidationSnapshot:
        raw = await self.store.get(f"{self.prefix}:{symbol}")
        if not raw:
            return LiquidationSnapshot()
        try:
            bias = int(float(raw.get("dirBias", 0) or 0))
            return LiquidationSnapshot(
                intensity_score=float(raw.get("intensityScore", 0) or 0),
                direction_bias=max(-1, min(1, bias)),
                notional_sum=float(raw.get("notionalSum", 0) or 0),
            )
        except (TypeError, ValueError):
            log.warning("liq_bad_record symbol=%s raw=%s", symbol, raw)
            return LiquidationSnapshot()


def build_store(backend: str, redis_url: str = "", clock: Callable[[], int] = wall_clock_ms) -> StateStore:
    if backend == "redis":
        log.info("state_backend redis url=%s", redis_url.split("@")[-1])
        return RedisStateStore(redis_url)
    log.info("state_backend memory")
    return MemoryStateStore(clock=clock)
