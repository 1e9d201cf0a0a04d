from __future__ import annotations

import hashlib

from .models import Direction
from .state_store import StateKeys, StateStore


def _sha1(payload: str) -> str:
    return hashlib.sha1(payload.encode("utf-8")).hexdigest()


def floor_bucket(ts_ms: int, bucket_s: int) -> int:
    b = int(bucket_s) * 1000
    return (int(ts_ms) // b) * b


def preview_id(symbol: str, direction: Direction, now_ms: int, bucket_s: int = 120) -> str:
    """One PREVIEW id per symbol+direction per time bucket."""
    return _sha1(f"PREVIEW|{symbol}|{direction.value}|{floor_bucket(now_ms, bucket_s)}")


def confirmed_id(symbol: str, direction: Direction, candle_close_ms: int) -> str:
    """Tied to the candle that produced the confirmation, not wall-clock."""
    return _sha1(f"CONFIRMED|{symbol}|{direction.value}|{int(candle_close_ms)}")


def invalidated_id(symbol: str, reason: str, now_ms: int) -> str:
    return _sha1(f"INVALIDATED|{symbol}|{floor_bucket(now_ms, 60)}|{reason}")


async def claim_signal_id(store: StateStore, keys: StateKeys, signal_id: str, ttl_s: int = 120) -> bool:
    """Atomically mark `signal_id` as emitted. False means already emitted."""
    return await store.set_if_absent(keys.dedupe(signal_id), {"claimed": 1}, ttl_s)
