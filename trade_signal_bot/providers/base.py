from __future__ import annotations

from typing import List, Optional, Protocol

from ..models import Candle, MarketContext


class ProviderError(RuntimeError):
    """Market-data call failed (bad status, malformed payload)."""


class MarketDataProvider(Protocol):
    async def fetch_candles(self, symbol: str, interval: str, limit: int) -> List[Candle]: ...

    async def fetch_context(self, symbol: str) -> Optional[MarketContext]: ...

    async def close(self) -> None: ...
