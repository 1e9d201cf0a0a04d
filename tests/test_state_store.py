import asyncio

from trade_signal_bot.state_store import LiquidationFeed, MemoryStateStore, RedisStateStore, StateKeys


class _Clock:
    def __init__(self, ms: int = 0):
        self.ms = ms

    def __call__(self) -> int:
        return self.ms


class _FakeRedis:
    """Just enough of redis.asyncio.Redis for the store."""

    def __init__(self):
        self.data = {}
        self.calls = []
        self.closed = False

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value, ex=None, nx=False):
        self.calls.append((key, ex, nx))
        if nx and key in self.data:
            return None
        self.data[key] = value
        return True

    async def delete(self, key):
        self.data.pop(key, None)

    async def aclose(self):
        self.closed = True


def test_memory_store_ttl_and_copy():
    clock = _Clock(1_000)
    store = MemoryStateStore(clock=clock)

    async def _run():
        await store.set("k", {"a": [1]}, 10)
        got = await store.get("k")
        got["a"].append(2)
        assert await store.get("k") == {"a": [1]}
        assert len(store) == 1

        clock.ms += 10_000
        assert await store.get("k") is None
        assert len(store) == 0

        assert await store.set_if_absent("n", {"x": 1}, 5) is True
        assert await store.set_if_absent("n", {"x": 2}, 5) is False
        await store.delete("n")
        assert await store.set_if_absent("n", {"x": 3}, 5) is True

    asyncio.run(_run())


def test_redis_store_uses_set_nx_ex():
    fake = _FakeRedis()
    store = RedisStateStore("redis://localhost:6379/0", client=fake)

    async def _run():
        assert await store.set_if_absent("sig:dedupe:x", {"claimed": 1}, 120) is True
        assert await store.set_if_absent("sig:dedupe:x", {"claimed": 1}, 120) is False
        assert fake.calls[0] == ("sig:dedupe:x", 120, True)
        assert await store.get("sig:dedupe:x") == {"claimed": 1}

        fake.data["broken"] = "{not json"
        assert await store.get("broken") is None

        await store.close()
        assert fake.closed is True

    asyncio.run(_run())


def test_keys_layout():
    keys = StateKeys("sig")
    assert keys.cooldown("BTCUSDT") == "sig:cooldown:BTCUSDT"
    assert keys.pending("BTCUSDT") == "sig:pending:BTCUSDT"
    assert keys.last_signal("BTCUSDT") == "sig:lastsig:BTCUSDT"
    assert keys.dedupe("abc") == "sig:dedupe:abc"


def test_liquidation_feed_defaults_and_parsing():
    store = MemoryStateStore(clock=_Clock())
    feed = LiquidationFeed(store, "liq")

    async def _run():
        empty = await feed.get("BTCUSDT")
        assert (empty.intensity_score, empty.direction_bias, empty.notional_sum) == (0.0, 0, 0.0)

        await store.set("liq:BTCUSDT", {"intensityScore": "7.5", "dirBias": -3, "notionalSum": 2.5e6}, 60)
        snap = await feed.get("BTCUSDT")
        assert snap.intensity_score == 7.5
        assert snap.direction_bias == -1
        assert snap.notional_sum == 2.5e6

        await store.set("liq:ETHUSDT", {"intensityScore": "n/a"}, 60)
        assert (await feed.get("ETHUSDT")).intensity_score == 0.0

    asyncio.run(_run())
