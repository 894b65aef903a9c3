import pytest

from shared.cache import TTLCache


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


def test_fresh_entry_hits(clock):
    cache = TTLCache(60, clock=clock)
    cache.set("albums", [1, 2])

    clock.advance(59)
    assert cache.get("albums") == (True, [1, 2])


def test_expired_entry_misses_but_stays_stale(clock):
    cache = TTLCache(60, clock=clock)
    cache.set("albums", [1, 2])

    clock.advance(60)
    assert cache.get("albums") == (False, None)
    assert cache.get_stale("albums") == (True, [1, 2])
    assert len(cache) == 1


def test_per_entry_ttl(clock):
    cache = TTLCache(60, clock=clock)
    cache.set("short", "v", ttl=5)

    clock.advance(6)
    assert cache.get("short") == (False, None)


@pytest.mark.asyncio
async def test_get_or_load_pulls_through_once(clock):
    cache = TTLCache(60, clock=clock)
    calls = []

    async def loader():
        calls.append(1)
        return {"items": []}

    assert await cache.get_or_load(6, loader) == {"items": []}
    assert await cache.get_or_load(6, loader) == {"items": []}
    assert len(calls) == 1

    clock.advance(61)
    await cache.get_or_load(6, loader)
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_get_or_load_serves_stale_on_failure(clock):
    cache = TTLCache(60, clock=clock)
    cache.set(6, "last good")
    clock.advance(120)

    async def failing():
        raise RuntimeError("upstream down")

    assert await cache.get_or_load(6, failing) == "last good"


@pytest.mark.asyncio
async def test_get_or_load_raises_without_entry(clock):
    cache = TTLCache(60, clock=clock)

    async def failing():
        raise RuntimeError("upstream down")

    with pytest.raises(RuntimeError):
        await cache.get_or_load(6, failing)
    assert len(cache) == 0


def test_clear(clock):
    cache = TTLCache(60, clock=clock)
    cache.set("a", 1)
    cache.clear()
    assert cache.get_stale("a") == (False, None)
