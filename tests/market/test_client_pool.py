"""Tests for ClientPool."""

import asyncio

import pytest

from dashfeed.market.client_pool import ClientPool
from dashfeed.market.errors import ClientUnavailableError
from dashfeed.market.models import Provider, ProviderConfig

from .conftest import FakeClient, FakeClientFactory

LIVE = Provider(id="p1", name="P1")
SANDBOX = Provider(id="p1", name="P1", config=ProviderConfig(sandbox=True))


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.mark.asyncio
class TestClientPool:
    """Caching, expiry and invalidation of connectivity clients."""

    async def test_client_reused_within_ttl(self, clock):
        factory = FakeClientFactory()
        pool = ClientPool(factory, ttl=60, clock=clock)

        first = await pool.get_client("binance", LIVE)
        clock.advance(30)
        second = await pool.get_client("binance", LIVE)

        assert first is second
        assert len(factory.created) == 1
        assert first.calls["load_markets"] == 1

    async def test_ttl_is_sliding(self, clock):
        """Test that every hit pushes expiry out by a full TTL."""
        factory = FakeClientFactory()
        pool = ClientPool(factory, ttl=60, clock=clock)

        await pool.get_client("binance", LIVE)
        for _ in range(3):
            clock.advance(45)
            await pool.get_client("binance", LIVE)

        assert len(factory.created) == 1

    async def test_expired_client_rebuilt(self, clock):
        factory = FakeClientFactory()
        pool = ClientPool(factory, ttl=60, clock=clock)

        first = await pool.get_client("binance", LIVE)
        clock.advance(60)
        second = await pool.get_client("binance", LIVE)

        assert first is not second
        assert len(factory.created) == 2

    async def test_touch_keeps_client_alive(self, clock):
        factory = FakeClientFactory()
        pool = ClientPool(factory, ttl=60, clock=clock)

        await pool.get_client("binance", LIVE)
        clock.advance(50)
        pool.touch("binance", LIVE)
        clock.advance(50)
        await pool.get_client("binance", LIVE)

        assert len(factory.created) == 1

    async def test_sandbox_and_live_cached_separately(self, clock):
        factory = FakeClientFactory()
        pool = ClientPool(factory, clock=clock)

        live = await pool.get_client("binance", LIVE)
        sandbox = await pool.get_client("binance", SANDBOX)

        assert live is not sandbox
        assert len(pool) == 2

    async def test_concurrent_misses_build_once(self):
        """Test that simultaneous requests share one construction."""
        created = []

        class SlowClient(FakeClient):
            async def load_markets(self):
                await asyncio.sleep(0.02)

        def factory(exchange, provider, account):
            created.append(exchange)
            return SlowClient()

        pool = ClientPool(factory)

        clients = await asyncio.gather(*(pool.get_client("binance", LIVE) for _ in range(5)))

        assert created == ["binance"]
        assert all(c is clients[0] for c in clients)

    async def test_factory_failure_wrapped(self):
        factory = FakeClientFactory()
        factory.error = RuntimeError("no such exchange")
        pool = ClientPool(factory)

        with pytest.raises(ClientUnavailableError, match="no such exchange"):
            await pool.get_client("binance", LIVE)
        assert len(pool) == 0

    async def test_load_markets_failure_not_cached(self):
        failing = FakeClient()
        failing.load_error = RuntimeError("markets down")
        pool = ClientPool(lambda exchange, provider, account: failing)

        with pytest.raises(ClientUnavailableError):
            await pool.get_client("binance", LIVE)
        assert len(pool) == 0
        assert failing.closed
        assert pool.retired_count == 0

    async def test_account_lookup_passed_to_factory(self):
        factory = FakeClientFactory()
        accounts = {"binance": "acct"}
        pool = ClientPool(factory, account_lookup=accounts.get)

        await pool.get_client("binance", LIVE)
        await pool.get_client("okx", LIVE)

        assert [c[2] for c in factory.created] == ["acct", None]

    async def test_invalidate_by_exchange_and_provider(self):
        factory = FakeClientFactory()
        pool = ClientPool(factory)
        other = Provider(id="p2", name="P2")

        await pool.get_client("binance", LIVE)
        await pool.get_client("binance", other)
        await pool.get_client("okx", LIVE)

        assert pool.invalidate("binance", "p2") == 1
        assert pool.invalidate("BINANCE") == 1
        assert pool.invalidate_provider("p1") == 1
        assert len(pool) == 0

    async def test_invalidated_client_retired_until_closed(self):
        """Test that eviction leaves the client usable until close_retired()."""
        factory = FakeClientFactory()
        pool = ClientPool(factory)
        client = await pool.get_client("binance", LIVE)

        pool.invalidate("binance")
        assert not client.closed
        assert pool.retired_count == 1

        assert await pool.close_retired() == 1
        assert client.closed
        assert pool.retired_count == 0

    async def test_eviction_drops_construction_lock(self, clock):
        pool = ClientPool(FakeClientFactory(), ttl=60, clock=clock)
        await pool.get_client("binance", LIVE)
        await pool.get_client("okx", LIVE)
        assert len(pool._locks) == 2

        pool.invalidate("binance")
        clock.advance(60)
        pool.cleanup()

        assert pool._locks == {}

    async def test_cleanup_removes_only_expired(self, clock):
        factory = FakeClientFactory()
        pool = ClientPool(factory, ttl=60, clock=clock)

        await pool.get_client("binance", LIVE)
        clock.advance(40)
        await pool.get_client("okx", LIVE)
        clock.advance(30)

        assert pool.cleanup() == 1
        assert pool.cache_key("okx", LIVE) in pool
        assert pool.cache_key("binance", LIVE) not in pool

    async def test_sweeper_evicts_and_closes_in_background(self, clock):
        factory = FakeClientFactory()
        pool = ClientPool(factory, ttl=60, clock=clock)
        client = await pool.get_client("binance", LIVE)

        clock.advance(120)
        pool.start_sweeper(interval=0.01)
        await asyncio.sleep(0.05)
        await pool.stop()

        assert len(pool) == 0
        assert client.closed

    async def test_stats(self, clock):
        pool = ClientPool(FakeClientFactory(), ttl=60, clock=clock)
        await pool.get_client("binance", SANDBOX)
        clock.advance(5)

        stats = pool.stats()
        assert stats["total_clients"] == 1
        assert stats["clients"][0]["sandbox"] is True
        assert stats["clients"][0]["idle"] == 5

    async def test_aclose_closes_clients(self):
        factory = FakeClientFactory()
        pool = ClientPool(factory)
        client = await pool.get_client("binance", LIVE)
        evicted = await pool.get_client("okx", LIVE)
        pool.invalidate("okx")
        pool.start_sweeper(interval=10)

        await pool.aclose()

        assert client.closed
        assert evicted.closed
        assert len(pool) == 0
        assert pool.retired_count == 0
