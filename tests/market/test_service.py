"""Tests for the MarketDataService facade."""

import asyncio
from dataclasses import replace

import pytest

from dashfeed.market.models import (
    ChartUpdateType,
    ExchangeAccount,
    Provider,
    ProviderConfig,
    ProviderStatus,
    SubscriptionKey,
    TransportMethod,
)

from .conftest import active_tasks, make_candle, make_trade, wait_until

CANDLES = ("binance", "spot", "BTC/USDT", "candles", "1h")
TRADES = ("binance", "spot", "BTC/USDT", "trades")


def _info(service, *args):
    return service.registry.get(SubscriptionKey.create(*args))


@pytest.mark.asyncio
class TestChartData:
    async def test_initialize_chart_data_does_not_touch_store(self, make_service):
        """Test that one-shot history is returned but never stored."""
        service = make_service()

        candles = await service.initialize_chart_data("binance", "BTC/USDT", "1h")

        assert [c.timestamp for c in candles] == [1, 2]
        assert service.get_candles("binance", "BTC/USDT", timeframe="1h") == []
        assert len(service.registry) == 0

    async def test_initialize_chart_data_failure_returns_empty(self, make_service):
        service = make_service(providers=[Provider(id="p1", name="P1", exchanges=("okx",))])
        assert await service.initialize_chart_data("binance", "BTC/USDT", "1h") == []

    async def test_initialize_chart_data_respects_limit(self, make_service, client_factory):
        service = make_service(client_factory)

        await service.initialize_chart_data("binance", "BTC/USDT", "1h")
        await service.initialize_chart_data("binance", "BTC/USDT", "1h", limit=7)

        assert client_factory.last.limits == [100, 7]

    async def test_chart_listener_receives_updates(self, make_service, client_factory):
        service = make_service(client_factory)
        events = []
        service.add_chart_update_listener("binance", "BTC/USDT", "1h", "spot", events.append)

        await service.subscribe("w1", *CANDLES)
        await wait_until(lambda: len(events) == 1)
        assert events[0].type is ChartUpdateType.INITIAL_LOAD

        client_factory.last.push([make_candle(3)])
        await wait_until(lambda: len(events) == 2)
        assert events[1].type is ChartUpdateType.NEW_CANDLES
        assert events[1].data["new_candles_count"] == 1

        client_factory.last.push([make_candle(3, close=150.0)])
        await wait_until(lambda: len(events) == 3)
        assert events[2].type is ChartUpdateType.UPDATE_LAST_CANDLE

        service.remove_chart_update_listener("binance", "BTC/USDT", "1h", "spot", events.append)
        client_factory.last.push([make_candle(4)])
        await wait_until(lambda: len(service.get_candles("binance", "BTC/USDT", timeframe="1h")) == 4)
        await asyncio.sleep(0.01)
        assert len(events) == 3

        await service.stop()


@pytest.mark.asyncio
class TestDiagnostics:
    async def test_active_subscriptions_list(self, make_service):
        service = make_service()
        await service.subscribe("w1", *CANDLES)
        await service.subscribe("w2", *CANDLES)

        [entry] = service.get_active_subscriptions_list()
        assert entry["key"] == "binance:spot:BTC/USDT:candles:1h"
        assert entry["subscriber_count"] == 2
        assert entry["method"] == "push"
        assert entry["is_fallback"] is False
        assert entry["is_active"] is True
        assert entry["client_method"] == "watch_ohlcv"

        await service.stop()

    async def test_stop_releases_everything(self, make_service, client_factory):
        service = make_service(client_factory)
        await service.start()
        await service.subscribe("w1", *CANDLES)
        await service.subscribe("w1", "binance", "spot", "BTC/USDT", "trades")

        await service.stop()

        assert len(service.registry) == 0
        assert active_tasks(service) == 0
        assert len(service.client_pool) == 0
        assert client_factory.last.closed
        assert service.get_candles("binance", "BTC/USDT", timeframe="1h") == []

    async def test_stop_is_idempotent(self, make_service):
        service = make_service()
        await service.start()
        await service.stop()
        await service.stop()


@pytest.mark.asyncio
class TestProviderChanges:
    async def test_provider_update_invalidates_clients(self, make_service, client_factory, wildcard_provider):
        service = make_service(client_factory)
        await service.subscribe("w1", "binance", "spot", "BTC/USDT", "trades")
        assert len(service.client_pool) == 1

        service.providers.update(replace(wildcard_provider, priority=1))

        assert len(service.client_pool) == 0
        await service.stop()

    async def test_specialized_provider_removal_invalidates_exchange(self, make_service, client_factory):
        binance = Provider(id="bn", name="Binance", exchanges=("binance",), priority=1)
        service = make_service(client_factory, providers=[binance])
        await service.subscribe("w1", "binance", "spot", "BTC/USDT", "trades")

        service.providers.remove("bn")

        assert len(service.client_pool) == 0
        await service.stop()

    async def test_create_provider_mapping_uses_accounts(self, make_service, wildcard_provider):
        account = ExchangeAccount(exchange="binance", api_key="k", secret="s")
        service = make_service(account_lookup={"binance": account}.get)

        [mapping] = service.create_provider_mapping(["binance"])

        assert mapping.provider == wildcard_provider
        assert mapping.account == account

    async def test_credentials_reach_client_factory(self, make_service, client_factory):
        account = ExchangeAccount(exchange="binance", api_key="k", secret="s")
        service = make_service(client_factory, account_lookup={"binance": account}.get)

        await service.subscribe("w1", "binance", "spot", "BTC/USDT", "trades")

        assert client_factory.created[0][2] == account
        await service.stop()

    async def test_provider_update_reaches_running_poll_feed(
        self, make_service, client_factory, wildcard_provider
    ):
        """Test that polling after an edit never re-caches a client built from the old settings."""
        service = make_service(client_factory)
        await service.set_method("pull")
        await service.subscribe("w1", *TRADES)
        stale = client_factory.last
        updated = replace(wildcard_provider, config=ProviderConfig(timeout=5))

        service.providers.update(updated)
        await wait_until(lambda: stale.closed)
        await asyncio.sleep(0.06)

        assert [c.provider for c in service.client_pool._cache.values()] == [updated]
        assert len(client_factory.created) == 2
        assert client_factory.last.provider == updated
        assert _info(service, *TRADES).is_active

        await service.subscribe("w2", "binance", "spot", "ETH/USDT", "trades")
        assert len(client_factory.created) == 2

        await service.stop()

    @pytest.mark.parametrize("action", ["remove", "disable"])
    async def test_lost_provider_stops_poll_feed(self, make_service, client_factory, action):
        binance = Provider(id="bn", name="Binance", exchanges=("binance",), priority=1)
        service = make_service(client_factory, providers=[binance])
        await service.set_method("pull")
        await service.subscribe("w1", *TRADES)
        client = client_factory.last

        getattr(service.providers, action)("bn")
        await wait_until(lambda: client.closed)
        calls = client.calls["fetch_trades"]
        await asyncio.sleep(0.08)

        assert client.calls["fetch_trades"] == calls
        info = _info(service, *TRADES)
        assert not info.is_active
        assert info.subscriber_count == 1
        assert active_tasks(service) == 0

        await service.stop()

    async def test_provider_update_restarts_push_feed(self, make_service, client_factory, wildcard_provider):
        service = make_service(client_factory)
        await service.subscribe("w1", *TRADES)
        stale = client_factory.last

        service.providers.update(replace(wildcard_provider, config=ProviderConfig(timeout=5)))
        await wait_until(lambda: stale.closed)

        assert len(client_factory.created) == 2
        info = _info(service, *TRADES)
        assert info.is_active
        assert info.method is TransportMethod.PUSH
        client_factory.last.push([make_trade("t9")])
        await wait_until(lambda: "t9" in [t.id for t in service.get_trades("binance", "BTC/USDT")])

        await service.stop()

    async def test_new_provider_starts_waiting_feed(self, make_service):
        service = make_service(providers=[Provider(id="bn", name="Binance", exchanges=("binance",))])
        result = await service.subscribe("w1", "kraken", "spot", "BTC/USD", "trades")
        assert not result.success

        service.providers.add(Provider(id="all", name="All", exchanges=("*",), priority=50))
        await wait_until(lambda: _info(service, "kraken", "spot", "BTC/USD", "trades").is_active)

        await service.stop()

    async def test_status_change_does_not_restart_feeds(self, make_service, client_factory):
        service = make_service(client_factory)
        await service.subscribe("w1", *TRADES)
        task = service.registry._entries[SubscriptionKey.create(*TRADES).encode()].task

        service.providers.set_status("all", ProviderStatus.DISCONNECTED)
        await asyncio.sleep(0.02)

        assert service.registry._entries[SubscriptionKey.create(*TRADES).encode()].task is task
        assert len(client_factory.created) == 1

        await service.stop()
