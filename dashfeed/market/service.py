"""Entry point the application layer uses to consume live market data."""

from __future__ import annotations

import asyncio
import logging

from .client_pool import ClientPool
from .config import FeedSettings
from .events import ChartEventHub, ChartUpdateListener
from .interface import AccountLookup, ClientFactory
from .models import (
    DEFAULT_MARKET,
    DEFAULT_TIMEFRAME,
    Candle,
    DataKind,
    OrderBook,
    Provider,
    ProviderMapping,
    SubscribeResult,
    SubscriptionKey,
    Trade,
    TransportMethod,
)
from .orchestrator import FetchOrchestrator
from .providers import ProviderRegistry
from .registry import SubscriptionRegistry
from .store import MarketDataStore

logger = logging.getLogger(__name__)


class MarketDataService:
    """Wires the provider registry, client pool, store, event hub,
    orchestrator and subscription registry together.

    Construct one per application and pass it to whatever needs data.

    Lifecycle:
        service = create_market_data_service(providers=[...])
        await service.start()
        await service.subscribe("w1", "binance", "spot", "BTC/USDT", "candles", "1h")
        candles = service.get_candles("binance", "BTC/USDT", timeframe="1h")
        await service.unsubscribe("w1", "binance", "spot", "BTC/USDT", "candles", "1h")
        await service.stop()
    """

    def __init__(
        self,
        client_factory: ClientFactory,
        providers: ProviderRegistry | None = None,
        settings: FeedSettings | None = None,
        account_lookup: AccountLookup | None = None,
    ) -> None:
        self.settings = settings or FeedSettings()
        self._providers = providers or ProviderRegistry()
        self._accounts = account_lookup
        self._pool = ClientPool(client_factory, account_lookup, ttl=self.settings.client_ttl)
        self._hub = ChartEventHub()
        self._store = MarketDataStore(hub=self._hub, trade_buffer=self.settings.trade_buffer)
        self._orchestrator = FetchOrchestrator(self._providers, self._pool, self._store, self.settings)
        self._registry = SubscriptionRegistry(self._orchestrator, self.settings)
        self._store.set_merge_hook(self._registry.touch)
        self._providers.add_listener(self._on_provider_changed)
        self._refresh_task: asyncio.Task | None = None
        self._refresh_pending = False
        self._started = False

    # --- Lifecycle ---

    async def start(self) -> None:
        if self._started:
            return
        self._pool.start_sweeper(self.settings.sweep_interval)
        self._started = True
        logger.info("Market data service started (method: %s)", self.settings.method.value)

    async def stop(self) -> None:
        """Stop every feed, close pooled clients and drop stored data. Idempotent."""
        await self._cancel_refresh()
        await self._registry.clear()
        await self._pool.aclose()
        self._store.clear()
        self._hub.clear()
        if self._started:
            logger.info("Market data service stopped")
        self._started = False

    # --- Subscriptions ---

    async def subscribe(
        self,
        subscriber_id: str,
        exchange: str,
        market: str | None,
        symbol: str,
        kind: DataKind | str,
        timeframe: str | None = None,
    ) -> SubscribeResult:
        try:
            key = SubscriptionKey.create(exchange, market, symbol, kind, timeframe)
        except ValueError as e:
            return SubscribeResult(success=False, error=str(e))
        return await self._registry.subscribe(subscriber_id, key)

    async def unsubscribe(
        self,
        subscriber_id: str,
        exchange: str,
        market: str | None,
        symbol: str,
        kind: DataKind | str,
        timeframe: str | None = None,
    ) -> None:
        try:
            key = SubscriptionKey.create(exchange, market, symbol, kind, timeframe)
        except ValueError as e:
            logger.warning("Ignoring unsubscribe for invalid key: %s", e)
            return
        await self._registry.unsubscribe(subscriber_id, key)

    def get_active_subscriptions_list(self) -> list[dict]:
        return [info.to_dict() for info in self._registry.list_subscriptions()]

    @property
    def registry(self) -> SubscriptionRegistry:
        return self._registry

    # --- Settings ---

    async def set_method(self, method: TransportMethod | str) -> None:
        await self._registry.set_method(TransportMethod(method))

    async def set_poll_interval(self, kind: DataKind | str, seconds: float) -> None:
        await self._registry.set_poll_interval(DataKind(kind), seconds)

    # --- Data access ---

    def get_candles(
        self,
        exchange: str,
        symbol: str,
        market: str = DEFAULT_MARKET,
        timeframe: str = DEFAULT_TIMEFRAME,
    ) -> list[Candle]:
        return self._store.get_candles(exchange, symbol, market, timeframe)

    def get_trades(self, exchange: str, symbol: str, market: str = DEFAULT_MARKET) -> list[Trade]:
        return self._store.get_trades(exchange, symbol, market)

    def get_order_book(self, exchange: str, symbol: str, market: str = DEFAULT_MARKET) -> OrderBook | None:
        return self._store.get_order_book(exchange, symbol, market)

    @property
    def store(self) -> MarketDataStore:
        return self._store

    async def initialize_chart_data(
        self,
        exchange: str,
        symbol: str,
        timeframe: str = DEFAULT_TIMEFRAME,
        market: str = DEFAULT_MARKET,
        limit: int | None = None,
    ) -> list[Candle]:
        """One-shot history for seeding a chart before its subscription is live.

        The result is not written to the store. Returns [] on any failure.
        """
        key = SubscriptionKey.create(exchange, market, symbol, DataKind.CANDLES, timeframe)
        try:
            candles = await self._orchestrator.fetch_candles(key, limit)
        except Exception as e:
            logger.error("Initial chart data for %s failed: %s", key, e)
            return []
        logger.info("Loaded %d initial candles for %s", len(candles), key)
        return candles

    # --- Chart events ---

    def add_chart_update_listener(
        self,
        exchange: str,
        symbol: str,
        timeframe: str,
        market: str,
        listener: ChartUpdateListener,
    ) -> None:
        key = SubscriptionKey.create(exchange, market, symbol, DataKind.CANDLES, timeframe)
        self._hub.add_listener(key, listener)

    def remove_chart_update_listener(
        self,
        exchange: str,
        symbol: str,
        timeframe: str,
        market: str,
        listener: ChartUpdateListener,
    ) -> None:
        key = SubscriptionKey.create(exchange, market, symbol, DataKind.CANDLES, timeframe)
        self._hub.remove_listener(key, listener)

    # --- Providers ---

    @property
    def providers(self) -> ProviderRegistry:
        return self._providers

    @property
    def client_pool(self) -> ClientPool:
        return self._pool

    def create_provider_mapping(self, exchanges: list[str]) -> list[ProviderMapping]:
        return self._providers.create_mapping(exchanges, self._accounts)

    def _on_provider_changed(self, provider: Provider) -> None:
        if provider.is_wildcard:
            self._pool.invalidate_provider(provider.id)
        else:
            for exchange in provider.exchanges:
                self._pool.invalidate(exchange, provider.id)
        self._schedule_refresh()

    def _schedule_refresh(self) -> None:
        """Coalesce provider changes into one background refresh of running feeds."""
        self._refresh_pending = True
        if self._refresh_task is not None and not self._refresh_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop means no feed is running; the next subscribe resolves afresh
            self._refresh_pending = False
            return
        self._refresh_task = loop.create_task(self._refresh_feeds(), name="provider-refresh")

    async def _refresh_feeds(self) -> None:
        while self._refresh_pending:
            self._refresh_pending = False
            try:
                await self._registry.restart_outdated()
            except Exception:
                logger.exception("Restarting feeds after a provider change failed")
            # Restarted feeds hold fresh clients now
            await self._pool.close_retired()

    async def _cancel_refresh(self) -> None:
        task, self._refresh_task = self._refresh_task, None
        self._refresh_pending = False
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
