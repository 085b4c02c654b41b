"""Starts and stops the data flow behind each subscription."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from .client_pool import ClientPool
from .config import FeedSettings
from .errors import ProviderNotFoundError
from .interface import (
    PULL_METHODS,
    ClientMethod,
    ConnectivityClient,
    select_order_book_method,
    select_push_method,
)
from .models import Candle, DataKind, Provider, SubscriptionKey, TransportMethod
from .providers import ProviderRegistry
from .store import MarketDataStore

if TYPE_CHECKING:
    from .registry import Subscription

logger = logging.getLogger(__name__)


class FetchOrchestrator:
    """Brings a subscription from registered to delivering data, and back.

    Push feeds run a background task that awaits the client's watch method
    and merges each payload. If the client cannot stream the data kind, or
    the stream fails, the feed silently switches to polling and records
    ``is_fallback``. Pull feeds fetch once immediately, then poll on the
    per-kind interval; a failed poll is logged and the next tick retries.

    The subscription's ``is_active`` flag is the cancellation token: both
    loops check it every iteration, and ``stop()`` clears it before
    cancelling the task.
    """

    def __init__(
        self,
        providers: ProviderRegistry,
        pool: ClientPool,
        store: MarketDataStore,
        settings: FeedSettings,
    ) -> None:
        self._providers = providers
        self._pool = pool
        self._store = store
        self._settings = settings

    async def start(self, sub: Subscription) -> None:
        """Attach a live feed to ``sub``.

        Raises ProviderNotFoundError or ClientUnavailableError, leaving the
        subscription inactive.
        """
        if sub.is_active:
            return
        key = sub.key

        provider = self._providers.resolve(key.exchange)
        sub.provider = provider
        if provider is None:
            raise ProviderNotFoundError(key.exchange)

        sub.is_active = True
        logger.info("Starting %s via %s using %s", key, provider.id, sub.method.value)
        try:
            client = await self._pool.get_client(key.exchange, provider)
        except BaseException:
            sub.is_active = False
            raise
        if not sub.is_active:
            return

        if key.kind is DataKind.ORDER_BOOK:
            selection = select_order_book_method(client.capabilities)
            sub.client_method = selection.method.value
            logger.info("Order book method for %s: %s (%s)", key, selection.method.value, selection.reason)

        if sub.method is TransportMethod.PUSH:
            await self._start_push(sub, client, provider)
        else:
            await self._start_pull(sub)

    async def stop(self, sub: Subscription) -> None:
        """Release the feed attached to ``sub``. No-op when nothing is attached."""
        task = sub.task
        if not sub.is_active and task is None:
            return
        sub.is_active = False
        sub.task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("Stopped %s", sub.key)

    def is_outdated(self, sub: Subscription) -> bool:
        """True when ``sub``'s exchange no longer resolves to the provider snapshot it started with."""
        return self._providers.resolve(sub.key.exchange) != sub.provider

    async def fetch_candles(self, key: SubscriptionKey, limit: int | None = None) -> list[Candle]:
        """One-shot candle pull for ``key``; nothing is written to the store."""
        provider = self._providers.resolve(key.exchange)
        if provider is None:
            raise ProviderNotFoundError(key.exchange)
        client = await self._pool.get_client(key.exchange, provider)
        return await client.fetch_ohlcv(key.symbol, key.timeframe, limit=limit or self._settings.candle_limit)

    # --- Push ---

    async def _start_push(self, sub: Subscription, client: ConnectivityClient, provider: Provider) -> None:
        key = sub.key
        method = select_push_method(key.kind, client.capabilities)
        if method is None:
            logger.warning("%s cannot stream %s, falling back to polling", provider.id, key)
            self._fall_back(sub)
            await self._start_pull(sub)
            return

        if key.kind is DataKind.CANDLES:
            await self._backfill(sub, client)
            if not sub.is_active:
                return

        if key.kind is not DataKind.ORDER_BOOK:
            sub.client_method = method.value
        sub.task = asyncio.create_task(
            self._push_loop(sub, client, provider, method), name=f"push:{key}"
        )

    async def _backfill(self, sub: Subscription, client: ConnectivityClient) -> None:
        """Seed the store with history so the stream has a base to extend."""
        key = sub.key
        try:
            candles = await client.fetch_ohlcv(key.symbol, key.timeframe, limit=self._settings.candle_limit)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Historical candles for %s failed: %s", key, e)
            return
        if candles and sub.is_active:
            self._store.update_candles(key, candles)
            logger.info("Loaded %d historical candles for %s", len(candles), key)

    async def _push_loop(
        self,
        sub: Subscription,
        client: ConnectivityClient,
        provider: Provider,
        method: ClientMethod,
    ) -> None:
        key = sub.key
        logger.debug("Push loop started for %s (%s)", key, method.value)
        try:
            while sub.is_active:
                payload = await self._watch(client, key, method)
                if not sub.is_active:
                    break
                self._merge(key, payload)
                self._pool.touch(key.exchange, provider)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if not sub.is_active:
                return
            logger.warning("Push stream for %s failed (%s), switching to polling", key, e)
            self._fall_back(sub)
            await self._start_pull(sub)
            return
        logger.debug("Push loop for %s exited", key)

    @staticmethod
    async def _watch(client: ConnectivityClient, key: SubscriptionKey, method: ClientMethod) -> Any:
        if method is ClientMethod.WATCH_OHLCV:
            return await client.watch_ohlcv(key.symbol, key.timeframe)
        if method is ClientMethod.WATCH_TRADES:
            return await client.watch_trades(key.symbol)
        if method is ClientMethod.WATCH_ORDER_BOOK_FOR_SYMBOLS:
            books = await client.watch_order_book_for_symbols([key.symbol])
            return books.get(key.symbol)
        if method is ClientMethod.WATCH_ORDER_BOOK:
            return await client.watch_order_book(key.symbol)
        raise ValueError(f"{method.value} is not a streaming method")

    @staticmethod
    def _fall_back(sub: Subscription) -> None:
        sub.method = TransportMethod.PULL
        sub.is_fallback = True

    # --- Pull ---

    async def _start_pull(self, sub: Subscription) -> None:
        key = sub.key
        interval = self._settings.poll_interval(key.kind)
        if key.kind is not DataKind.ORDER_BOOK:
            sub.client_method = PULL_METHODS[key.kind].value
        logger.info("Polling %s every %.3fs", key, interval)

        # First fetch right away so nobody waits a full interval for data
        await self._poll_once(sub)
        if not sub.is_active:
            return
        sub.task = asyncio.create_task(self._poll_loop(sub, interval), name=f"poll:{key}")

    async def _poll_loop(self, sub: Subscription, interval: float) -> None:
        """Poll on interval. First poll already happened in _start_pull()."""
        while sub.is_active:
            await asyncio.sleep(interval)
            if not sub.is_active:
                break
            await self._poll_once(sub)

    async def _poll_once(self, sub: Subscription) -> None:
        key = sub.key
        if not sub.is_active:
            return
        # Resolved per tick so provider edits and removals reach running feeds
        provider = self._providers.resolve(key.exchange)
        if provider is None:
            logger.warning("No provider serves %s any more, stopping %s", key.exchange, key)
            sub.is_active = False
            sub.provider = None
            return
        try:
            # Going through the pool keeps the client's sliding TTL fresh
            client = await self._pool.get_client(key.exchange, provider)
            payload = await self._fetch(client, key)
            if sub.is_active:
                self._merge(key, payload)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Poll for %s failed: %s", key, e)
            # Don't re-raise: the next tick retries

    async def _fetch(self, client: ConnectivityClient, key: SubscriptionKey) -> Any:
        if key.kind is DataKind.CANDLES:
            return await client.fetch_ohlcv(key.symbol, key.timeframe, limit=self._settings.candle_limit)
        if key.kind is DataKind.TRADES:
            return await client.fetch_trades(key.symbol, limit=self._settings.candle_limit)
        return await client.fetch_order_book(key.symbol)

    # --- Merge ---

    def _merge(self, key: SubscriptionKey, payload: Any) -> None:
        if not payload:
            return
        if key.kind is DataKind.CANDLES:
            self._store.update_candles(key, payload)
        elif key.kind is DataKind.TRADES:
            self._store.update_trades(key, payload)
        else:
            self._store.update_order_book(key, payload)
