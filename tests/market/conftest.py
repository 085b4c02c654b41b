"""Fixtures for market data tests.

Provides a scriptable ConnectivityClient so the orchestrator can be driven
without a network: fetch_* return canned data, watch_* block until a test
pushes a payload (or an exception) onto the client's queue.
"""

import asyncio
from collections import Counter

import pytest

from dashfeed.market.config import FeedSettings
from dashfeed.market.interface import Capabilities, ConnectivityClient
from dashfeed.market.models import (
    Candle,
    DataKind,
    OrderBook,
    OrderBookLevel,
    Provider,
    Trade,
)
from dashfeed.market.providers import ProviderRegistry
from dashfeed.market.service import MarketDataService

PUSH_ALL = Capabilities(
    watch_ohlcv=True,
    watch_trades=True,
    watch_order_book_for_symbols=True,
    watch_order_book=True,
)
PULL_ONLY = Capabilities()


def make_candle(ts: int, close: float = 100.0) -> Candle:
    return Candle(timestamp=ts, open=close, high=close + 1, low=close - 1, close=close, volume=1.0)


def make_trade(trade_id: str, ts: int = 1, price: float = 100.0) -> Trade:
    return Trade(id=trade_id, timestamp=ts, price=price, amount=0.5, side="buy")


def make_book(symbol: str = "BTC/USDT", ts: int = 1, bid: float = 99.0, ask: float = 101.0) -> OrderBook:
    return OrderBook(
        symbol=symbol,
        timestamp=ts,
        bids=(OrderBookLevel(price=bid, amount=1.0),),
        asks=(OrderBookLevel(price=ask, amount=1.0),),
    )


class FakeClient(ConnectivityClient):
    """In-memory ConnectivityClient with call counters."""

    def __init__(self, capabilities: Capabilities = PUSH_ALL) -> None:
        self._capabilities = capabilities
        self.candles: list[Candle] = [make_candle(1), make_candle(2)]
        self.trades: list[Trade] = [make_trade("t1")]
        self.order_book: OrderBook = make_book()
        self.calls: Counter = Counter()
        self.limits: list[int] = []
        self.fetch_error: Exception | None = None
        self.load_error: Exception | None = None
        self.closed = False
        self.provider: Provider | None = None
        self._pushes: asyncio.Queue = asyncio.Queue()

    @property
    def capabilities(self) -> Capabilities:
        return self._capabilities

    def push(self, payload) -> None:
        """Deliver ``payload`` to the next watch_* call. Exceptions are raised there."""
        self._pushes.put_nowait(payload)

    async def _next_push(self):
        payload = await self._pushes.get()
        if isinstance(payload, Exception):
            raise payload
        return payload

    async def load_markets(self) -> None:
        self.calls["load_markets"] += 1
        if self.load_error:
            raise self.load_error

    async def fetch_ohlcv(self, symbol, timeframe, limit=100):
        self.calls["fetch_ohlcv"] += 1
        self.limits.append(limit)
        if self.fetch_error:
            raise self.fetch_error
        return list(self.candles)

    async def fetch_trades(self, symbol, limit=100):
        self.calls["fetch_trades"] += 1
        if self.fetch_error:
            raise self.fetch_error
        return list(self.trades)

    async def fetch_order_book(self, symbol):
        self.calls["fetch_order_book"] += 1
        if self.fetch_error:
            raise self.fetch_error
        return self.order_book

    async def watch_ohlcv(self, symbol, timeframe):
        self.calls["watch_ohlcv"] += 1
        return await self._next_push()

    async def watch_trades(self, symbol):
        self.calls["watch_trades"] += 1
        return await self._next_push()

    async def watch_order_book(self, symbol):
        self.calls["watch_order_book"] += 1
        return await self._next_push()

    async def watch_order_book_for_symbols(self, symbols):
        self.calls["watch_order_book_for_symbols"] += 1
        book = await self._next_push()
        return {symbols[0]: book}

    async def close(self) -> None:
        self.closed = True


class FakeClientFactory:
    """ClientFactory that hands out FakeClients and remembers every call."""

    def __init__(self, capabilities: Capabilities = PUSH_ALL) -> None:
        self.capabilities = capabilities
        self.created: list[tuple[str, str, object, FakeClient]] = []
        self.error: Exception | None = None

    def __call__(self, exchange, provider, account=None) -> FakeClient:
        if self.error:
            raise self.error
        client = FakeClient(self.capabilities)
        client.provider = provider
        self.created.append((exchange, provider.id, account, client))
        return client

    @property
    def last(self) -> FakeClient:
        return self.created[-1][3]


def active_tasks(service: MarketDataService) -> int:
    """Live feed tasks attached to subscriptions (push loops + poll loops)."""
    return sum(
        1
        for entry in service.registry._entries.values()
        if entry.task is not None and not entry.task.done()
    )


async def wait_until(predicate, timeout: float = 1.0, step: float = 0.005) -> None:
    """Yield to the event loop until ``predicate()`` is true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(step)


@pytest.fixture
def fast_settings() -> FeedSettings:
    return FeedSettings(
        poll_intervals={
            DataKind.CANDLES: 0.02,
            DataKind.TRADES: 0.02,
            DataKind.ORDER_BOOK: 0.02,
        },
        settle_delay=0.01,
    )


@pytest.fixture
def wildcard_provider() -> Provider:
    return Provider(id="all", name="All exchanges", exchanges=("*",), priority=10)


@pytest.fixture
def client_factory() -> FakeClientFactory:
    return FakeClientFactory()


@pytest.fixture
def make_service(fast_settings, wildcard_provider):
    """Build a MarketDataService around a FakeClientFactory."""

    def _make(factory: FakeClientFactory | None = None, providers=None, **kwargs) -> MarketDataService:
        return MarketDataService(
            client_factory=factory or FakeClientFactory(),
            providers=ProviderRegistry(providers if providers is not None else [wildcard_provider]),
            settings=fast_settings,
            **kwargs,
        )

    return _make


@pytest.fixture
def fakes():
    """Helpers for tests that need to build data or wait on the loop."""

    class _Fakes:
        candle = staticmethod(make_candle)
        trade = staticmethod(make_trade)
        book = staticmethod(make_book)
        wait_until = staticmethod(wait_until)
        active_tasks = staticmethod(active_tasks)

    return _Fakes
