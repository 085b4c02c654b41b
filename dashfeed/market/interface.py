"""Abstract interface for exchange connectivity clients."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum

from .models import Candle, DataKind, ExchangeAccount, OrderBook, Provider, Trade


class ClientMethod(str, Enum):
    """Client operations the orchestrator can drive a feed with."""

    WATCH_OHLCV = "watch_ohlcv"
    WATCH_TRADES = "watch_trades"
    WATCH_ORDER_BOOK_FOR_SYMBOLS = "watch_order_book_for_symbols"
    WATCH_ORDER_BOOK = "watch_order_book"
    FETCH_OHLCV = "fetch_ohlcv"
    FETCH_TRADES = "fetch_trades"
    FETCH_ORDER_BOOK = "fetch_order_book"

    @property
    def is_push(self) -> bool:
        return self.value.startswith("watch_")


PULL_METHODS: dict[DataKind, ClientMethod] = {
    DataKind.CANDLES: ClientMethod.FETCH_OHLCV,
    DataKind.TRADES: ClientMethod.FETCH_TRADES,
    DataKind.ORDER_BOOK: ClientMethod.FETCH_ORDER_BOOK,
}


@dataclass(frozen=True, slots=True)
class Capabilities:
    """Which operations a client declares support for."""

    watch_ohlcv: bool = False
    watch_trades: bool = False
    watch_order_book_for_symbols: bool = False
    watch_order_book: bool = False
    fetch_ohlcv: bool = True
    fetch_trades: bool = True
    fetch_order_book: bool = True

    @classmethod
    def from_has(cls, has: Mapping[str, object]) -> Capabilities:
        """Build from a ccxt-style ``has`` mapping (camelCase keys, truthy values)."""

        def flag(name: str) -> bool:
            return bool(has.get(name))

        return cls(
            watch_ohlcv=flag("watchOHLCV"),
            watch_trades=flag("watchTrades"),
            watch_order_book_for_symbols=flag("watchOrderBookForSymbols"),
            watch_order_book=flag("watchOrderBook"),
            fetch_ohlcv=flag("fetchOHLCV"),
            fetch_trades=flag("fetchTrades"),
            fetch_order_book=flag("fetchOrderBook"),
        )

    def supports(self, method: ClientMethod) -> bool:
        return bool(getattr(self, method.value))


@dataclass(frozen=True, slots=True)
class OrderBookMethodSelection:
    method: ClientMethod
    reason: str
    is_optimal: bool


def select_order_book_method(capabilities: Capabilities) -> OrderBookMethodSelection:
    """Pick the best order-book operation the client supports.

    Ranking: multi-symbol diff streaming, then single-symbol snapshot
    streaming, then a pull snapshot.
    """
    if capabilities.watch_order_book_for_symbols:
        return OrderBookMethodSelection(
            method=ClientMethod.WATCH_ORDER_BOOK_FOR_SYMBOLS,
            reason="incremental diff stream for multiple symbols",
            is_optimal=True,
        )
    if capabilities.watch_order_book:
        return OrderBookMethodSelection(
            method=ClientMethod.WATCH_ORDER_BOOK,
            reason="full snapshot stream",
            is_optimal=True,
        )
    return OrderBookMethodSelection(
        method=ClientMethod.FETCH_ORDER_BOOK,
        reason="no streaming support, polling snapshots",
        is_optimal=False,
    )


def select_push_method(kind: DataKind, capabilities: Capabilities) -> ClientMethod | None:
    """Streaming operation for ``kind``, or None when the client cannot stream it."""
    if kind is DataKind.CANDLES:
        return ClientMethod.WATCH_OHLCV if capabilities.watch_ohlcv else None
    if kind is DataKind.TRADES:
        return ClientMethod.WATCH_TRADES if capabilities.watch_trades else None
    method = select_order_book_method(capabilities).method
    return method if method.is_push else None


class ConnectivityClient(ABC):
    """Contract for an exchange connectivity client.

    The orchestrator only talks to this interface, never to a concrete
    library object. Watch methods block until the next pushed payload
    arrives and raise on transport failure.

    Lifecycle:
        client = factory(exchange, provider, account)
        await client.load_markets()     # once, by the client pool
        candles = await client.fetch_ohlcv("BTC/USDT", "1m", limit=100)
        candles = await client.watch_ohlcv("BTC/USDT", "1m")
        # ... pool eviction / shutdown ...
        await client.close()
    """

    @property
    @abstractmethod
    def capabilities(self) -> Capabilities:
        """Declared capability flags."""

    @abstractmethod
    async def load_markets(self) -> None:
        """Expensive one-time setup (instrument metadata)."""

    @abstractmethod
    async def fetch_ohlcv(self, symbol: str, timeframe: str, limit: int = 100) -> list[Candle]:
        """Most recent ``limit`` candles, ascending by timestamp."""

    @abstractmethod
    async def fetch_trades(self, symbol: str, limit: int = 100) -> list[Trade]:
        """Most recent public trades."""

    @abstractmethod
    async def fetch_order_book(self, symbol: str) -> OrderBook:
        """Current order-book snapshot."""

    async def watch_ohlcv(self, symbol: str, timeframe: str) -> list[Candle]:
        raise NotImplementedError("watch_ohlcv")

    async def watch_trades(self, symbol: str) -> list[Trade]:
        raise NotImplementedError("watch_trades")

    async def watch_order_book(self, symbol: str) -> OrderBook:
        raise NotImplementedError("watch_order_book")

    async def watch_order_book_for_symbols(self, symbols: list[str]) -> dict[str, OrderBook]:
        """Order books keyed by symbol, already diff-applied by the client."""
        raise NotImplementedError("watch_order_book_for_symbols")

    async def close(self) -> None:
        """Release network resources. Safe to call multiple times."""


ClientFactory = Callable[[str, Provider, ExchangeAccount | None], ConnectivityClient]
AccountLookup = Callable[[str], ExchangeAccount | None]
