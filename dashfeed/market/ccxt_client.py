"""ccxt / ccxt.pro connectivity client for real exchange data."""

from __future__ import annotations

import logging
from typing import Any

from .errors import ClientUnavailableError
from .interface import Capabilities, ConnectivityClient
from .models import Candle, ExchangeAccount, OrderBook, Provider, ProviderType, Trade

logger = logging.getLogger(__name__)


def build_client_config(provider: Provider, account: ExchangeAccount | None = None) -> dict[str, Any]:
    """ccxt constructor options for ``provider``, with user credentials if given."""
    config: dict[str, Any] = {
        "enableRateLimit": True,
        "timeout": int(provider.config.timeout * 1000),
        "options": dict(provider.config.options),
    }
    if account is not None:
        config.update(account.to_client_config())
    return config


class CcxtClient(ConnectivityClient):
    """ConnectivityClient backed by a ccxt.pro exchange instance.

    ccxt.pro classes extend the REST classes, so one instance serves both
    the watch_* streams and the fetch_* polls. Capabilities come straight
    from the exchange's ``has`` table.
    """

    def __init__(self, exchange_id: str, config: dict[str, Any], sandbox: bool = False) -> None:
        # Lazy import: ccxt is only needed when talking to real exchanges
        import ccxt.pro as ccxtpro

        exchange_class = getattr(ccxtpro, exchange_id, None)
        if exchange_class is None:
            raise ClientUnavailableError(f"Exchange {exchange_id!r} not found in ccxt.pro")

        self.exchange_id = exchange_id
        self._exchange = exchange_class(config)
        if sandbox:
            self._exchange.set_sandbox_mode(True)

    @property
    def capabilities(self) -> Capabilities:
        return Capabilities.from_has(self._exchange.has)

    async def load_markets(self) -> None:
        markets = await self._exchange.load_markets()
        logger.info("%s markets loaded (%d symbols)", self.exchange_id, len(markets or {}))

    async def fetch_ohlcv(self, symbol: str, timeframe: str, limit: int = 100) -> list[Candle]:
        rows = await self._exchange.fetch_ohlcv(symbol, timeframe, None, limit)
        return [Candle.from_ohlcv(row) for row in rows or []]

    async def fetch_trades(self, symbol: str, limit: int = 100) -> list[Trade]:
        trades = await self._exchange.fetch_trades(symbol, None, limit)
        return [Trade.from_ccxt(t) for t in trades or []]

    async def fetch_order_book(self, symbol: str) -> OrderBook:
        book = await self._exchange.fetch_order_book(symbol)
        return OrderBook.from_ccxt(book, symbol=symbol)

    async def watch_ohlcv(self, symbol: str, timeframe: str) -> list[Candle]:
        rows = await self._exchange.watch_ohlcv(symbol, timeframe)
        return [Candle.from_ohlcv(row) for row in rows or []]

    async def watch_trades(self, symbol: str) -> list[Trade]:
        trades = await self._exchange.watch_trades(symbol)
        return [Trade.from_ccxt(t) for t in trades or []]

    async def watch_order_book(self, symbol: str) -> OrderBook:
        book = await self._exchange.watch_order_book(symbol)
        return OrderBook.from_ccxt(book, symbol=symbol)

    async def watch_order_book_for_symbols(self, symbols: list[str]) -> dict[str, OrderBook]:
        # ccxt resolves with the book of whichever symbol just changed
        book = await self._exchange.watch_order_book_for_symbols(symbols)
        symbol = book.get("symbol") or symbols[0]
        return {symbol: OrderBook.from_ccxt(book, symbol=symbol)}

    async def close(self) -> None:
        await self._exchange.close()


def create_ccxt_client(
    exchange: str, provider: Provider, account: ExchangeAccount | None = None
) -> CcxtClient:
    """ClientFactory for in-process ccxt clients."""
    if provider.type is not ProviderType.LOCAL:
        raise ClientUnavailableError(
            f"Provider {provider.id!r} of type {provider.type.value} is not served by ccxt"
        )
    return CcxtClient(
        exchange_id=exchange,
        config=build_client_config(provider, account),
        sandbox=provider.config.sandbox,
    )
