"""Canonical in-memory store of the latest market data per feed."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from threading import Lock

from .config import TRADE_BUFFER_SIZE
from .events import ChartEventHub
from .models import (
    DEFAULT_MARKET,
    DEFAULT_TIMEFRAME,
    Candle,
    ChartUpdateEvent,
    ChartUpdateType,
    DataKind,
    OrderBook,
    SubscriptionKey,
    Trade,
)

logger = logging.getLogger(__name__)

MergeHook = Callable[[SubscriptionKey], None]


class MarketDataStore:
    """Single owner of candles, trades and order books.

    Layout is exchange -> market -> symbol (-> timeframe for candles).
    Writers: the fetch orchestrator, through the ``update_*`` methods only.
    Readers: get copies, never the stored containers.

    Merge rules:
      - candles: first batch becomes the series; later batches merge by
        timestamp (incoming wins) and are re-sorted ascending
      - trades: appended, only the newest ``trade_buffer`` kept, no dedup
      - order book: replaced wholesale
    """

    def __init__(
        self,
        hub: ChartEventHub | None = None,
        on_merge: MergeHook | None = None,
        trade_buffer: int = TRADE_BUFFER_SIZE,
    ) -> None:
        self._hub = hub
        self._on_merge = on_merge
        self._trade_buffer = trade_buffer
        self._candles: dict[str, dict[str, dict[str, dict[str, list[Candle]]]]] = {}
        self._trades: dict[str, dict[str, dict[str, list[Trade]]]] = {}
        self._order_books: dict[str, dict[str, dict[str, OrderBook]]] = {}
        self._lock = Lock()
        self._version: int = 0  # bumped on every merge

    def set_merge_hook(self, on_merge: MergeHook | None) -> None:
        self._on_merge = on_merge

    # --- Writers ---

    def update_candles(self, key: SubscriptionKey, candles: Iterable[Candle]) -> ChartUpdateType | None:
        """Merge a candle batch and return how the series changed.

        Returns None (and emits nothing) for an empty batch. When a batch both
        revises the old last bar and adds newer ones, it counts as new candles.
        """
        self._check_kind(key, DataKind.CANDLES)
        batch = list(candles)
        if not batch:
            return None

        with self._lock:
            by_symbol = self._candles.setdefault(key.exchange, {}).setdefault(key.market, {})
            by_timeframe = by_symbol.setdefault(key.symbol, {})
            existing = by_timeframe.get(key.timeframe)

            if not existing:
                series = _merge_by_timestamp([], batch)
                update_type = ChartUpdateType.INITIAL_LOAD
                data: dict = {"total_candles": len(series)}
            else:
                previous_last = existing[-1].timestamp
                series = _merge_by_timestamp(existing, batch)
                newer = sorted(
                    {c.timestamp: c for c in batch if c.timestamp > previous_last}.values(),
                    key=lambda c: c.timestamp,
                )
                if newer:
                    update_type = ChartUpdateType.NEW_CANDLES
                    data = {
                        "new_candles": newer,
                        "new_candles_count": len(newer),
                        "total_candles": len(series),
                    }
                else:
                    update_type = ChartUpdateType.UPDATE_LAST_CANDLE
                    data = {"last_candle": series[-1], "total_candles": len(series)}

            by_timeframe[key.timeframe] = series
            self._version += 1

        logger.debug("Candles %s: %s (%d total)", key, update_type.value, len(series))
        self._after_merge(key)
        if self._hub is not None:
            self._hub.emit(
                ChartUpdateEvent(
                    type=update_type,
                    exchange=key.exchange,
                    market=key.market,
                    symbol=key.symbol,
                    timeframe=key.timeframe,
                    data=data,
                )
            )
        return update_type

    def update_trades(self, key: SubscriptionKey, trades: Iterable[Trade]) -> int:
        """Append trades, keeping the newest ``trade_buffer``. Returns the stored count."""
        self._check_kind(key, DataKind.TRADES)
        batch = list(trades)
        if not batch:
            return len(self.get_trades(key.exchange, key.symbol, key.market))

        with self._lock:
            by_symbol = self._trades.setdefault(key.exchange, {}).setdefault(key.market, {})
            combined = by_symbol.get(key.symbol, []) + batch
            by_symbol[key.symbol] = combined[-self._trade_buffer :]
            stored = len(by_symbol[key.symbol])
            self._version += 1

        self._after_merge(key)
        return stored

    def update_order_book(self, key: SubscriptionKey, order_book: OrderBook) -> None:
        """Replace the stored snapshot."""
        self._check_kind(key, DataKind.ORDER_BOOK)
        with self._lock:
            by_symbol = self._order_books.setdefault(key.exchange, {}).setdefault(key.market, {})
            by_symbol[key.symbol] = order_book
            self._version += 1

        self._after_merge(key)

    # --- Readers ---

    def get_candles(
        self,
        exchange: str,
        symbol: str,
        market: str = DEFAULT_MARKET,
        timeframe: str = DEFAULT_TIMEFRAME,
    ) -> list[Candle]:
        key = SubscriptionKey.create(exchange, market, symbol, DataKind.CANDLES, timeframe)
        with self._lock:
            series = (
                self._candles.get(key.exchange, {})
                .get(key.market, {})
                .get(key.symbol, {})
                .get(key.timeframe, [])
            )
            return list(series)

    def get_trades(self, exchange: str, symbol: str, market: str = DEFAULT_MARKET) -> list[Trade]:
        key = SubscriptionKey.create(exchange, market, symbol, DataKind.TRADES)
        with self._lock:
            return list(self._trades.get(key.exchange, {}).get(key.market, {}).get(key.symbol, []))

    def get_order_book(
        self, exchange: str, symbol: str, market: str = DEFAULT_MARKET
    ) -> OrderBook | None:
        key = SubscriptionKey.create(exchange, market, symbol, DataKind.ORDER_BOOK)
        with self._lock:
            return self._order_books.get(key.exchange, {}).get(key.market, {}).get(key.symbol)

    @property
    def version(self) -> int:
        """Monotonic merge counter, useful for change detection."""
        return self._version

    def clear(self) -> None:
        with self._lock:
            self._candles.clear()
            self._trades.clear()
            self._order_books.clear()
            self._version += 1

    # --- Internals ---

    def _after_merge(self, key: SubscriptionKey) -> None:
        if self._on_merge is None:
            return
        try:
            self._on_merge(key)
        except Exception:
            logger.exception("Merge hook failed for %s", key)

    @staticmethod
    def _check_kind(key: SubscriptionKey, kind: DataKind) -> None:
        if key.kind is not kind:
            raise ValueError(f"Expected a {kind.value} key, got {key}")


def _merge_by_timestamp(existing: list[Candle], incoming: list[Candle]) -> list[Candle]:
    merged = {c.timestamp: c for c in existing}
    for candle in incoming:
        merged[candle.timestamp] = candle
    return [merged[ts] for ts in sorted(merged)]
