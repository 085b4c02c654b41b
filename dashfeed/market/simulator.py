"""GBM-based exchange simulator implementing the connectivity client interface."""

from __future__ import annotations

import asyncio
import itertools
import logging
import math
import random
import time

import numpy as np

from .errors import TransportError
from .interface import Capabilities, ConnectivityClient
from .models import Candle, OrderBook, OrderBookLevel, Trade, timeframe_to_ms
from .seed_prices import DEFAULT_PARAMS, SECONDS_PER_YEAR, SEED_PRICES, SYMBOL_PARAMS

logger = logging.getLogger(__name__)

# Streams everything, so the push path is exercised without a real exchange
FULL_CAPABILITIES = Capabilities(
    watch_ohlcv=True,
    watch_trades=True,
    watch_order_book_for_symbols=True,
    watch_order_book=True,
)


class GBMSimulator:
    """Geometric Brownian Motion price paths, one per symbol.

    Math:
        S(t+dt) = S(t) * exp((mu - sigma^2/2) * dt + sigma * sqrt(dt) * Z)

    Where dt is the elapsed time as a fraction of a (24/7) year and Z is a
    standard normal draw. A rare random shock of 2-5% models news events.
    """

    def __init__(self, event_probability: float = 0.001, seed: int | None = None) -> None:
        self._event_prob = event_probability
        self._rng = np.random.default_rng(seed)
        self._prices: dict[str, float] = {}
        self._params: dict[str, dict[str, float]] = {}

    @property
    def rng(self) -> np.random.Generator:
        return self._rng

    def add_symbol(self, symbol: str) -> None:
        if symbol in self._prices:
            return
        self._prices[symbol] = SEED_PRICES.get(symbol, float(self._rng.uniform(1.0, 500.0)))
        self._params[symbol] = SYMBOL_PARAMS.get(symbol, dict(DEFAULT_PARAMS))

    def get_price(self, symbol: str) -> float | None:
        return self._prices.get(symbol)

    def step(self, symbol: str, seconds: float) -> float:
        """Advance ``symbol`` by ``seconds`` of simulated time and return the new price."""
        self.add_symbol(symbol)
        params = self._params[symbol]
        dt = max(seconds, 1e-3) / SECONDS_PER_YEAR
        drift = (params["mu"] - 0.5 * params["sigma"] ** 2) * dt
        diffusion = params["sigma"] * math.sqrt(dt) * float(self._rng.standard_normal())
        price = self._prices[symbol] * math.exp(drift + diffusion)

        if random.random() < self._event_prob:
            shock = random.uniform(0.02, 0.05) * random.choice([-1, 1])
            price *= 1 + shock
            logger.debug("Random event on %s: %.1f%%", symbol, shock * 100)

        self._prices[symbol] = price
        return price

    def history(self, symbol: str, count: int, seconds: float) -> np.ndarray:
        """``count`` past closes spaced ``seconds`` apart, ending at the current price."""
        self.add_symbol(symbol)
        params = self._params[symbol]
        dt = seconds / SECONDS_PER_YEAR
        log_returns = (params["mu"] - 0.5 * params["sigma"] ** 2) * dt + params[
            "sigma"
        ] * math.sqrt(dt) * self._rng.standard_normal(max(count - 1, 0))
        # Walk backwards from the current price
        offsets = np.concatenate(([0.0], np.cumsum(log_returns[::-1])))
        return (self._prices[symbol] * np.exp(-offsets))[::-1]


class SimulatedExchangeClient(ConnectivityClient):
    """ConnectivityClient backed by GBMSimulator.

    Watch methods sleep ``tick_interval`` seconds, advance the price and
    return the new state, mimicking a streaming exchange. Capabilities are
    configurable so tests and demos can exercise the polling fallback.
    """

    def __init__(
        self,
        exchange: str,
        capabilities: Capabilities = FULL_CAPABILITIES,
        tick_interval: float = 1.0,
        event_probability: float = 0.001,
        seed: int | None = None,
    ) -> None:
        self.exchange = exchange
        self._capabilities = capabilities
        self._tick = tick_interval
        self._sim = GBMSimulator(event_probability=event_probability, seed=seed)
        self._bars: dict[tuple[str, str], list[Candle]] = {}
        self._trade_ids = itertools.count(1)
        self._markets_loaded = False
        self._closed = False

    @property
    def capabilities(self) -> Capabilities:
        return self._capabilities

    async def load_markets(self) -> None:
        await asyncio.sleep(0)
        self._markets_loaded = True
        logger.info("Simulator %s: markets loaded", self.exchange)

    async def fetch_ohlcv(self, symbol: str, timeframe: str, limit: int = 100) -> list[Candle]:
        self._check_open()
        bars = self._series(symbol, timeframe, limit)
        self._advance_bar(symbol, timeframe, self._tick)
        return list(bars[-limit:])

    async def watch_ohlcv(self, symbol: str, timeframe: str) -> list[Candle]:
        await self._wait_tick()
        self._series(symbol, timeframe, 1)
        return [self._advance_bar(symbol, timeframe, self._tick)]

    async def fetch_trades(self, symbol: str, limit: int = 100) -> list[Trade]:
        self._check_open()
        return self._make_trades(symbol, min(limit, 5))

    async def watch_trades(self, symbol: str) -> list[Trade]:
        await self._wait_tick()
        return self._make_trades(symbol, random.randint(1, 3))

    async def fetch_order_book(self, symbol: str) -> OrderBook:
        self._check_open()
        return self._make_book(symbol)

    async def watch_order_book(self, symbol: str) -> OrderBook:
        await self._wait_tick()
        return self._make_book(symbol)

    async def watch_order_book_for_symbols(self, symbols: list[str]) -> dict[str, OrderBook]:
        await self._wait_tick()
        return {symbol: self._make_book(symbol) for symbol in symbols}

    async def close(self) -> None:
        self._closed = True

    # --- Internals ---

    def _check_open(self) -> None:
        if self._closed:
            raise TransportError(f"Simulator {self.exchange} is closed")

    async def _wait_tick(self) -> None:
        self._check_open()
        await asyncio.sleep(self._tick)
        self._check_open()

    def _series(self, symbol: str, timeframe: str, limit: int) -> list[Candle]:
        """Candle history for (symbol, timeframe), generated on first use."""
        bars = self._bars.get((symbol, timeframe))
        if bars is not None and len(bars) >= limit:
            return bars

        bar_ms = timeframe_to_ms(timeframe)
        now_ms = int(time.time() * 1000)
        first_open = (now_ms // bar_ms - (limit - 1)) * bar_ms
        closes = self._sim.history(symbol, limit, bar_ms / 1000)
        bars = []
        previous = float(closes[0])
        for i, close in enumerate(closes):
            close = float(close)
            bars.append(self._bar(first_open + i * bar_ms, previous, close))
            previous = close
        self._bars[(symbol, timeframe)] = bars
        return bars

    def _advance_bar(self, symbol: str, timeframe: str, seconds: float) -> Candle:
        """Move the price forward and fold it into the current (or a new) bar."""
        bars = self._bars[(symbol, timeframe)]
        bar_ms = timeframe_to_ms(timeframe)
        price = self._sim.step(symbol, seconds)
        bar_open = int(time.time() * 1000) // bar_ms * bar_ms
        last = bars[-1]
        if bar_open > last.timestamp:
            bar = self._bar(bar_open, last.close, price)
            bars.append(bar)
        else:
            bar = Candle(
                timestamp=last.timestamp,
                open=last.open,
                high=max(last.high, price),
                low=min(last.low, price),
                close=price,
                volume=last.volume + float(self._sim.rng.gamma(2.0, 0.5)),
            )
            bars[-1] = bar
        return bar

    def _bar(self, timestamp: int, open_: float, close: float) -> Candle:
        wiggle = abs(float(self._sim.rng.normal(0, 0.001)))
        return Candle(
            timestamp=timestamp,
            open=open_,
            high=max(open_, close) * (1 + wiggle),
            low=min(open_, close) * (1 - wiggle),
            close=close,
            volume=float(self._sim.rng.gamma(2.0, 5.0)),
        )

    def _make_trades(self, symbol: str, count: int) -> list[Trade]:
        price = self._sim.step(symbol, self._tick)
        now_ms = int(time.time() * 1000)
        return [
            Trade(
                id=str(next(self._trade_ids)),
                timestamp=now_ms,
                price=price * (1 + float(self._sim.rng.normal(0, 0.0002))),
                amount=round(float(self._sim.rng.exponential(0.5)), 6),
                side=random.choice(["buy", "sell"]),
            )
            for _ in range(count)
        ]

    def _make_book(self, symbol: str, depth: int = 20) -> OrderBook:
        mid = self._sim.step(symbol, self._tick)
        spread = mid * 0.0001
        steps = np.arange(depth) * spread
        amounts = self._sim.rng.exponential(1.0, size=(2, depth))
        return OrderBook(
            symbol=symbol,
            timestamp=int(time.time() * 1000),
            bids=tuple(
                OrderBookLevel(price=mid - spread / 2 - s, amount=float(a))
                for s, a in zip(steps, amounts[0])
            ),
            asks=tuple(
                OrderBookLevel(price=mid + spread / 2 + s, amount=float(a))
                for s, a in zip(steps, amounts[1])
            ),
        )
