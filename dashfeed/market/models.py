"""Data models for market data and subscription bookkeeping."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class DataKind(str, Enum):
    """Kind of market data a feed delivers."""

    CANDLES = "candles"
    TRADES = "trades"
    ORDER_BOOK = "orderbook"


class TransportMethod(str, Enum):
    """How a feed receives data: streaming (push) or polling (pull)."""

    PUSH = "push"
    PULL = "pull"


class ChartUpdateType(str, Enum):
    INITIAL_LOAD = "initial_load"
    NEW_CANDLES = "new_candles"
    UPDATE_LAST_CANDLE = "update_last_candle"


class ProviderType(str, Enum):
    LOCAL = "local"  # client runs in this process
    SERVER = "server"  # client proxies through a remote server
    CUSTOM = "custom"


class ProviderStatus(str, Enum):
    CONNECTED = "connected"
    CONNECTING = "connecting"
    DISCONNECTED = "disconnected"
    ERROR = "error"


DEFAULT_MARKET = "spot"
DEFAULT_TIMEFRAME = "1m"
ALL_EXCHANGES = "*"

_TIMEFRAME_UNITS_MS = {
    "s": 1_000,
    "m": 60_000,
    "h": 3_600_000,
    "d": 86_400_000,
    "w": 604_800_000,
    "M": 2_592_000_000,  # 30 days, matches ccxt
}


def timeframe_to_ms(timeframe: str) -> int:
    """Convert a timeframe like '1m', '4h' or '1M' to milliseconds."""
    amount, unit = timeframe[:-1], timeframe[-1]
    if unit not in _TIMEFRAME_UNITS_MS or not amount.isdigit():
        raise ValueError(f"Unsupported timeframe: {timeframe!r}")
    return int(amount) * _TIMEFRAME_UNITS_MS[unit]


@dataclass(frozen=True, slots=True)
class SubscriptionKey:
    """Canonical identity of one logical data feed.

    The timeframe only exists for candle feeds. Exchange and symbol are
    normalized so that logically identical requests always encode to the
    same string.
    """

    exchange: str
    market: str
    symbol: str
    kind: DataKind
    timeframe: str | None = None

    def __post_init__(self) -> None:
        kind = DataKind(self.kind)
        object.__setattr__(self, "kind", kind)
        object.__setattr__(self, "exchange", self.exchange.strip().lower())
        object.__setattr__(self, "symbol", self.symbol.strip().upper())
        object.__setattr__(self, "market", (self.market or DEFAULT_MARKET).strip().lower())
        if kind is DataKind.CANDLES:
            object.__setattr__(self, "timeframe", self.timeframe or DEFAULT_TIMEFRAME)
        else:
            object.__setattr__(self, "timeframe", None)

    @classmethod
    def create(
        cls,
        exchange: str,
        market: str | None,
        symbol: str,
        kind: DataKind | str,
        timeframe: str | None = None,
    ) -> SubscriptionKey:
        return cls(
            exchange=exchange,
            market=market or DEFAULT_MARKET,
            symbol=symbol,
            kind=DataKind(kind),
            timeframe=timeframe,
        )

    def encode(self) -> str:
        """Canonical string form, the primary mapping key everywhere."""
        parts = [self.exchange, self.market, self.symbol, self.kind.value]
        if self.timeframe is not None:
            parts.append(self.timeframe)
        return ":".join(parts)

    def __str__(self) -> str:
        return self.encode()


@dataclass(frozen=True, slots=True)
class Candle:
    """One OHLCV bar. Timestamp is the bar open time in Unix milliseconds."""

    timestamp: int
    open: float
    high: float
    low: float
    close: float
    volume: float

    @classmethod
    def from_ohlcv(cls, row: list | tuple) -> Candle:
        """Build from a ccxt-style [timestamp, open, high, low, close, volume] row."""
        ts, o, h, low, c, v = row[:6]
        return cls(
            timestamp=int(ts),
            open=float(o),
            high=float(h),
            low=float(low),
            close=float(c),
            volume=float(v or 0.0),
        )

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
        }


@dataclass(frozen=True, slots=True)
class Trade:
    id: str
    timestamp: int
    price: float
    amount: float
    side: str

    @classmethod
    def from_ccxt(cls, raw: dict[str, Any]) -> Trade:
        return cls(
            id=str(raw.get("id") or ""),
            timestamp=int(raw.get("timestamp") or 0),
            price=float(raw["price"]),
            amount=float(raw["amount"]),
            side=str(raw.get("side") or ""),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "price": self.price,
            "amount": self.amount,
            "side": self.side,
        }


@dataclass(frozen=True, slots=True)
class OrderBookLevel:
    price: float
    amount: float


@dataclass(frozen=True, slots=True)
class OrderBook:
    """Full order-book snapshot. Bids descending, asks ascending."""

    symbol: str
    timestamp: int
    bids: tuple[OrderBookLevel, ...] = ()
    asks: tuple[OrderBookLevel, ...] = ()

    @classmethod
    def from_ccxt(cls, raw: dict[str, Any], symbol: str | None = None) -> OrderBook:
        def levels(rows: list) -> tuple[OrderBookLevel, ...]:
            return tuple(OrderBookLevel(price=float(r[0]), amount=float(r[1])) for r in rows or ())

        return cls(
            symbol=str(raw.get("symbol") or symbol or ""),
            timestamp=int(raw.get("timestamp") or time.time() * 1000),
            bids=levels(raw.get("bids", [])),
            asks=levels(raw.get("asks", [])),
        )

    @property
    def best_bid(self) -> OrderBookLevel | None:
        return self.bids[0] if self.bids else None

    @property
    def best_ask(self) -> OrderBookLevel | None:
        return self.asks[0] if self.asks else None

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "timestamp": self.timestamp,
            "bids": [[lvl.price, lvl.amount] for lvl in self.bids],
            "asks": [[lvl.price, lvl.amount] for lvl in self.asks],
        }


@dataclass(frozen=True, slots=True)
class ProviderConfig:
    """Type-specific connection settings for a provider."""

    sandbox: bool = False
    server_url: str | None = None
    timeout: float = 30.0
    options: dict[str, Any] = field(default_factory=dict)
    credentials_ref: str | None = None


@dataclass(frozen=True, slots=True)
class Provider:
    """A configured connectivity endpoint serving one or more exchanges."""

    id: str
    name: str
    type: ProviderType = ProviderType.LOCAL
    exchanges: tuple[str, ...] = (ALL_EXCHANGES,)
    priority: int = 10
    enabled: bool = True
    status: ProviderStatus = ProviderStatus.CONNECTED
    config: ProviderConfig = field(default_factory=ProviderConfig)

    def __post_init__(self) -> None:
        object.__setattr__(self, "exchanges", tuple(e.strip().lower() for e in self.exchanges))

    @property
    def is_wildcard(self) -> bool:
        return ALL_EXCHANGES in self.exchanges

    def supports(self, exchange: str) -> bool:
        return self.is_wildcard or exchange.lower() in self.exchanges

    @property
    def mode(self) -> str:
        return "sandbox" if self.config.sandbox else "live"


@dataclass(frozen=True, slots=True)
class ExchangeAccount:
    """User credentials for one exchange, supplied by the account store."""

    exchange: str
    api_key: str
    secret: str
    password: str | None = None
    uid: str | None = None

    def to_client_config(self) -> dict[str, str]:
        config = {"apiKey": self.api_key, "secret": self.secret}
        if self.password:
            config["password"] = self.password
        if self.uid:
            config["uid"] = self.uid
        return config


@dataclass(frozen=True, slots=True)
class ProviderMapping:
    exchange: str
    provider: Provider
    account: ExchangeAccount | None = None


@dataclass(frozen=True, slots=True)
class ProviderOperationResult:
    success: bool
    error: str | None = None


@dataclass(frozen=True, slots=True)
class SubscribeResult:
    success: bool
    error: str | None = None


@dataclass(frozen=True, slots=True)
class SubscriptionInfo:
    """Read-only snapshot of a subscription entry for diagnostics."""

    key: SubscriptionKey
    subscriber_count: int
    method: TransportMethod
    is_fallback: bool
    is_active: bool
    last_update: float
    client_method: str | None = None

    def to_dict(self) -> dict:
        return {
            "key": self.key.encode(),
            "exchange": self.key.exchange,
            "market": self.key.market,
            "symbol": self.key.symbol,
            "kind": self.key.kind.value,
            "timeframe": self.key.timeframe,
            "subscriber_count": self.subscriber_count,
            "method": self.method.value,
            "is_fallback": self.is_fallback,
            "is_active": self.is_active,
            "last_update": self.last_update,
            "client_method": self.client_method,
        }


@dataclass(frozen=True, slots=True)
class ChartUpdateEvent:
    """Produced once per successful candle merge. Never replayed."""

    type: ChartUpdateType
    exchange: str
    market: str
    symbol: str
    timeframe: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)  # Unix seconds

    @property
    def key(self) -> SubscriptionKey:
        return SubscriptionKey(
            exchange=self.exchange,
            market=self.market,
            symbol=self.symbol,
            kind=DataKind.CANDLES,
            timeframe=self.timeframe,
        )

    def to_dict(self) -> dict:
        data: dict[str, Any] = {}
        for name, value in self.data.items():
            if isinstance(value, Candle):
                data[name] = value.to_dict()
            elif isinstance(value, list):
                data[name] = [c.to_dict() if isinstance(c, Candle) else c for c in value]
            else:
                data[name] = value
        return {
            "type": self.type.value,
            "exchange": self.exchange,
            "market": self.market,
            "symbol": self.symbol,
            "timeframe": self.timeframe,
            "data": data,
            "timestamp": self.timestamp,
        }
