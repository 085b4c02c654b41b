"""Market data subsystem for dashfeed.

Public API:
    MarketDataService   - Subscribe/unsubscribe facade with start()/stop() lifecycle
    create_market_data_service - Factory that picks the simulator or ccxt client
    SubscriptionKey     - Canonical identity of one data feed
    Provider            - Configured connectivity endpoint
    ProviderRegistry    - Resolves which provider serves an exchange
    ConnectivityClient  - Abstract interface for exchange clients
    FeedSettings        - Transport preference and timing knobs
    create_stream_router - FastAPI router factory for the SSE endpoint
"""

from .config import FeedSettings
from .errors import (
    ClientUnavailableError,
    ConfigurationError,
    FeedError,
    ProviderNotFoundError,
)
from .factory import create_market_data_service
from .interface import Capabilities, ConnectivityClient
from .models import (
    Candle,
    ChartUpdateEvent,
    ChartUpdateType,
    DataKind,
    OrderBook,
    Provider,
    ProviderConfig,
    ProviderType,
    SubscriptionKey,
    Trade,
    TransportMethod,
)
from .providers import ProviderRegistry
from .service import MarketDataService
from .stream import create_stream_router

__all__ = [
    "Candle",
    "Capabilities",
    "ChartUpdateEvent",
    "ChartUpdateType",
    "ClientUnavailableError",
    "ConfigurationError",
    "ConnectivityClient",
    "DataKind",
    "FeedError",
    "FeedSettings",
    "MarketDataService",
    "OrderBook",
    "Provider",
    "ProviderConfig",
    "ProviderNotFoundError",
    "ProviderRegistry",
    "ProviderType",
    "SubscriptionKey",
    "Trade",
    "TransportMethod",
    "create_market_data_service",
    "create_stream_router",
]
