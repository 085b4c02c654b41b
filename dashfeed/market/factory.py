"""Factory for creating the market data service."""

from __future__ import annotations

import logging
import os

from .config import FeedSettings
from .interface import AccountLookup, ClientFactory
from .models import ExchangeAccount, Provider
from .providers import ProviderRegistry
from .service import MarketDataService

logger = logging.getLogger(__name__)


def default_providers() -> list[Provider]:
    """A single in-process provider serving every exchange."""
    return [Provider(id="local-default", name="Local (Default)", priority=100)]


def create_client_factory() -> ClientFactory:
    """Pick the connectivity client based on environment variables.

    - DASHFEED_CONNECTIVITY=ccxt -> CcxtClient (real exchanges)
    - Otherwise -> SimulatedExchangeClient (GBM simulation)
    """
    backend = os.environ.get("DASHFEED_CONNECTIVITY", "").strip().lower()

    if backend == "ccxt":
        from .ccxt_client import create_ccxt_client

        logger.info("Connectivity client: ccxt (real exchanges)")
        return create_ccxt_client

    from .simulator import SimulatedExchangeClient

    logger.info("Connectivity client: GBM simulator")

    def create_simulated_client(
        exchange: str, provider: Provider, account: ExchangeAccount | None = None
    ) -> SimulatedExchangeClient:
        return SimulatedExchangeClient(exchange)

    return create_simulated_client


def create_market_data_service(
    providers: list[Provider] | None = None,
    settings: FeedSettings | None = None,
    account_lookup: AccountLookup | None = None,
    client_factory: ClientFactory | None = None,
) -> MarketDataService:
    """Build an unstarted MarketDataService. Caller must await service.start()."""
    return MarketDataService(
        client_factory=client_factory or create_client_factory(),
        providers=ProviderRegistry(providers if providers is not None else default_providers()),
        settings=settings or FeedSettings.from_env(),
        account_lookup=account_lookup,
    )
