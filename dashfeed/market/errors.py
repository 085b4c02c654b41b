"""Exception hierarchy for the market data subsystem.

None of these cross into UI code: the subscription registry turns them into
``SubscribeResult`` values and the fetch loops log and absorb transient ones.
"""

from __future__ import annotations


class FeedError(Exception):
    """Base class for all market data feed errors."""


class ConfigurationError(FeedError):
    """Provider setup prevents a feed from starting."""


class ProviderNotFoundError(ConfigurationError):
    def __init__(self, exchange: str) -> None:
        super().__init__(f"No enabled provider serves exchange {exchange!r}")
        self.exchange = exchange


class InvalidProviderError(ConfigurationError):
    def __init__(self, errors: list[str]) -> None:
        super().__init__("; ".join(errors))
        self.errors = errors


class ClientUnavailableError(FeedError):
    """The connectivity client could not be constructed or initialized."""


class TransportError(FeedError):
    """A single push message or poll request failed."""
