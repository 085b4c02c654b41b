"""Registry of configured connectivity providers."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import replace

from .errors import InvalidProviderError
from .interface import AccountLookup
from .models import (
    Provider,
    ProviderMapping,
    ProviderOperationResult,
    ProviderStatus,
    ProviderType,
)

logger = logging.getLogger(__name__)

ProviderChangeListener = Callable[[Provider], None]


def validate_provider(provider: Provider) -> list[str]:
    """Return a list of configuration problems; empty when the provider is usable."""
    errors: list[str] = []
    if not provider.id:
        errors.append("Provider ID is required")
    if not provider.name:
        errors.append("Provider name is required")
    if not provider.exchanges:
        errors.append("Provider must support at least one exchange")
    if provider.type is ProviderType.SERVER and not provider.config.server_url:
        errors.append("Server URL is required for server providers")
    return errors


class ProviderRegistry:
    """Holds configured providers and resolves which one serves an exchange.

    Resolution order for an exchange:
      1. providers that list the exchange explicitly beat wildcard ("*") ones,
         even at a worse priority
      2. lower priority number wins
      3. connected providers win over the rest
    Disabled providers never resolve.

    Mutations are validated and return a ProviderOperationResult instead of
    raising. Change listeners are told about every provider that was added,
    updated or removed so cached clients can be invalidated.
    """

    def __init__(self, providers: list[Provider] | None = None) -> None:
        self._providers: dict[str, Provider] = {}
        self._listeners: list[ProviderChangeListener] = []
        for provider in providers or []:
            errors = validate_provider(provider)
            if errors:
                raise InvalidProviderError(errors)
            self._providers[provider.id] = provider

    # --- Resolution ---

    def resolve(self, exchange: str) -> Provider | None:
        """Best enabled provider for ``exchange``, or None."""
        exchange = exchange.strip().lower()
        candidates = [p for p in self._providers.values() if p.enabled and p.supports(exchange)]
        if not candidates:
            return None

        def rank(provider: Provider) -> tuple[int, int, int]:
            specialized = 0 if exchange in provider.exchanges else 1
            connected = 0 if provider.status is ProviderStatus.CONNECTED else 1
            return (specialized, provider.priority, connected)

        # sorted() is stable, so insertion order breaks the remaining ties
        return sorted(candidates, key=rank)[0]

    def create_mapping(
        self,
        exchanges: list[str],
        account_lookup: AccountLookup | None = None,
    ) -> list[ProviderMapping]:
        """Map each exchange to its provider, attaching credentials when known.

        Exchanges without a resolvable provider are left out of the result.
        """
        mappings: list[ProviderMapping] = []
        for exchange in exchanges:
            provider = self.resolve(exchange)
            if provider is None:
                logger.debug("No provider for %s, omitted from mapping", exchange)
                continue
            account = account_lookup(exchange) if account_lookup else None
            mappings.append(ProviderMapping(exchange=exchange, provider=provider, account=account))
        return mappings

    # --- Reads ---

    def get(self, provider_id: str) -> Provider | None:
        return self._providers.get(provider_id)

    def list_providers(self) -> list[Provider]:
        return sorted(self._providers.values(), key=lambda p: p.priority)

    def next_priority(self) -> int:
        """Priority for a new provider: 10 above the current maximum."""
        if not self._providers:
            return 10
        return max(p.priority for p in self._providers.values()) + 10

    def __len__(self) -> int:
        return len(self._providers)

    def __contains__(self, provider_id: str) -> bool:
        return provider_id in self._providers

    # --- Mutations ---

    def add_listener(self, listener: ProviderChangeListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: ProviderChangeListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def add(self, provider: Provider) -> ProviderOperationResult:
        errors = validate_provider(provider)
        if errors:
            logger.warning("Rejected provider %r: %s", provider.id, "; ".join(errors))
            return ProviderOperationResult(success=False, error="; ".join(errors))
        if provider.id in self._providers:
            return ProviderOperationResult(
                success=False, error=f"Provider {provider.id!r} already exists"
            )
        self._providers[provider.id] = provider
        logger.info("Provider added: %s (%s)", provider.id, ", ".join(provider.exchanges))
        self._notify(provider)
        return ProviderOperationResult(success=True)

    def update(self, provider: Provider) -> ProviderOperationResult:
        if provider.id not in self._providers:
            return ProviderOperationResult(success=False, error=f"Unknown provider {provider.id!r}")
        errors = validate_provider(provider)
        if errors:
            logger.warning("Rejected update of %r: %s", provider.id, "; ".join(errors))
            return ProviderOperationResult(success=False, error="; ".join(errors))
        previous = self._providers[provider.id]
        self._providers[provider.id] = provider
        logger.info("Provider updated: %s", provider.id)
        # Clients built for exchanges the provider no longer lists are stale too
        self._notify(previous)
        self._notify(provider)
        return ProviderOperationResult(success=True)

    def remove(self, provider_id: str) -> ProviderOperationResult:
        provider = self._providers.pop(provider_id, None)
        if provider is None:
            return ProviderOperationResult(success=False, error=f"Unknown provider {provider_id!r}")
        logger.info("Provider removed: %s", provider_id)
        self._notify(provider)
        return ProviderOperationResult(success=True)

    def enable(self, provider_id: str) -> ProviderOperationResult:
        return self._set(provider_id, enabled=True)

    def disable(self, provider_id: str) -> ProviderOperationResult:
        return self._set(provider_id, enabled=False)

    def set_status(self, provider_id: str, status: ProviderStatus) -> ProviderOperationResult:
        """Record connection status. Does not invalidate cached clients."""
        provider = self._providers.get(provider_id)
        if provider is None:
            return ProviderOperationResult(success=False, error=f"Unknown provider {provider_id!r}")
        self._providers[provider_id] = replace(provider, status=status)
        return ProviderOperationResult(success=True)

    def _set(self, provider_id: str, **changes: object) -> ProviderOperationResult:
        provider = self._providers.get(provider_id)
        if provider is None:
            return ProviderOperationResult(success=False, error=f"Unknown provider {provider_id!r}")
        return self.update(replace(provider, **changes))

    def _notify(self, provider: Provider) -> None:
        for listener in list(self._listeners):
            try:
                listener(provider)
            except Exception:
                logger.exception("Provider change listener failed for %s", provider.id)
