"""TTL cache of connectivity clients shared across subscriptions."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from .config import CLIENT_TTL_SECONDS, SWEEP_INTERVAL_SECONDS
from .errors import ClientUnavailableError
from .interface import AccountLookup, ClientFactory, ConnectivityClient
from .models import Provider

logger = logging.getLogger(__name__)

CacheKey = tuple[str, str, str]  # (exchange, provider id, mode)


@dataclass
class CachedClient:
    client: ConnectivityClient
    provider: Provider  # snapshot the client was built from
    last_access: float
    created_at: float = field(default=0.0)


class ClientPool:
    """Creates and caches one client per (exchange, provider, mode).

    Construction includes the expensive ``load_markets()`` call, so it runs
    at most once per cache window. Expiry is sliding: every hit pushes the
    deadline out by ``ttl`` seconds. Concurrent misses for the same key wait
    on one construction instead of racing.

    Eviction (expiry or invalidation) moves the client to a retired list
    instead of closing it, since a running feed may still hold it.
    ``close_retired()`` closes them once their feeds have moved on: the
    service calls it after restarting feeds for a provider change, and the
    background sweep calls it after expiring idle clients. ``aclose()``
    closes everything at shutdown.
    """

    def __init__(
        self,
        factory: ClientFactory,
        account_lookup: AccountLookup | None = None,
        ttl: float = CLIENT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._factory = factory
        self._accounts = account_lookup
        self._ttl = ttl
        self._clock = clock
        self._cache: dict[CacheKey, CachedClient] = {}
        self._locks: dict[CacheKey, asyncio.Lock] = {}
        self._retired: list[CachedClient] = []
        self._sweeper: asyncio.Task | None = None

    @staticmethod
    def cache_key(exchange: str, provider: Provider) -> CacheKey:
        return (exchange.lower(), provider.id, provider.mode)

    async def get_client(self, exchange: str, provider: Provider) -> ConnectivityClient:
        """Return a live client, building and initializing one on a miss."""
        key = self.cache_key(exchange, provider)
        cached = self._lookup(key)
        if cached is not None:
            return cached.client

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            # Another caller may have finished construction while we waited
            cached = self._lookup(key)
            if cached is not None:
                return cached.client

            logger.info("Creating client for %s via provider %s (%s)", exchange, provider.id, provider.mode)
            account = self._accounts(exchange) if self._accounts else None
            try:
                client = self._factory(exchange, provider, account)
            except ClientUnavailableError:
                raise
            except Exception as e:
                raise ClientUnavailableError(
                    f"Failed to create client for {exchange} via {provider.id}: {e}"
                ) from e
            try:
                await client.load_markets()
            except asyncio.CancelledError:
                await self._close(client, provider)
                raise
            except Exception as e:
                await self._close(client, provider)
                raise ClientUnavailableError(
                    f"Failed to initialize client for {exchange} via {provider.id}: {e}"
                ) from e

            now = self._clock()
            self._cache[key] = CachedClient(
                client=client, provider=provider, last_access=now, created_at=now
            )
            logger.info("Cached client for %s, pool size: %d", exchange, len(self._cache))
            return client

    def touch(self, exchange: str, provider: Provider) -> None:
        """Bump last access for a client that is in use outside ``get_client``."""
        cached = self._cache.get(self.cache_key(exchange, provider))
        if cached is not None:
            cached.last_access = self._clock()

    def invalidate(self, exchange: str, provider_id: str | None = None) -> int:
        """Evict one provider's client for ``exchange``, or all of the exchange's clients."""
        exchange = exchange.lower()
        keys = [
            k
            for k in self._cache
            if k[0] == exchange and (provider_id is None or k[1] == provider_id)
        ]
        for k in keys:
            self._evict(k)
        if keys:
            logger.info(
                "Invalidated %d client(s) for %s%s",
                len(keys),
                exchange,
                f" via {provider_id}" if provider_id else "",
            )
        return len(keys)

    def invalidate_provider(self, provider_id: str) -> int:
        """Evict every client built from ``provider_id`` (wildcard providers)."""
        keys = [k for k in self._cache if k[1] == provider_id]
        for k in keys:
            self._evict(k)
        if keys:
            logger.info("Invalidated %d client(s) for provider %s", len(keys), provider_id)
        return len(keys)

    def cleanup(self) -> int:
        """Evict entries whose last access is older than the TTL."""
        now = self._clock()
        expired = [k for k, c in self._cache.items() if now - c.last_access >= self._ttl]
        for k in expired:
            self._evict(k)
        if expired:
            logger.info("Swept %d expired client(s)", len(expired))
        return len(expired)

    async def close_retired(self) -> int:
        """Close every evicted client. Returns how many were closed."""
        retired, self._retired = self._retired, []
        for entry in retired:
            await self._close(entry.client, entry.provider)
        if retired:
            logger.info("Closed %d retired client(s)", len(retired))
        return len(retired)

    @property
    def retired_count(self) -> int:
        return len(self._retired)

    def clear(self) -> None:
        for k in list(self._cache):
            self._evict(k)

    def stats(self) -> dict:
        now = self._clock()
        return {
            "total_clients": len(self._cache),
            "retired_clients": len(self._retired),
            "ttl_seconds": self._ttl,
            "clients": [
                {
                    "exchange": k[0],
                    "provider_id": k[1],
                    "sandbox": k[2] == "sandbox",
                    "age": now - c.created_at,
                    "idle": now - c.last_access,
                }
                for k, c in self._cache.items()
            ],
        }

    def __len__(self) -> int:
        return len(self._cache)

    def __contains__(self, key: CacheKey) -> bool:
        cached = self._cache.get(key)
        return cached is not None and self._clock() - cached.last_access < self._ttl

    # --- Background sweep ---

    def start_sweeper(self, interval: float = SWEEP_INTERVAL_SECONDS) -> None:
        if self._sweeper and not self._sweeper.done():
            return
        self._sweeper = asyncio.create_task(self._sweep_loop(interval), name="client-pool-sweeper")
        logger.info("Client pool sweeper started (every %.0fs)", interval)

    async def stop(self) -> None:
        if self._sweeper and not self._sweeper.done():
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
        self._sweeper = None

    async def aclose(self) -> None:
        """Stop the sweeper and close every cached and retired client."""
        await self.stop()
        self.clear()
        await self.close_retired()

    # --- Internals ---

    def _lookup(self, key: CacheKey) -> CachedClient | None:
        cached = self._cache.get(key)
        if cached is None:
            return None
        now = self._clock()
        if now - cached.last_access >= self._ttl:
            self._evict(key)
            logger.debug("Client for %s expired", key[0])
            return None
        cached.last_access = now
        return cached

    def _evict(self, key: CacheKey) -> None:
        self._retired.append(self._cache.pop(key))
        lock = self._locks.get(key)
        if lock is not None and not lock.locked():
            del self._locks[key]

    @staticmethod
    async def _close(client: ConnectivityClient, provider: Provider) -> None:
        try:
            await client.close()
        except Exception:
            logger.exception("Failed to close client for provider %s", provider.id)

    async def _sweep_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                self.cleanup()
                await self.close_retired()
            except Exception:
                logger.exception("Client pool sweep failed")
