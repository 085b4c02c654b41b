"""Deduplicating, reference-counted table of live data feeds."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field

from .config import FeedSettings
from .models import (
    DataKind,
    Provider,
    SubscribeResult,
    SubscriptionInfo,
    SubscriptionKey,
    TransportMethod,
)
from .orchestrator import FetchOrchestrator

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class Subscription:
    """One live feed, shared by every subscriber of the same key.

    Owned by SubscriptionRegistry. ``is_active`` doubles as the cancellation
    token for the feed's push loop or poll loop; ``task`` is the loop itself.
    """

    key: SubscriptionKey
    method: TransportMethod
    requested_method: TransportMethod
    subscriber_count: int = 1
    is_fallback: bool = False
    is_active: bool = False
    last_update: float = 0.0
    client_method: str | None = None
    provider: Provider | None = None  # snapshot the feed was started from
    task: asyncio.Task | None = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def snapshot(self) -> SubscriptionInfo:
        return SubscriptionInfo(
            key=self.key,
            subscriber_count=self.subscriber_count,
            method=self.method,
            is_fallback=self.is_fallback,
            is_active=self.is_active,
            last_update=self.last_update,
            client_method=self.client_method,
        )


class SubscriptionRegistry:
    """Maps subscription keys to a single shared feed each.

    The first ``subscribe`` for a key creates the entry and starts it; later
    ones only bump the count. The last ``unsubscribe`` removes the entry and
    releases its resources. Table mutations never await, so two concurrent
    subscribes for one key can never create two entries. Starting and
    stopping one entry is serialized by the entry's lock.
    """

    def __init__(self, orchestrator: FetchOrchestrator, settings: FeedSettings) -> None:
        self._orchestrator = orchestrator
        self._settings = settings
        self._entries: dict[str, Subscription] = {}

    @property
    def method(self) -> TransportMethod:
        return self._settings.method

    async def subscribe(self, subscriber_id: str, key: SubscriptionKey) -> SubscribeResult:
        encoded = key.encode()
        current = self._settings.method
        entry = self._entries.get(encoded)

        if entry is None:
            entry = Subscription(key=key, method=current, requested_method=current)
            self._entries[encoded] = entry
            logger.info("New subscription %s for %s (method: %s)", encoded, subscriber_id, current.value)
            return await self._start(entry)

        entry.subscriber_count += 1
        logger.info(
            "Subscriber %s joined %s (count: %d)", subscriber_id, encoded, entry.subscriber_count
        )
        if entry.requested_method is not current:
            logger.info(
                "Subscription %s method outdated (%s -> %s), restarting",
                encoded,
                entry.requested_method.value,
                current.value,
            )
            return await self._restart(entry, current)
        if not entry.is_active:
            logger.info("Subscription %s is inactive, retrying start", encoded)
            return await self._start(entry)
        return SubscribeResult(success=True)

    async def unsubscribe(self, subscriber_id: str, key: SubscriptionKey) -> None:
        encoded = key.encode()
        entry = self._entries.get(encoded)
        if entry is None:
            return

        entry.subscriber_count -= 1
        logger.info(
            "Subscriber %s left %s (count: %d)", subscriber_id, encoded, entry.subscriber_count
        )
        if entry.subscriber_count > 0:
            return

        del self._entries[encoded]
        async with entry.lock:
            await self._orchestrator.stop(entry)
        logger.info("Subscription removed: %s", encoded)

    async def set_method(self, method: TransportMethod) -> None:
        """Switch the global transport and restart every feed with it.

        All feeds are stopped first, then started again after the settle
        delay, so no feed is left on the old transport.
        """
        method = TransportMethod(method)
        previous = self._settings.method
        self._settings.method = method
        if previous is method:
            return

        entries = list(self._entries.values())
        logger.info("Transport changed %s -> %s, restarting %d subscription(s)", previous.value, method.value, len(entries))

        for entry in entries:
            async with entry.lock:
                await self._orchestrator.stop(entry)
            entry.method = method
            entry.requested_method = method
            entry.is_fallback = False

        await asyncio.sleep(self._settings.settle_delay)

        for entry in entries:
            # Skip entries whose last subscriber left during the settle delay
            if self._entries.get(entry.key.encode()) is entry:
                await self._start(entry)
        logger.info("All subscriptions restarted with method %s", method.value)

    async def set_poll_interval(self, kind: DataKind, seconds: float) -> None:
        """Change the poll interval for ``kind`` and restart its polling feeds."""
        if seconds <= 0:
            raise ValueError(f"Poll interval must be positive, got {seconds}")
        kind = DataKind(kind)
        previous = self._settings.poll_interval(kind)
        self._settings.poll_intervals[kind] = seconds
        logger.info("Poll interval for %s changed %.3fs -> %.3fs", kind.value, previous, seconds)

        for entry in list(self._entries.values()):
            if entry.key.kind is kind and entry.method is TransportMethod.PULL and entry.is_active:
                async with entry.lock:
                    await self._orchestrator.stop(entry)
                await self._start(entry)

    async def restart_outdated(self) -> int:
        """Restart feeds whose exchange now resolves to a different provider snapshot.

        Covers edited, removed and disabled providers, and inactive entries
        that a newly added provider can now serve. Returns the number of
        entries restarted.
        """
        entries = [e for e in self._entries.values() if self._orchestrator.is_outdated(e)]
        if not entries:
            return 0
        logger.info("Provider configuration changed, restarting %d subscription(s)", len(entries))

        for entry in entries:
            async with entry.lock:
                await self._orchestrator.stop(entry)
            entry.method = entry.requested_method
            entry.is_fallback = False
            if self._entries.get(entry.key.encode()) is entry:
                await self._start(entry)
        return len(entries)

    def touch(self, key: SubscriptionKey) -> None:
        """Record that data for ``key`` was just merged."""
        entry = self._entries.get(key.encode())
        if entry is not None:
            entry.last_update = time.time()

    def get(self, key: SubscriptionKey) -> SubscriptionInfo | None:
        entry = self._entries.get(key.encode())
        return entry.snapshot() if entry else None

    def list_subscriptions(self) -> list[SubscriptionInfo]:
        return [entry.snapshot() for entry in self._entries.values()]

    async def clear(self) -> None:
        """Stop and drop every entry regardless of subscriber count."""
        entries, self._entries = list(self._entries.values()), {}
        for entry in entries:
            async with entry.lock:
                await self._orchestrator.stop(entry)
        if entries:
            logger.info("Cleared %d subscription(s)", len(entries))

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: SubscriptionKey) -> bool:
        return key.encode() in self._entries

    # --- Internals ---

    async def _start(self, entry: Subscription) -> SubscribeResult:
        async with entry.lock:
            try:
                await self._orchestrator.start(entry)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                entry.is_active = False
                logger.error("Failed to start subscription %s: %s", entry.key, e)
                return SubscribeResult(success=False, error=str(e))
        return SubscribeResult(success=True)

    async def _restart(self, entry: Subscription, method: TransportMethod) -> SubscribeResult:
        async with entry.lock:
            await self._orchestrator.stop(entry)
        entry.method = method
        entry.requested_method = method
        entry.is_fallback = False
        await asyncio.sleep(self._settings.settle_delay)
        return await self._start(entry)
