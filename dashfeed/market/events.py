"""Fan-out of chart update events to per-key listeners."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from .models import ChartUpdateEvent, SubscriptionKey

logger = logging.getLogger(__name__)

ChartUpdateListener = Callable[[ChartUpdateEvent], None]


class ChartEventHub:
    """Per-key listener lists for candle updates.

    Delivery is deferred to the next event-loop turn with ``call_soon`` so a
    listener never runs inside the merge that produced the event. Listeners
    attached after an emit never see it, and listeners removed before the
    deferred dispatch no longer receive it. A failing listener is logged and
    the remaining ones still run.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[ChartUpdateListener]] = {}

    def add_listener(self, key: SubscriptionKey, listener: ChartUpdateListener) -> None:
        listeners = self._listeners.setdefault(key.encode(), [])
        if listener not in listeners:
            listeners.append(listener)
            logger.debug("Chart listener added for %s (total: %d)", key, len(listeners))

    def remove_listener(self, key: SubscriptionKey, listener: ChartUpdateListener) -> None:
        encoded = key.encode()
        listeners = self._listeners.get(encoded)
        if not listeners or listener not in listeners:
            return
        listeners.remove(listener)
        if not listeners:
            del self._listeners[encoded]
        logger.debug("Chart listener removed for %s", key)

    def listener_count(self, key: SubscriptionKey) -> int:
        return len(self._listeners.get(key.encode(), ()))

    def emit(self, event: ChartUpdateEvent) -> None:
        listeners = list(self._listeners.get(event.key.encode(), ()))
        if not listeners:
            return
        logger.debug("Emitting %s for %s to %d listener(s)", event.type.value, event.key, len(listeners))
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop (synchronous caller): deliver inline through the same guard
            self._dispatch(event, listeners)
            return
        loop.call_soon(self._dispatch, event, listeners)

    def clear(self) -> None:
        self._listeners.clear()

    def _dispatch(self, event: ChartUpdateEvent, listeners: list[ChartUpdateListener]) -> None:
        for listener in listeners:
            # Removed between emit and dispatch
            if listener not in self._listeners.get(event.key.encode(), ()):
                continue
            try:
                listener(event)
            except Exception:
                logger.exception("Chart update listener failed for %s", event.key)
