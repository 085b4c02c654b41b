"""Runtime settings for the market data subsystem."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

from .models import DataKind, TransportMethod

logger = logging.getLogger(__name__)

# Poll intervals in seconds per data kind
DEFAULT_POLL_INTERVALS: dict[DataKind, float] = {
    DataKind.CANDLES: 5.0,
    DataKind.TRADES: 1.0,
    DataKind.ORDER_BOOK: 0.5,
}

CLIENT_TTL_SECONDS = 30 * 60
SWEEP_INTERVAL_SECONDS = 10 * 60
SETTLE_DELAY_SECONDS = 0.1
TRADE_BUFFER_SIZE = 1000
CANDLE_HISTORY_LIMIT = 100


@dataclass
class FeedSettings:
    """Global transport preference plus the timing knobs of the feed layer."""

    method: TransportMethod = TransportMethod.PUSH
    poll_intervals: dict[DataKind, float] = field(
        default_factory=lambda: dict(DEFAULT_POLL_INTERVALS)
    )
    settle_delay: float = SETTLE_DELAY_SECONDS
    client_ttl: float = CLIENT_TTL_SECONDS
    sweep_interval: float = SWEEP_INTERVAL_SECONDS
    trade_buffer: int = TRADE_BUFFER_SIZE
    candle_limit: int = CANDLE_HISTORY_LIMIT

    def poll_interval(self, kind: DataKind) -> float:
        return self.poll_intervals.get(kind, DEFAULT_POLL_INTERVALS[kind])

    @classmethod
    def from_env(cls) -> FeedSettings:
        """Build settings from DASHFEED_* environment variables.

        - DASHFEED_METHOD: "push" or "pull" (default push)
        - DASHFEED_POLL_CANDLES / _TRADES / _ORDERBOOK: seconds
        - DASHFEED_CLIENT_TTL, DASHFEED_SWEEP_INTERVAL, DASHFEED_SETTLE_DELAY: seconds

        Unparseable values are logged and replaced with the default.
        """
        settings = cls()

        method = os.environ.get("DASHFEED_METHOD", "").strip().lower()
        if method:
            try:
                settings.method = TransportMethod(method)
            except ValueError:
                logger.warning("Ignoring unknown DASHFEED_METHOD=%r", method)

        for kind, var in (
            (DataKind.CANDLES, "DASHFEED_POLL_CANDLES"),
            (DataKind.TRADES, "DASHFEED_POLL_TRADES"),
            (DataKind.ORDER_BOOK, "DASHFEED_POLL_ORDERBOOK"),
        ):
            value = _env_float(var)
            if value is not None:
                settings.poll_intervals[kind] = value

        for attr, var in (
            ("client_ttl", "DASHFEED_CLIENT_TTL"),
            ("sweep_interval", "DASHFEED_SWEEP_INTERVAL"),
            ("settle_delay", "DASHFEED_SETTLE_DELAY"),
        ):
            value = _env_float(var)
            if value is not None:
                setattr(settings, attr, value)

        return settings


def _env_float(name: str) -> float | None:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return None
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r", name, raw)
        return None
    if value <= 0:
        logger.warning("Ignoring non-positive %s=%r", name, raw)
        return None
    return value
