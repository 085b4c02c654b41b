"""SSE streaming endpoint for live chart updates, plus diagnostics."""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import AsyncGenerator

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse

from .models import DEFAULT_MARKET, DEFAULT_TIMEFRAME, ChartUpdateEvent, DataKind
from .service import MarketDataService

logger = logging.getLogger(__name__)


def create_stream_router(service: MarketDataService) -> APIRouter:
    """Create the streaming router with a reference to the market data service.

    This factory pattern lets us inject the service without globals.
    """
    router = APIRouter(prefix="/api/stream", tags=["streaming"])

    @router.get("/candles")
    async def stream_candles(
        request: Request,
        exchange: str,
        symbol: str,
        timeframe: str = DEFAULT_TIMEFRAME,
        market: str = DEFAULT_MARKET,
    ) -> StreamingResponse:
        """SSE endpoint for chart updates of one candle feed.

        The connection holds a subscription for as long as it is open and
        receives one event per merge:

            data: {"type": "new_candles", "symbol": "BTC/USDT", "data": {...}, ...}
        """
        return StreamingResponse(
            _generate_events(service, request, exchange, symbol, timeframe, market),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",  # Disable nginx buffering if proxied
            },
        )

    @router.get("/subscriptions")
    async def list_subscriptions() -> list[dict]:
        """Diagnostics: every live feed with its transport and fallback state."""
        return service.get_active_subscriptions_list()

    return router


async def _generate_events(
    service: MarketDataService,
    request: Request,
    exchange: str,
    symbol: str,
    timeframe: str,
    market: str,
    interval: float = 0.5,
) -> AsyncGenerator[str, None]:
    """Async generator that yields SSE-formatted chart update events.

    Waits at most ``interval`` seconds per event so a disconnect is noticed
    promptly. The listener and subscription are released on exit.
    """
    # Tell the client to retry after 1 second if the connection drops
    yield "retry: 1000\n\n"

    queue: asyncio.Queue[ChartUpdateEvent] = asyncio.Queue()
    subscriber_id = f"sse-{uuid.uuid4().hex[:12]}"
    client_ip = request.client.host if request.client else "unknown"

    service.add_chart_update_listener(exchange, symbol, timeframe, market, queue.put_nowait)
    try:
        result = await service.subscribe(
            subscriber_id, exchange, market, symbol, DataKind.CANDLES, timeframe
        )
        if not result.success:
            yield f"event: error\ndata: {json.dumps({'error': result.error})}\n\n"
            return

        logger.info("SSE client connected: %s (%s)", client_ip, subscriber_id)
        while True:
            if await request.is_disconnected():
                logger.info("SSE client disconnected: %s", client_ip)
                break
            try:
                event = await asyncio.wait_for(queue.get(), timeout=interval)
            except asyncio.TimeoutError:
                continue
            yield f"data: {json.dumps(event.to_dict())}\n\n"
    except asyncio.CancelledError:
        logger.info("SSE stream cancelled for: %s", client_ip)
        raise
    finally:
        service.remove_chart_update_listener(exchange, symbol, timeframe, market, queue.put_nowait)
        await service.unsubscribe(subscriber_id, exchange, market, symbol, DataKind.CANDLES, timeframe)
