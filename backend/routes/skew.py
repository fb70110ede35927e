"""
Skew Routes - OI skew computation API
=====================================

Streaming endpoints (Server-Sent Events):
- /api/stream-skew/{symbol}: one symbol, progress then exactly one result|error
- /api/stream-batch: many symbols, sequential, ends with a complete event

Every SSE frame is `data: <json>\\n\\n`; the stream ends with an explicit
`event: close` frame so the browser EventSource does not reconnect.

Non-stream endpoints map engine failures to HTTP 500 with the message.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from contextlib import aclosing
from datetime import datetime, timezone
from typing import Optional
import logging
import uuid

from data.asset_groups import ALL_SYMBOLS, ASSET_GROUPS, SYMBOL_DESCRIPTIONS
from services.batch_scheduler import BatchScheduler
from services.dxlink_feed import DXLinkFeed
from services.history_store import DEFAULT_HISTORY_LIMIT, HistoryStore
from services.skew_cache import SkewCache, get_skew_cache
from services.skew_errors import SkewEngineError
from services.skew_pipeline import SkewPipeline
from services.tastytrade_client import TastytradeClient
from utils.environment import get_engine_config
from utils.symbol_normalization import cache_key

logger = logging.getLogger(__name__)

skew_router = APIRouter(prefix="/api", tags=["OI Skew"])

SSE_CLOSE = "event: close\ndata: done\n\n"
SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

# Singleton services
_venue: Optional[TastytradeClient] = None
_feed: Optional[DXLinkFeed] = None
_history: Optional[HistoryStore] = None
_pipeline: Optional[SkewPipeline] = None
_batch_scheduler: Optional[BatchScheduler] = None


def get_venue() -> TastytradeClient:
    global _venue
    if _venue is None:
        _venue = TastytradeClient()
    return _venue


def get_feed() -> DXLinkFeed:
    global _feed
    if _feed is None:
        _feed = DXLinkFeed(get_venue())
    return _feed


def get_history() -> HistoryStore:
    global _history
    if _history is None:
        from database import db
        _history = HistoryStore(db)
    return _history


def get_pipeline() -> SkewPipeline:
    """Get or create the skew pipeline singleton (owns the shared feed)."""
    global _pipeline
    if _pipeline is None:
        _pipeline = SkewPipeline(get_venue(), get_feed(), get_skew_cache(), history=get_history())
    return _pipeline


def get_batch_scheduler() -> BatchScheduler:
    global _batch_scheduler
    if _batch_scheduler is None:
        _batch_scheduler = BatchScheduler(get_pipeline())
    return _batch_scheduler


def sse_frame(event) -> str:
    return f"data: {event.model_dump_json(exclude_none=True)}\n\n"


def parse_symbols_param(symbols: Optional[str]) -> list:
    """Comma separated list; empty means the whole asset-group universe."""
    if not symbols:
        return list(ALL_SYMBOLS)
    parsed = [s.strip() for s in symbols.split(",") if s.strip()]
    return parsed or list(ALL_SYMBOLS)


# ==================== STATUS ====================

@skew_router.get("/health")
async def health(
    cache: SkewCache = Depends(get_skew_cache),
    feed: DXLinkFeed = Depends(get_feed),
):
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "cache": cache.stats(),
        "feed_connected": feed.is_connected,
        "config": get_engine_config(),
    }


@skew_router.get("/assets")
async def get_assets():
    return {"groups": ASSET_GROUPS, "descriptions": SYMBOL_DESCRIPTIONS}


# ==================== VENUE PASSTHROUGH ====================

@skew_router.get("/symbols/search/{query}")
async def search_symbols(query: str, venue: TastytradeClient = Depends(get_venue)):
    try:
        await venue.authenticate()
    except SkewEngineError as e:
        raise HTTPException(status_code=500, detail=e.message)
    results = await venue.search_symbols(query)
    return {"query": query, "results": [r.model_dump() for r in results]}


@skew_router.get("/option-chain/{symbol}")
async def get_option_chain(symbol: str, pipeline: SkewPipeline = Depends(get_pipeline)):
    """Target expiration and its streamer symbols, without touching the feed."""
    try:
        await pipeline.venue.authenticate()
        chain = await pipeline.resolver.resolve(symbol)
    except SkewEngineError as e:
        logger.warning(f"OPTION_CHAIN_FAILED | symbol={symbol} | reason={e.reason} | error={e.message}")
        raise HTTPException(status_code=500, detail=e.message)
    return {"symbol": symbol, **chain.model_dump(mode="json")}


# ==================== STREAMING ====================

@skew_router.get("/stream-skew/{symbol}")
async def stream_skew(symbol: str, request: Request, pipeline: SkewPipeline = Depends(get_pipeline)):
    async def event_stream():
        async with aclosing(pipeline.stream(symbol)) as events:
            async for event in events:
                if await request.is_disconnected():
                    logger.info(f"[SSE] client left during {symbol}")
                    return
                yield sse_frame(event)
        yield SSE_CLOSE

    return StreamingResponse(event_stream(), media_type="text/event-stream", headers=SSE_HEADERS)


@skew_router.get("/stream-batch")
async def stream_batch(
    request: Request,
    symbols: Optional[str] = Query(None, description="Comma separated symbols, default all asset groups"),
    scheduler: BatchScheduler = Depends(get_batch_scheduler),
):
    requested = parse_symbols_param(symbols)
    run_id = f"batch_{uuid.uuid4().hex[:8]}"

    async def is_alive() -> bool:
        return not await request.is_disconnected()

    async def event_stream():
        async with aclosing(scheduler.run(requested, is_alive=is_alive, run_id=run_id)) as events:
            async for event in events:
                yield sse_frame(event)
        yield SSE_CLOSE

    return StreamingResponse(event_stream(), media_type="text/event-stream", headers=SSE_HEADERS)


# ==================== CACHE ====================

@skew_router.get("/skew/{symbol}")
async def get_cached_skew(symbol: str, cache: SkewCache = Depends(get_skew_cache)):
    result = cache.get(symbol)
    return {"symbol": cache_key(symbol), "cached": result is not None, "data": result}


@skew_router.delete("/cache/{symbol}")
async def clear_symbol_cache(symbol: str, cache: SkewCache = Depends(get_skew_cache)):
    removed = cache.delete(symbol)
    logger.info(f"[Cache DELETE] {cache_key(symbol)} removed={removed}")
    return {"symbol": cache_key(symbol), "removed": removed}


@skew_router.delete("/cache")
async def clear_cache(cache: SkewCache = Depends(get_skew_cache)):
    size = cache.size()
    cache.clear()
    logger.info(f"[Cache CLEAR] removed={size}")
    return {"removed": size}


@skew_router.post("/cleanup")
async def cleanup_streamer(pipeline: SkewPipeline = Depends(get_pipeline)):
    """Force-release the feed. Not serialized with a running computation."""
    await pipeline.teardown()
    return {"status": "cleaned", "timestamp": datetime.now(timezone.utc).isoformat()}


# ==================== HISTORY ====================

@skew_router.get("/history/{symbol}")
async def get_symbol_history(
    symbol: str,
    limit: int = Query(DEFAULT_HISTORY_LIMIT, ge=1, le=1000),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    history: HistoryStore = Depends(get_history),
):
    try:
        snapshots = await history.get_skew_history(symbol, limit=limit, start_date=start_date, end_date=end_date)
    except Exception as e:
        logger.error(f"HISTORY_QUERY_FAILED | symbol={symbol} | error={e}")
        raise HTTPException(status_code=500, detail=str(e))
    return {"symbol": cache_key(symbol), "count": len(snapshots), "history": snapshots}


@skew_router.get("/history")
async def get_latest_history(history: HistoryStore = Depends(get_history)):
    try:
        snapshots = await history.get_latest_snapshots()
    except Exception as e:
        logger.error(f"HISTORY_QUERY_FAILED | latest | error={e}")
        raise HTTPException(status_code=500, detail=str(e))
    return {"count": len(snapshots), "snapshots": snapshots}


@skew_router.get("/history-symbols")
async def get_history_symbols(history: HistoryStore = Depends(get_history)):
    try:
        symbols = await history.get_tracked_symbols()
    except Exception as e:
        logger.error(f"HISTORY_QUERY_FAILED | symbols | error={e}")
        raise HTTPException(status_code=500, detail=str(e))
    return {"symbols": symbols}
