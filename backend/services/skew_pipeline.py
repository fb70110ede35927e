"""
Skew Pipeline - single-symbol computation
=========================================

Cache -> ChainResolver -> Phase 1 (deltas) -> StrikeSelector -> Phase 2 (OI)
-> SkewComputer -> optional pricing hook -> cache + history write-through.

The pipeline is an async generator of ProgressEvent:

    connected, cached, result                        (cache hit)
    connected, chain, phase1, phase2, result|error   (cache miss)

It always terminates in exactly one `result` or `error`. Stage failures are
caught here and converted into the `error` event; nothing is retried.

The feed is owned by whoever builds the pipeline (server startup) and is
used exclusively through feed.session(), which serializes runs and tears
subscriptions down on every exit path.
"""

import logging
from contextlib import aclosing
from typing import AsyncIterator, Awaitable, Callable, Optional

from models.schemas import ChainResult, ProgressEvent, SkewResult
from services.chain_resolver import ChainResolver
from services.skew_calculator import compute_skew, select_strikes, side_counts
from services.skew_cache import SkewCache
from services.skew_errors import SkewEngineError
from services.stream_collectors import collect_deltas, collect_open_interest
from utils.environment import PHASE1_WINDOW_SECONDS, PHASE2_WINDOW_SECONDS, TARGET_DTE
from utils.symbol_normalization import cache_key

logger = logging.getLogger(__name__)

# Fills pricing_skew / implied_move / underlying_price from a separate quote source
PricingHook = Callable[[str, SkewResult, ChainResult], Awaitable[SkewResult]]


class SkewPipeline:
    def __init__(
        self,
        venue,
        feed,
        cache: SkewCache,
        history=None,
        pricing_hook: Optional[PricingHook] = None,
        phase1_seconds: float = PHASE1_WINDOW_SECONDS,
        phase2_seconds: float = PHASE2_WINDOW_SECONDS,
        target_dte: int = TARGET_DTE,
    ):
        self.venue = venue
        self.feed = feed
        self.cache = cache
        self.history = history
        self.pricing_hook = pricing_hook
        self.phase1_seconds = phase1_seconds
        self.phase2_seconds = phase2_seconds
        self.resolver = ChainResolver(venue, target_dte=target_dte)

    async def stream(self, symbol: str) -> AsyncIterator[ProgressEvent]:
        """Cache-fronted computation for one symbol."""
        key = cache_key(symbol)
        cached = self.cache.get(key)
        if cached is not None:
            logger.info(f"[Cache HIT] {key}")
            yield ProgressEvent(type="connected", message="Found cached result!")
            yield ProgressEvent(type="cached", message="Using cached data (1 hour TTL)")
            yield ProgressEvent(type="result", data=cached)
            return

        logger.info(f"[Cache MISS] {key} - fetching fresh data")
        yield ProgressEvent(type="connected", message="Starting calculation...")
        async with aclosing(self.run(symbol)) as events:
            async for event in events:
                yield event

    async def run(self, symbol: str) -> AsyncIterator[ProgressEvent]:
        """Uncached computation; ends with exactly one result or error event."""
        try:
            async with aclosing(self._execute(symbol)) as events:
                async for event in events:
                    yield event
        except SkewEngineError as e:
            e.symbol = e.symbol or symbol
            logger.warning(f"SKEW_FAILED | symbol={symbol} | reason={e.reason} | error={e.message}")
            yield ProgressEvent(type="error", message=e.message, data=e.to_dict())
        except Exception as e:
            logger.exception(f"SKEW_FAILED | symbol={symbol} | unexpected error")
            yield ProgressEvent(type="error", message=str(e) or e.__class__.__name__)

    async def _execute(self, symbol: str) -> AsyncIterator[ProgressEvent]:
        await self.venue.authenticate()

        chain = await self.resolver.resolve(symbol)
        yield ProgressEvent(
            type="chain",
            message=f"Fetched {len(chain.stream_symbols)} symbols",
            data={
                "symbol_count": len(chain.stream_symbols),
                "expiration_date": chain.expiration_date.isoformat(),
                "dte": chain.dte,
            },
        )

        async with self.feed.session() as feed:
            yield ProgressEvent(type="phase1", message="Collecting delta values...")
            deltas = await collect_deltas(feed, chain.stream_symbols, self.phase1_seconds)

            selection = select_strikes(deltas)

            calls, puts = side_counts(deltas)
            logger.info(
                f"[Filter] {symbol}: {calls} calls / {puts} puts in band, "
                f"keeping {len(selection.calls)} of each"
            )
            yield ProgressEvent(
                type="phase2",
                message=f"Collecting OI for {len(selection.symbols)} symbols...",
            )
            aggregate = await collect_open_interest(feed, selection, deltas, self.phase2_seconds)

        result = compute_skew(aggregate, chain)
        if self.pricing_hook is not None:
            result = await self.pricing_hook(symbol, result, chain)

        self.cache.set(symbol, result)
        logger.info(f"[Cache SET] {cache_key(symbol)} skew={result.skew:.3f}")
        if self.history is not None:
            await self.history.persist_snapshot(symbol, result)

        yield ProgressEvent(type="result", data=result)

    async def teardown(self) -> None:
        """Force-release the feed: unsubscribe everything and disconnect."""
        await self.feed.reset()
        await self.feed.disconnect()
