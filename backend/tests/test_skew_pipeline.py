"""
Unit Tests for the single-symbol Skew Pipeline
==============================================

Tests:
1. Cache hit short-circuits the feed
2. Full run: event order, result values, cache and history write-through
3. Every failure ends in exactly one error event
4. The shared feed is released after every run
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import EXAMPLE_DELTAS, FakeVenue, ScriptedFeed, make_expiration
from services.skew_cache import SkewCache
from services.skew_pipeline import SkewPipeline

WINDOW = 0.05


def make_pipeline(venue, feed, cache=None, history=None, pricing_hook=None):
    return SkewPipeline(
        venue,
        feed,
        cache or SkewCache(),
        history=history,
        pricing_hook=pricing_hook,
        phase1_seconds=WINDOW,
        phase2_seconds=WINDOW,
        target_dte=30,
    )


async def collect(events):
    return [event async for event in events]


class TestCacheHit:

    @pytest.mark.asyncio
    async def test_cached_result_skips_feed(self, example_chain):
        cache = SkewCache()
        cache.set("SPY", "cached-result")
        feed = ScriptedFeed()
        pipeline = make_pipeline(FakeVenue(example_chain), feed, cache)

        events = await collect(pipeline.stream("spy"))

        assert [e.type for e in events] == ["connected", "cached", "result"]
        assert events[0].message == "Found cached result!"
        assert events[-1].data == "cached-result"
        assert feed.connects == 0


class TestFullRun:

    @pytest.mark.asyncio
    async def test_event_order_and_result(self, example_chain):
        feed = ScriptedFeed(deltas=EXAMPLE_DELTAS, open_interest={"B": 100, "P1": 150})
        history = MagicMock()
        history.persist_snapshot = AsyncMock()
        cache = SkewCache()
        pipeline = make_pipeline(FakeVenue(example_chain), feed, cache, history)

        events = await collect(pipeline.stream("SPY"))

        assert [e.type for e in events] == ["connected", "chain", "phase1", "phase2", "result"]
        assert events[1].data["symbol_count"] == 5
        assert events[1].data["dte"] == 30

        result = events[-1].data
        assert result.skew == 1.5
        assert result.call_count == 1
        assert result.put_count == 1

        assert cache.get("SPY") is result
        history.persist_snapshot.assert_awaited_once_with("SPY", result)

    @pytest.mark.asyncio
    async def test_pricing_hook_enriches_result(self, example_chain):
        feed = ScriptedFeed(deltas=EXAMPLE_DELTAS, open_interest={"B": 100, "P1": 150})

        async def pricing_hook(symbol, result, chain):
            return result.model_copy(update={"underlying_price": 590.0, "implied_move": 12.5})

        pipeline = make_pipeline(FakeVenue(example_chain), feed, pricing_hook=pricing_hook)
        events = await collect(pipeline.run("SPY"))

        assert events[-1].data.underlying_price == 590.0
        assert events[-1].data.skew == 1.5

    @pytest.mark.asyncio
    async def test_feed_released(self, example_chain):
        feed = ScriptedFeed(deltas=EXAMPLE_DELTAS, open_interest={"B": 100, "P1": 150})
        pipeline = make_pipeline(FakeVenue(example_chain), feed)

        await collect(pipeline.run("SPY"))

        assert feed.subscribed_symbols == []
        assert not feed.is_connected
        assert not feed.lock.locked()
        assert feed.events.empty()


class TestFailures:

    @pytest.mark.asyncio
    async def test_missing_credentials(self, example_chain):
        pipeline = make_pipeline(FakeVenue(example_chain, credentials=False), ScriptedFeed())

        events = await collect(pipeline.stream("SPY"))

        assert [e.type for e in events] == ["connected", "error"]
        assert events[-1].message.startswith("Missing credentials")
        assert events[-1].data["reason"] == "AUTH_MISSING_CREDENTIALS"

    @pytest.mark.asyncio
    async def test_no_chain(self):
        events = await collect(make_pipeline(FakeVenue(), ScriptedFeed()).run("XYZ"))

        assert [e.type for e in events] == ["error"]
        assert events[0].data["symbol"] == "XYZ"

    @pytest.mark.asyncio
    async def test_no_candidates(self):
        venue = FakeVenue({"SPY": [make_expiration(30, [("C1", "P1")])]})
        feed = ScriptedFeed(deltas={"C1": 0.5, "P1": -0.5})
        cache = SkewCache()

        events = await collect(make_pipeline(venue, feed, cache).run("SPY"))

        assert [e.type for e in events] == ["chain", "phase1", "error"]
        assert events[-1].data["reason"] == "NO_CANDIDATES_IN_DELTA_RANGE"
        assert events[-1].data["symbol"] == "SPY"
        assert cache.get("SPY") is None
        assert not feed.is_connected

    @pytest.mark.asyncio
    async def test_partial_open_interest(self, example_chain):
        feed = ScriptedFeed(deltas=EXAMPLE_DELTAS, open_interest={"P1": 40})

        events = await collect(make_pipeline(FakeVenue(example_chain), feed).run("SPY"))

        assert events[-1].type == "error"
        assert events[-1].message == "Timeout: Got OI for 0 calls and 1 puts"
        assert feed.subscribed_symbols == []

    @pytest.mark.asyncio
    async def test_unexpected_exception_becomes_error(self, example_chain):
        venue = FakeVenue(example_chain)
        venue.fetch_chain_metadata = AsyncMock(side_effect=KeyError("expirations"))

        events = await collect(make_pipeline(venue, ScriptedFeed()).run("SPY"))

        assert [e.type for e in events] == ["error"]

    @pytest.mark.asyncio
    async def test_teardown(self):
        feed = ScriptedFeed()
        await feed.connect()
        await feed.subscribe(["A"])

        await make_pipeline(FakeVenue(), feed).teardown()

        assert feed.subscribed_symbols == []
        assert not feed.is_connected
