"""
Stream Collectors - Phase 1 (delta) and Phase 2 (open interest)
===============================================================

Both phases follow the same shape:
1. Subscribe the shared feed to the phase's symbols
2. Drain feed.events into an in-memory map until the phase window fires
3. Unsubscribe (always, even on failure or cancellation)

The window always runs to completion. Data arriving early never advances the
pipeline; only the timer does. The timer is a cancellable task
(PhaseWindow.finish()) so an early-exit rule can be added later without
restructuring the drain loop.

Callers must hold feed.lock.
"""

import asyncio
import logging
from typing import Callable, Dict, Iterable, Optional

from services.dxlink_feed import GREEKS, SUMMARY, FeedEvent
from services.skew_calculator import OiAggregate, StrikeSelection, aggregate_open_interest
from services.skew_errors import UpstreamUnavailable
from utils.environment import PHASE1_WINDOW_SECONDS, PHASE2_WINDOW_SECONDS

logger = logging.getLogger(__name__)


class PhaseWindow:
    """Fixed collection window backed by a cancellable sleep task."""

    def __init__(self, seconds: float):
        self.seconds = seconds
        self.task: Optional[asyncio.Task] = None

    def start(self) -> "PhaseWindow":
        self.task = asyncio.create_task(asyncio.sleep(self.seconds))
        return self

    @property
    def done(self) -> bool:
        return self.task is not None and self.task.done()

    def finish(self) -> None:
        """End the window now."""
        if self.task is not None and not self.task.done():
            self.task.cancel()


async def drain_window(feed, window: PhaseWindow, handle: Callable[[FeedEvent], None]) -> int:
    """
    Feed every event to `handle` until the window closes.

    Returns the number of events consumed.
    """
    consumed = 0
    getter: Optional[asyncio.Future] = None
    window.start()
    try:
        while not window.done:
            getter = asyncio.ensure_future(feed.events.get())
            done, _ = await asyncio.wait({getter, window.task}, return_when=asyncio.FIRST_COMPLETED)
            if getter in done:
                handle(getter.result())
                consumed += 1
            else:
                getter.cancel()
            getter = None
    finally:
        if getter is not None and not getter.done():
            getter.cancel()
        window.finish()
    return consumed


def _raise_if_lost(feed) -> None:
    if feed.connection_lost:
        raise UpstreamUnavailable("Quote streamer connection lost")


async def collect_deltas(
    feed,
    symbols: Iterable[str],
    window_seconds: float = PHASE1_WINDOW_SECONDS,
) -> Dict[str, float]:
    """Phase 1: last observed delta per subscribed stream symbol."""
    symbols = list(symbols)
    wanted = set(symbols)
    deltas: Dict[str, float] = {}

    def on_event(event: FeedEvent) -> None:
        if event.symbol in wanted and event.delta is not None:
            deltas[event.symbol] = event.delta

    logger.info(f"[Phase 1] Subscribing to {len(symbols)} symbols...")
    await feed.subscribe(symbols, (GREEKS,))
    try:
        consumed = await drain_window(feed, PhaseWindow(window_seconds), on_event)
    finally:
        await feed.unsubscribe(symbols)
    _raise_if_lost(feed)

    logger.info(f"[Phase 1] Collected deltas for {len(deltas)} symbols ({consumed} events)")
    return deltas


async def collect_open_interest(
    feed,
    selection: StrikeSelection,
    deltas: Dict[str, float],
    window_seconds: float = PHASE2_WINDOW_SECONDS,
) -> OiAggregate:
    """
    Phase 2: open interest for the balanced selection, aggregated per side.

    Raises PartialOiTimeout when the window closes without OI on both sides,
    UpstreamUnavailable when the streamer dropped during the window.
    """
    symbols = selection.symbols
    wanted = set(symbols)
    open_interest: Dict[str, float] = {}

    def on_event(event: FeedEvent) -> None:
        if event.symbol in wanted and event.open_interest is not None:
            open_interest[event.symbol] = event.open_interest

    # Phase-1 leftovers are useless here
    feed.drain()
    logger.info(f"[Phase 2] Subscribing to {len(symbols)} filtered symbols...")
    await feed.subscribe(symbols, (SUMMARY,))
    try:
        consumed = await drain_window(feed, PhaseWindow(window_seconds), on_event)
    finally:
        await feed.unsubscribe(symbols)
    _raise_if_lost(feed)

    logger.info(f"[Phase 2] Collected open interest for {len(open_interest)} symbols ({consumed} events)")
    return aggregate_open_interest(deltas, open_interest, symbols)
