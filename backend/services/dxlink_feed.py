"""
DXLink Feed Session
===================

The live-data connection shared by every skew computation.

One DXLinkFeed is created at app startup and handed to the pipeline. It is a
single mutable resource: the pipeline holds `feed.lock` for a whole
Phase-1 + Phase-2 run and tears subscriptions down in a `finally` block.

Inbound FEED_DATA messages are normalized into FeedEvent values and pushed
onto a bounded asyncio.Queue (`feed.events`). Collection phases drain that
queue; nothing is dispatched through callbacks. When the queue is full the
oldest event is dropped.

PROTOCOL (DXLink JSON, FULL data format):
  -> SETUP               <- AUTH_STATE UNAUTHORIZED
  -> AUTH(token)         <- AUTH_STATE AUTHORIZED
  -> CHANNEL_REQUEST     <- CHANNEL_OPENED
  -> FEED_SETUP
  -> FEED_SUBSCRIPTION add/remove
  <- FEED_DATA
  -> KEEPALIVE every 30s

All public operations are idempotent.
"""

import asyncio
import json
import logging
import math
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Set

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from services.skew_errors import UpstreamUnavailable
from utils.environment import FEED_QUEUE_MAXSIZE

logger = logging.getLogger(__name__)

FEED_CHANNEL = 1
KEEPALIVE_INTERVAL_SECONDS = 30
KEEPALIVE_TIMEOUT_SECONDS = 60
HANDSHAKE_TIMEOUT_SECONDS = 10
PING_INTERVAL = 20

GREEKS = "Greeks"
SUMMARY = "Summary"
QUOTE = "Quote"

ACCEPT_EVENT_FIELDS = {
    GREEKS: ["eventType", "eventSymbol", "delta"],
    SUMMARY: ["eventType", "eventSymbol", "openInterest"],
}


@dataclass(frozen=True)
class FeedEvent:
    event_type: str
    symbol: str
    delta: Optional[float] = None
    open_interest: Optional[float] = None


def _as_number(value: Any) -> Optional[float]:
    # DXLink sends "NaN" strings for missing values
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def parse_feed_event(raw: Dict[str, Any]) -> Optional[FeedEvent]:
    """
    Normalize one FULL-format DXLink event.

    Returns None when the event has no symbol or carries neither a delta nor
    an open interest. Deltas outside [-1, 1] are dropped.
    """
    if not isinstance(raw, dict):
        return None

    symbol = raw.get("eventSymbol") or raw.get("symbol")
    if not symbol:
        return None
    event_type = raw.get("eventType") or ""

    greeks = raw.get("greeks") if isinstance(raw.get("greeks"), dict) else {}
    summary = raw.get("summary") if isinstance(raw.get("summary"), dict) else {}

    delta = None
    if event_type == GREEKS or greeks:
        delta = _as_number(greeks.get("delta", raw.get("delta")))
        if delta is not None and not -1.0 <= delta <= 1.0:
            delta = None

    open_interest = None
    if event_type in (SUMMARY, QUOTE) or summary:
        open_interest = _as_number(summary.get("openInterest", raw.get("openInterest")))
        if open_interest is not None and open_interest < 0:
            open_interest = None

    if delta is None and open_interest is None:
        return None
    return FeedEvent(event_type=event_type, symbol=symbol, delta=delta, open_interest=open_interest)


class DXLinkFeed:
    def __init__(self, venue, queue_maxsize: int = FEED_QUEUE_MAXSIZE, connector=None):
        self.venue = venue
        self.events: asyncio.Queue = asyncio.Queue(maxsize=queue_maxsize)
        self.lock = asyncio.Lock()
        self._connector = connector or websockets.connect
        self._ws = None
        self._reader_task: Optional[asyncio.Task] = None
        self._keepalive_task: Optional[asyncio.Task] = None
        self._subscriptions: Dict[str, Set[str]] = {}
        self.dropped_events = 0
        # set when the socket closes underneath a session, cleared by connect()
        self.connection_lost = False

    @property
    def is_connected(self) -> bool:
        return self._ws is not None

    @property
    def subscribed_symbols(self) -> List[str]:
        return list(self._subscriptions)

    # ==================== LIFECYCLE ====================

    async def connect(self) -> None:
        if self._ws is not None:
            return

        token, url = await self.venue.get_quote_token()
        logger.info("Connecting to DXLink streamer...")
        try:
            ws = await self._connector(url, ping_interval=PING_INTERVAL, max_size=10_000_000)
        except (OSError, WebSocketException) as e:
            raise UpstreamUnavailable("Could not connect to the quote streamer", details=str(e))

        try:
            await asyncio.wait_for(self._handshake(ws, token), timeout=HANDSHAKE_TIMEOUT_SECONDS)
        except UpstreamUnavailable:
            await ws.close()
            raise
        except (asyncio.TimeoutError, ConnectionClosed) as e:
            await ws.close()
            raise UpstreamUnavailable("Quote streamer handshake failed", details=str(e) or "timeout")

        self._ws = ws
        self.connection_lost = False
        self._reader_task = asyncio.create_task(self._read_loop(ws))
        self._keepalive_task = asyncio.create_task(self._keepalive_loop(ws))
        logger.info("DXLink streamer connected")

    async def _handshake(self, ws, token: str) -> None:
        await self._send(ws, {
            "type": "SETUP",
            "channel": 0,
            "version": "0.1-skew-engine",
            "keepaliveTimeout": KEEPALIVE_TIMEOUT_SECONDS,
            "acceptKeepaliveTimeout": KEEPALIVE_TIMEOUT_SECONDS,
        })
        await self._send(ws, {"type": "AUTH", "channel": 0, "token": token})

        authorized = False
        while True:
            msg = json.loads(await ws.recv())
            kind = msg.get("type")
            if kind == "AUTH_STATE" and msg.get("state") == "AUTHORIZED" and not authorized:
                authorized = True
                await self._send(ws, {
                    "type": "CHANNEL_REQUEST",
                    "channel": FEED_CHANNEL,
                    "service": "FEED",
                    "parameters": {"contract": "AUTO"},
                })
            elif kind == "CHANNEL_OPENED" and msg.get("channel") == FEED_CHANNEL:
                await self._send(ws, {
                    "type": "FEED_SETUP",
                    "channel": FEED_CHANNEL,
                    "acceptAggregationPeriod": 0.1,
                    "acceptDataFormat": "FULL",
                    "acceptEventFields": ACCEPT_EVENT_FIELDS,
                })
                return
            elif kind == "ERROR":
                raise UpstreamUnavailable("Quote streamer rejected the session", details=str(msg.get("message")))

    async def disconnect(self) -> None:
        ws, self._ws = self._ws, None
        for task in (self._reader_task, self._keepalive_task):
            if task is not None and not task.done():
                task.cancel()
        self._reader_task = None
        self._keepalive_task = None
        self._subscriptions.clear()

        if ws is None:
            return
        try:
            await ws.close()
            logger.info("Disconnected streamer WebSocket")
        except (OSError, WebSocketException) as e:
            logger.warning(f"Failed to close streamer cleanly: {e}")

    async def reset(self) -> None:
        """Drop every subscription and every buffered event."""
        await self.unsubscribe()
        self.drain()

    @asynccontextmanager
    async def session(self):
        """
        Exclusive use of the feed for one pipeline run.

        Holds the lock, clears whatever an earlier run left behind, connects,
        and always unsubscribes and disconnects on the way out.
        """
        async with self.lock:
            await self.reset()
            await self.connect()
            try:
                yield self
            finally:
                await self.reset()
                await self.disconnect()

    # ==================== SUBSCRIPTIONS ====================

    async def subscribe(self, symbols: Iterable[str], event_types: Iterable[str] = (GREEKS,)) -> None:
        if self._ws is None:
            raise UpstreamUnavailable("Quote streamer is not connected")

        event_types = list(event_types)
        add = []
        for sym in symbols:
            current = self._subscriptions.setdefault(sym, set())
            for et in event_types:
                if et not in current:
                    current.add(et)
                    add.append({"type": et, "symbol": sym})

        if add:
            await self._send_feed_subscription(add=add)
            logger.info(f"Subscribed to {len(add)} feed entries ({', '.join(event_types)})")

    async def unsubscribe(self, symbols: Optional[Iterable[str]] = None) -> None:
        """Unsubscribe the given symbols, or everything when symbols is None."""
        targets = list(self._subscriptions) if symbols is None else list(symbols)
        remove = []
        for sym in targets:
            for et in self._subscriptions.pop(sym, ()):
                remove.append({"type": et, "symbol": sym})

        if not remove or self._ws is None:
            return
        try:
            await self._send_feed_subscription(remove=remove)
            logger.info(f"Unsubscribed from {len(remove)} feed entries")
        except UpstreamUnavailable as e:
            logger.warning(f"Failed to unsubscribe: {e}")

    async def _send_feed_subscription(self, add=None, remove=None) -> None:
        msg: Dict[str, Any] = {"type": "FEED_SUBSCRIPTION", "channel": FEED_CHANNEL}
        if add:
            msg["add"] = add
        if remove:
            msg["remove"] = remove
        await self._send(self._ws, msg)

    # ==================== EVENT CHANNEL ====================

    def publish(self, event: FeedEvent) -> None:
        try:
            self.events.put_nowait(event)
        except asyncio.QueueFull:
            self.events.get_nowait()
            self.events.put_nowait(event)
            self.dropped_events += 1
            if self.dropped_events == 1 or self.dropped_events % 1000 == 0:
                logger.warning(f"FEED_QUEUE_FULL | dropped={self.dropped_events} | maxsize={self.events.maxsize}")

    def drain(self) -> int:
        drained = 0
        while True:
            try:
                self.events.get_nowait()
            except asyncio.QueueEmpty:
                return drained
            drained += 1

    # ==================== INTERNALS ====================

    @staticmethod
    async def _send(ws, msg: Dict[str, Any]) -> None:
        try:
            await ws.send(json.dumps(msg, separators=(",", ":")))
        except ConnectionClosed as e:
            raise UpstreamUnavailable("Quote streamer connection closed", details=str(e))

    def _handle_message(self, msg: Dict[str, Any]) -> None:
        kind = msg.get("type")
        if kind == "FEED_DATA":
            data = msg.get("data") or []
            for raw in data if isinstance(data, list) else [data]:
                event = parse_feed_event(raw)
                if event is not None and event.symbol in self._subscriptions:
                    self.publish(event)
        elif kind == "ERROR":
            logger.error(f"DXLink error: {msg.get('error')} {msg.get('message')}")

    async def _read_loop(self, ws) -> None:
        try:
            async for message in ws:
                try:
                    msg = json.loads(message)
                except (TypeError, ValueError):
                    continue
                if not isinstance(msg, dict):
                    continue
                try:
                    self._handle_message(msg)
                except Exception:
                    logger.exception(f"Failed to handle DXLink message type={msg.get('type')}")
        except ConnectionClosed as e:
            logger.warning(f"DXLink connection closed: {e}")
        finally:
            # disconnect() detaches _ws first, so only an unrequested close lands here
            if self._ws is ws:
                self._ws = None
                self._subscriptions.clear()
                self.connection_lost = True
                logger.warning("FEED_LOST | DXLink socket closed during a session")

    async def _keepalive_loop(self, ws) -> None:
        while True:
            await asyncio.sleep(KEEPALIVE_INTERVAL_SECONDS)
            try:
                await self._send(ws, {"type": "KEEPALIVE", "channel": 0})
            except UpstreamUnavailable:
                return
