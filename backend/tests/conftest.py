"""
Shared fixtures for the skew engine unit tests.

ScriptedFeed replaces the DXLink websocket with canned market data: whatever
the pipeline subscribes to is answered immediately through the real
FEED_DATA parsing path, so the collectors and the queue are exercised as-is.
"""

import os
import sys
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo

import pytest

# Add backend to path for direct imports
sys.path.insert(0, str(Path(__file__).parent.parent))

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("MONGO_URL", "mongodb://localhost:27017")
os.environ.setdefault("DB_NAME", "skew_engine_test")

from services.dxlink_feed import GREEKS, SUMMARY, DXLinkFeed  # noqa: E402
from services.skew_errors import AuthMissingCredentials  # noqa: E402


def days_from_today(days: int) -> str:
    return (datetime.now(ZoneInfo("America/New_York")).date() + timedelta(days=days)).isoformat()


def make_expiration(dte: int, strikes: List[tuple], expiration_type: str = "Regular") -> dict:
    """Nested-chain expiration with (call_symbol, put_symbol) strike pairs."""
    return {
        "expiration-type": expiration_type,
        "expiration-date": days_from_today(dte),
        "strikes": [
            {"call-streamer-symbol": call, "put-streamer-symbol": put}
            for call, put in strikes
        ],
    }


class FakeVenue:
    """In-memory venue: chains keyed by lookup symbol."""

    def __init__(self, chains: Optional[Dict[str, list]] = None, credentials: bool = True):
        self.chains = chains or {}
        self.credentials = credentials
        self.auth_calls = 0
        self.chain_requests = []

    async def authenticate(self):
        self.auth_calls += 1
        if not self.credentials:
            raise AuthMissingCredentials(
                "Missing credentials. Set TASTY_CLIENT_SECRET and TASTY_REFRESH_TOKEN in backend/.env"
            )
        return "access-token"

    async def fetch_chain_metadata(self, root_or_symbol, is_futures):
        self.chain_requests.append((root_or_symbol, is_futures))
        return self.chains.get(root_or_symbol, [])

    async def search_symbols(self, query):
        return []

    async def get_quote_token(self):
        return "quote-token", "wss://streamer.test"


class ScriptedFeed(DXLinkFeed):
    """DXLinkFeed whose subscriptions are answered from fixed delta/OI maps."""

    def __init__(self, deltas=None, open_interest=None, queue_maxsize=1000):
        super().__init__(FakeVenue(), queue_maxsize=queue_maxsize)
        self.deltas = dict(deltas or {})
        self.open_interest = dict(open_interest or {})
        self.connects = 0
        self.disconnects = 0
        self.sent = []

    async def connect(self):
        if self._ws is None:
            self._ws = object()
            self.connects += 1

    async def disconnect(self):
        if self._ws is not None:
            self.disconnects += 1
        self._ws = None
        self._subscriptions.clear()

    async def _send_feed_subscription(self, add=None, remove=None):
        self.sent.append({"add": add or [], "remove": remove or []})
        data = []
        for entry in add or []:
            sym = entry["symbol"]
            if entry["type"] == GREEKS and sym in self.deltas:
                data.append({"eventType": GREEKS, "eventSymbol": sym, "delta": self.deltas[sym]})
            elif entry["type"] == SUMMARY and sym in self.open_interest:
                data.append({"eventType": SUMMARY, "eventSymbol": sym, "openInterest": self.open_interest[sym]})
        if data:
            self._handle_message({"type": "FEED_DATA", "channel": 1, "data": data})


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


# Deltas from the worked example: calls {A, B} in band, C above it,
# P1 in band, P2 below it. Balanced size 1 -> B against P1.
EXAMPLE_DELTAS = {"A": 0.12, "B": 0.25, "C": 0.31, "P1": -0.18, "P2": -0.09}
EXAMPLE_STRIKES = [("A", "P1"), ("B", "P2"), ("C", None)]


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def example_chain():
    return {"SPY": [make_expiration(30, EXAMPLE_STRIKES)]}
