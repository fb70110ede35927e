"""
Chain Resolver
==============

Turns a raw symbol into the stream symbols of one expiration.

1. Classify: futures contract (/ESZ5), futures root (/ES) or equity/index (SPY, SPX)
2. Fetch the nested chain (futures by root, equities by symbol)
3. Keep Regular and End-Of-Month expirations only
4. Pick the expiration whose DTE is closest to the target (30); ties keep the
   first one encountered; expired (dte < 0) entries are skipped
5. Flatten call then put streamer symbols of every strike

DTE is calendar days from today in America/New_York.
"""

import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

from models.schemas import ChainResult
from services.skew_errors import ChainNotFound, NoExpirationFound
from utils.environment import TARGET_DTE
from utils.symbol_normalization import (
    EQUITY,
    FUTURES_CONTRACT,
    classify_symbol,
    futures_root,
)

logger = logging.getLogger(__name__)

NY = ZoneInfo("America/New_York")

ALLOWED_EXPIRATION_TYPES = ("End-Of-Month", "Regular")


def _today_et() -> date:
    return datetime.now(NY).date()


def _field(row: Dict[str, Any], dashed: str, camel: str):
    value = row.get(dashed)
    return value if value is not None else row.get(camel)


def _parse_date(value: Any) -> Optional[date]:
    if isinstance(value, date):
        return value
    if not value:
        return None
    try:
        return datetime.strptime(str(value)[:10], "%Y-%m-%d").date()
    except ValueError:
        return None


def select_expiration(
    expirations: List[Dict[str, Any]],
    today: Optional[date] = None,
    target_dte: int = TARGET_DTE,
) -> Tuple[Dict[str, Any], date, int]:
    """
    Pick the allowed expiration closest to target_dte.

    Returns (raw_expiration, expiration_date, dte).
    Raises NoExpirationFound when nothing eligible remains.
    """
    today = today or _today_et()

    best = None
    best_diff = None
    for exp in expirations:
        if _field(exp, "expiration-type", "expirationType") not in ALLOWED_EXPIRATION_TYPES:
            continue

        exp_date = _parse_date(_field(exp, "expiration-date", "expirationDate"))
        if exp_date is None:
            continue

        dte = (exp_date - today).days
        if dte < 0:
            continue

        diff = abs(dte - target_dte)
        # strict < keeps the first of equally close expirations
        if best_diff is None or diff < best_diff:
            best_diff = diff
            best = (exp, exp_date, dte)

    if best is None:
        raise NoExpirationFound("No suitable End-Of-Month or Regular expiration found.")
    return best


def flatten_stream_symbols(expiration: Dict[str, Any]) -> List[str]:
    """Every strike's call then put streamer symbol, in chain order."""
    symbols: List[str] = []
    for strike in expiration.get("strikes") or []:
        call = _field(strike, "call-streamer-symbol", "callStreamerSymbol")
        put = _field(strike, "put-streamer-symbol", "putStreamerSymbol")
        if call:
            symbols.append(call)
        if put:
            symbols.append(put)
    return symbols


class ChainResolver:
    """Resolves a symbol to a ChainResult using the venue client."""

    def __init__(self, venue, target_dte: int = TARGET_DTE):
        self.venue = venue
        self.target_dte = target_dte

    async def resolve(self, symbol: str, today: Optional[date] = None) -> ChainResult:
        kind = classify_symbol(symbol)
        is_futures = kind != EQUITY
        lookup = futures_root(symbol) if is_futures else symbol.strip().upper().lstrip("/")

        if kind == FUTURES_CONTRACT:
            logger.info(f"Detected futures contract {symbol} -> root {lookup}")
        elif is_futures:
            logger.info(f"Detected futures root {lookup}")

        logger.info(f"Fetching chain for {symbol}")
        expirations = await self.venue.fetch_chain_metadata(lookup, is_futures)
        if not expirations:
            raise ChainNotFound(f"No option chain found for {symbol}", symbol=symbol)

        exp, exp_date, dte = select_expiration(expirations, today=today, target_dte=self.target_dte)
        logger.info(f"Selected expiration {exp_date.isoformat()} DTE={dte} for {symbol}")

        stream_symbols = flatten_stream_symbols(exp)
        if not stream_symbols:
            raise ChainNotFound(f"No streamer symbols found in option chain for {symbol}", symbol=symbol)

        logger.info(f"Collected {len(stream_symbols)} streamer symbols for {symbol}")
        return ChainResult(stream_symbols=stream_symbols, expiration_date=exp_date, dte=dte)
