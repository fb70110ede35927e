"""
Symbol Normalization Utilities
==============================
Ensures consistent symbol handling across the skew engine.

Futures are written with a leading slash (/ES) and dated contracts carry a
month code plus a 1-2 digit year (/ESZ5, ESZ25). Cache keys drop the slash so
"/es", "/ES" and "ES" all land on the same entry.
"""
import re

# CME month codes: F G H J K M N Q U V X Z
FUTURES_MONTH_CODES = "FGHJKMNQUVXZ"

FUTURES_CONTRACT_RE = re.compile(rf"^[A-Z0-9]{{2,}}[{FUTURES_MONTH_CODES}]\d{{1,2}}$")
FUTURES_CONTRACT_SUFFIX_RE = re.compile(rf"[{FUTURES_MONTH_CODES}]\d{{1,2}}$")
FUTURES_ROOT_RE = re.compile(r"^[A-Z0-9]{2,}$")

EQUITY = "equity"
FUTURES_ROOT = "futures_root"
FUTURES_CONTRACT = "futures_contract"


def cache_key(symbol: str) -> str:
    """
    Normalize a symbol for use as a cache key.

    Uppercases, strips whitespace and removes leading slashes (/es -> ES).
    """
    if not symbol:
        return symbol
    return symbol.strip().upper().lstrip("/")


def normalize_symbols(symbols: list) -> list:
    """
    Clean a list of raw symbols, keeping their slashes.

    Blank entries are dropped, duplicates removed while preserving order.
    """
    if not symbols:
        return []

    cleaned = [s.strip().upper() for s in symbols if s and s.strip()]
    seen = set()
    out = []
    for s in cleaned:
        key = cache_key(s)
        if key in seen:
            continue
        seen.add(key)
        out.append(s)
    return out


def classify_symbol(symbol: str) -> str:
    """
    Classify a raw symbol as FUTURES_CONTRACT, FUTURES_ROOT or EQUITY.

    Equity covers indices and ETFs too; they share the per-symbol chain lookup.
    """
    raw = symbol.strip().upper()
    has_slash = raw.startswith("/")
    bare = raw.lstrip("/")

    if FUTURES_CONTRACT_RE.match(bare):
        return FUTURES_CONTRACT
    if has_slash and FUTURES_ROOT_RE.match(bare):
        return FUTURES_ROOT
    return EQUITY


def futures_root(symbol: str) -> str:
    """Root of a futures symbol: /ESZ5 -> ES, /ES -> ES."""
    bare = symbol.strip().upper().lstrip("/")
    if FUTURES_CONTRACT_RE.match(bare):
        return FUTURES_CONTRACT_SUFFIX_RE.sub("", bare)
    return bare
