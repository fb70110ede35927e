"""
Asset Groups - Static Futures Universe
======================================
Default symbols for batch skew runs, grouped the way the dashboard shows them.

This list is versioned and checked into repo.
Updates should be done manually via PR review.
"""

ASSET_GROUPS = {
    "fx": {
        "name": "FX",
        "symbols": ["/6E", "/6B", "/6A", "/6C", "/6J"],
    },
    "indices": {
        "name": "Indices",
        "symbols": ["/ES", "/NQ", "/RTY"],
    },
    "bonds": {
        "name": "Bonds",
        "symbols": ["/ZB", "/ZN", "/ZF", "/ZT"],
    },
    "crypto": {
        "name": "Crypto",
        "symbols": ["/BTC", "/ETH"],
    },
}

SYMBOL_DESCRIPTIONS = {
    # FX
    "/6E": "Euro FX",
    "/6B": "British Pound",
    "/6A": "Australian Dollar",
    "/6C": "Canadian Dollar",
    "/6J": "Japanese Yen",

    # Indices
    "/ES": "E-mini S&P 500",
    "/NQ": "E-mini Nasdaq 100",
    "/YM": "E-mini Dow",
    "/RTY": "E-mini Russell 2000",

    # Bonds
    "/ZB": "30-Year T-Bond",
    "/ZN": "10-Year T-Note",
    "/ZF": "5-Year T-Note",
    "/ZT": "2-Year T-Note",

    # Crypto
    "/BTC": "Bitcoin",
    "/ETH": "Ethereum",
}

ALL_SYMBOLS = [s for group in ASSET_GROUPS.values() for s in group["symbols"]]


def get_group_for_symbol(symbol: str):
    """Group key ("fx", "indices", ...) of a symbol, or None."""
    for key, group in ASSET_GROUPS.items():
        if symbol in group["symbols"]:
            return key
    return None
