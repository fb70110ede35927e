"""
Skew Calculator - Strike Selection and OI Skew Math
===================================================

Pure functions, no I/O.

STRIKE SELECTION:
- Calls: delta in [0.10, 0.30], ranked by distance from 0.20
- Puts:  delta in [-0.30, -0.10], ranked by distance from -0.20
- Both sides truncated to min(|calls|, |puts|) so the ratio compares
  equally sized sets

SKEW:
- skew = put OI sum / call OI sum over the balanced set
- call/put delta = OI-weighted average delta per side
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from models.schemas import ChainResult, SkewResult
from services.skew_errors import NoCandidatesInDeltaRange, PartialOiTimeout

DELTA_BAND_MIN = 0.10
DELTA_BAND_MAX = 0.30
TARGET_DELTA = 0.20


@dataclass(frozen=True)
class CandidateStrike:
    symbol: str
    delta: float


@dataclass(frozen=True)
class StrikeSelection:
    calls: List[CandidateStrike]
    puts: List[CandidateStrike]

    @property
    def symbols(self) -> List[str]:
        return [c.symbol for c in self.calls] + [p.symbol for p in self.puts]


@dataclass(frozen=True)
class OiAggregate:
    call_oi: int
    put_oi: int
    call_delta: float
    put_delta: float
    call_count: int
    put_count: int


def is_call_delta(delta: float) -> bool:
    return DELTA_BAND_MIN <= delta <= DELTA_BAND_MAX


def is_put_delta(delta: float) -> bool:
    return -DELTA_BAND_MAX <= delta <= -DELTA_BAND_MIN


def select_strikes(deltas: Dict[str, float]) -> StrikeSelection:
    """
    Build the balanced call/put set from Phase-1 deltas.

    Raises NoCandidatesInDeltaRange when either side is empty.
    """
    calls = [CandidateStrike(sym, d) for sym, d in deltas.items() if is_call_delta(d)]
    puts = [CandidateStrike(sym, d) for sym, d in deltas.items() if is_put_delta(d)]

    # sorted() is stable: equally distant strikes keep arrival order
    calls = sorted(calls, key=lambda c: abs(c.delta - TARGET_DELTA))
    puts = sorted(puts, key=lambda p: abs(p.delta + TARGET_DELTA))

    balanced = min(len(calls), len(puts))
    if balanced == 0:
        raise NoCandidatesInDeltaRange(
            f"No options found in the {int(DELTA_BAND_MIN * 100)}-{int(DELTA_BAND_MAX * 100)} delta range "
            f"({len(calls)} calls, {len(puts)} puts)"
        )

    return StrikeSelection(calls=calls[:balanced], puts=puts[:balanced])


def aggregate_open_interest(
    deltas: Dict[str, float],
    open_interest: Dict[str, float],
    symbols: Optional[List[str]] = None,
) -> OiAggregate:
    """
    Sum OI and OI-weighted delta per side.

    Only symbols with a known delta and OI > 0 count. Raises PartialOiTimeout
    if either side ends up with zero open interest.
    """
    call_oi = put_oi = 0
    call_weighted = put_weighted = 0.0
    call_count = put_count = 0

    for sym in symbols if symbols is not None else list(open_interest):
        delta = deltas.get(sym)
        oi = open_interest.get(sym)
        if delta is None or oi is None or oi <= 0:
            continue
        oi = int(oi)
        if is_call_delta(delta):
            call_oi += oi
            call_weighted += delta * oi
            call_count += 1
        elif is_put_delta(delta):
            put_oi += oi
            put_weighted += delta * oi
            put_count += 1

    if call_oi <= 0 or put_oi <= 0:
        raise PartialOiTimeout(call_count, put_count)

    return OiAggregate(
        call_oi=call_oi,
        put_oi=put_oi,
        call_delta=call_weighted / call_oi,
        put_delta=put_weighted / put_oi,
        call_count=call_count,
        put_count=put_count,
    )


def compute_skew(aggregate: OiAggregate, chain: ChainResult) -> SkewResult:
    """Package the Phase-2 aggregate into an immutable SkewResult."""
    return SkewResult(
        skew=aggregate.put_oi / aggregate.call_oi,
        expiration_date=chain.expiration_date,
        dte=chain.dte,
        call_oi=aggregate.call_oi,
        put_oi=aggregate.put_oi,
        call_delta=aggregate.call_delta,
        put_delta=aggregate.put_delta,
        call_count=aggregate.call_count,
        put_count=aggregate.put_count,
    )


def side_counts(deltas: Dict[str, float]) -> Tuple[int, int]:
    """(calls, puts) inside the delta band, before balancing."""
    calls = sum(1 for d in deltas.values() if is_call_delta(d))
    puts = sum(1 for d in deltas.values() if is_put_delta(d))
    return calls, puts
