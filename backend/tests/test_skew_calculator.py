"""
Unit Tests for the Skew Calculator
==================================

Tests:
1. Balanced strike selection inside the 10-30 delta band
2. Ranking by distance from the 0.20 target
3. OI aggregation and the put/call ratio
4. Partial open interest at the end of Phase 2
"""

from datetime import date

import pytest

from conftest import EXAMPLE_DELTAS
from models.schemas import ChainResult
from services.skew_calculator import (
    aggregate_open_interest,
    compute_skew,
    is_call_delta,
    is_put_delta,
    select_strikes,
    side_counts,
)
from services.skew_errors import NoCandidatesInDeltaRange, PartialOiTimeout


class TestDeltaBand:
    """Band membership, boundaries included."""

    def test_call_band_edges(self):
        assert is_call_delta(0.10)
        assert is_call_delta(0.30)
        assert not is_call_delta(0.09)
        assert not is_call_delta(0.31)

    def test_put_band_edges(self):
        assert is_put_delta(-0.10)
        assert is_put_delta(-0.30)
        assert not is_put_delta(-0.09)
        assert not is_put_delta(0.20)

    def test_side_counts_before_balancing(self):
        assert side_counts(EXAMPLE_DELTAS) == (2, 1)


class TestSelectStrikes:
    """Balanced candidate sets."""

    def test_worked_example(self):
        selection = select_strikes(EXAMPLE_DELTAS)

        assert [c.symbol for c in selection.calls] == ["B"]
        assert [p.symbol for p in selection.puts] == ["P1"]
        assert selection.symbols == ["B", "P1"]

    @pytest.mark.parametrize("deltas", [
        {"c1": 0.2, "c2": 0.15, "c3": 0.28, "p1": -0.2},
        {"c1": 0.11, "p1": -0.12, "p2": -0.29, "p3": -0.21},
        {"c1": 0.2, "c2": 0.19, "p1": -0.2, "p2": -0.22, "x": 0.5, "y": -0.05},
    ])
    def test_sides_always_equal_length(self, deltas):
        selection = select_strikes(deltas)
        assert len(selection.calls) == len(selection.puts)
        assert len(selection.calls) == min(side_counts(deltas))

    def test_closest_to_target_first(self):
        deltas = {"far": 0.11, "near": 0.21, "mid": 0.26, "p1": -0.2, "p2": -0.25}
        selection = select_strikes(deltas)
        assert [c.symbol for c in selection.calls] == ["near", "mid"]

    def test_ties_keep_arrival_order(self):
        deltas = {"first": 0.15, "second": 0.15, "p1": -0.2}
        selection = select_strikes(deltas)
        assert selection.calls[0].symbol == "first"

    def test_no_puts_in_band(self):
        with pytest.raises(NoCandidatesInDeltaRange) as exc:
            select_strikes({"c1": 0.2, "p1": -0.05})
        assert "1 calls, 0 puts" in exc.value.message

    def test_empty_map(self):
        with pytest.raises(NoCandidatesInDeltaRange):
            select_strikes({})


class TestAggregateOpenInterest:
    """Phase-2 aggregation."""

    def test_ratio_is_put_over_call(self):
        aggregate = aggregate_open_interest(EXAMPLE_DELTAS, {"B": 100, "P1": 150}, ["B", "P1"])
        chain = ChainResult(stream_symbols=["B", "P1"], expiration_date=date(2030, 1, 18), dte=30)

        result = compute_skew(aggregate, chain)

        assert result.skew == 1.5
        assert result.call_oi == 100
        assert result.put_oi == 150
        assert result.call_delta == pytest.approx(0.25)
        assert result.put_delta == pytest.approx(-0.18)
        assert result.dte == 30
        assert result.pricing_skew is None

    def test_weighted_delta(self):
        deltas = {"c1": 0.2, "c2": 0.1, "p1": -0.2, "p2": -0.3}
        aggregate = aggregate_open_interest(deltas, {"c1": 30, "c2": 10, "p1": 10, "p2": 10})

        assert aggregate.call_delta == pytest.approx((0.2 * 30 + 0.1 * 10) / 40)
        assert aggregate.put_delta == pytest.approx(-0.25)
        assert aggregate.call_count == 2
        assert aggregate.put_count == 2

    def test_zero_oi_symbols_are_ignored(self):
        deltas = {"c1": 0.2, "c2": 0.2, "p1": -0.2}
        aggregate = aggregate_open_interest(deltas, {"c1": 0, "c2": 50, "p1": 25})
        assert aggregate.call_count == 1
        assert aggregate.call_oi == 50

    def test_missing_call_oi_times_out(self):
        with pytest.raises(PartialOiTimeout) as exc:
            aggregate_open_interest(EXAMPLE_DELTAS, {"P1": 40}, ["B", "P1"])

        assert exc.value.message == "Timeout: Got OI for 0 calls and 1 puts"
        assert exc.value.call_count == 0
        assert exc.value.put_count == 1
