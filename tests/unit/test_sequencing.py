"""
Unit tests for merge rules and the reorder buffer.
"""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from tape_vwap.core.constants import Provenance
from tape_vwap.core.types import Tick
from tape_vwap.sequencing import ReorderBuffer, merge_backfill, missing_ranges, split_contiguous
from tape_vwap.sequencing.merge import dedupe, prefer


T0 = datetime(2024, 3, 15, 14, 30, tzinfo=timezone.utc)


def _tick(seq, price="10.00", provenance=Provenance.LIVE):
    return Tick("AAPL", Decimal(price), 100, "LIT", seq, T0 + timedelta(seconds=seq), provenance=provenance)


class TestMerge:

    def test_historical_wins_tie(self):
        live = _tick(2, "10.00")
        historical = _tick(2, "10.25", Provenance.HISTORICAL)
        assert prefer(live, historical) is historical
        assert prefer(historical, live) is historical

    def test_first_live_kept_over_second_live(self):
        first = _tick(2, "10.00")
        second = _tick(2, "10.50")
        assert prefer(first, second) is first

    def test_dedupe_keys_by_seq(self):
        by_seq = dedupe([_tick(1), _tick(2), _tick(1, "11.00", Provenance.HISTORICAL)])
        assert sorted(by_seq) == [1, 2]
        assert by_seq[1].price == Decimal("11.00")

    def test_merge_orders_and_prefers_historical(self):
        historical = [_tick(3, "10.30", Provenance.HISTORICAL), _tick(2, "10.20", Provenance.HISTORICAL)]
        buffered = [_tick(4), _tick(3, "99.00")]

        merged = merge_backfill(historical, buffered)

        assert [e.seq for e in merged] == [2, 3, 4]
        assert merged[1].price == Decimal("10.30")
        assert merged[1].provenance == Provenance.HISTORICAL

    def test_merge_drops_committed(self):
        merged = merge_backfill([_tick(1), _tick(2)], [_tick(3)], after_seq=1)
        assert [e.seq for e in merged] == [2, 3]

    def test_split_at_first_hole(self):
        prefix, remainder = split_contiguous([_tick(2), _tick(3), _tick(5), _tick(6)], 2)
        assert [e.seq for e in prefix] == [2, 3]
        assert [e.seq for e in remainder] == [5, 6]

    def test_split_when_first_is_missing(self):
        prefix, remainder = split_contiguous([_tick(3), _tick(4)], 2)
        assert prefix == []
        assert [e.seq for e in remainder] == [3, 4]

    def test_split_without_expectation(self):
        prefix, remainder = split_contiguous([_tick(7), _tick(8)], None)
        assert [e.seq for e in prefix] == [7, 8]
        assert remainder == []

    def test_missing_ranges(self):
        assert missing_ranges([3, 4, 7], 2, 8) == [(2, 2), (5, 6), (8, 8)]
        assert missing_ranges([2, 3], 2, 3) == []


class TestReorderBuffer:

    def test_negative_capacity(self):
        with pytest.raises(ValueError):
            ReorderBuffer(-1)

    def test_pop_contiguous(self):
        buffer = ReorderBuffer(10)
        for seq in (5, 3, 4, 8):
            assert buffer.add(_tick(seq))

        assert buffer.lowest_seq == 3
        assert buffer.highest_seq == 8
        assert [e.seq for e in buffer.pop_contiguous(3)] == [3, 4, 5]
        assert len(buffer) == 1
        assert buffer.pop_contiguous(6) == []

    def test_duplicate_live_is_refused(self):
        buffer = ReorderBuffer(10)
        buffer.add(_tick(3, "10.00"))
        assert not buffer.add(_tick(3, "12.00"))
        assert buffer.get(3).price == Decimal("10.00")

    def test_historical_replaces_live(self):
        buffer = ReorderBuffer(10)
        buffer.add(_tick(3, "10.00"))
        assert buffer.add(_tick(3, "10.10", Provenance.HISTORICAL))
        assert buffer.get(3).provenance == Provenance.HISTORICAL

    def test_overflow(self):
        buffer = ReorderBuffer(2)
        buffer.add(_tick(3))
        buffer.add(_tick(4))
        assert not buffer.overflowing
        buffer.add(_tick(5))
        assert buffer.overflowing
        assert [e.seq for e in buffer.drain()] == [3, 4, 5]
        assert len(buffer) == 0

    def test_discard_through(self):
        buffer = ReorderBuffer(10)
        for seq in (2, 3, 6):
            buffer.add(_tick(seq))
        assert buffer.discard_through(3) == 2
        assert 6 in buffer
        assert 2 not in buffer
