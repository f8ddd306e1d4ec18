"""
Unit tests for the VWAP aggregator: application, restart, consumption and replay.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from tape_vwap.aggregation.aggregator import VwapAggregator
from tape_vwap.aggregation.policy import FilterPolicy
from tape_vwap.aggregation.replay import final_vwaps
from tape_vwap.connectors.publisher import InMemoryVwapPublisher
from tape_vwap.core.constants import CorrectionAction
from tape_vwap.core.exceptions import LogUnavailableFatalError
from tape_vwap.core.types import AggregateState, Correction, Snapshot, Tick
from tape_vwap.log.ordered_log import InMemoryOrderedLog
from tape_vwap.monitoring.metrics_tracker import MetricsTracker
from tape_vwap.state.snapshot_store import InMemorySnapshotStore


T0 = datetime(2024, 3, 15, 14, 30, tzinfo=timezone.utc)
NEXT_SESSION = datetime(2024, 3, 18, 14, 30, tzinfo=timezone.utc)

ALL = FilterPolicy(name="all")
LIT = FilterPolicy(name="lit", venues_exclude=["DARK"])

FAST_OUTAGE = {'aggregator': {'log_retry_seconds': 0.01, 'log_grace_period_seconds': 5}}


def _tick(seq, price="10.00", volume=100, venue="LIT", at=None, instrument="AAPL"):
    at = at or T0 + timedelta(seconds=seq)
    return Tick(instrument, Decimal(price), volume, venue, seq, at)


def _fill(log, events):
    for event in events:
        log.publish(event.instrument, event)


@pytest.fixture
def log():
    return InMemoryOrderedLog()


@pytest.fixture
def metrics():
    return MetricsTracker()


# ══════════════════════════════════════════════════════════
#  Record application
# ══════════════════════════════════════════════════════════


class TestApply:

    def test_publishes_only_on_change(self, log, metrics):
        _fill(log, [_tick(1, "10.00"), _tick(2, "12.00", venue="DARK"), _tick(3, "11.00")])
        publisher = InMemoryVwapPublisher()
        aggregator = VwapAggregator(log, LIT, ["AAPL"], publisher=publisher, metrics=metrics)

        for record in log.read("AAPL"):
            aggregator.apply(record)

        assert [u.vwap for u in publisher.sent] == [Decimal("10"), Decimal("10.5")]
        assert metrics.get('policy_filtered', 'AAPL') == 1
        assert aggregator.state("AAPL").log_position == 2
        assert aggregator.next_positions["AAPL"] == 3

    def test_reapplying_is_idempotent(self, log):
        _fill(log, [_tick(1), _tick(2)])
        aggregator = VwapAggregator(log, ALL, ["AAPL"])
        records = log.read("AAPL")

        for record in records + records:
            aggregator.apply(record)

        state = aggregator.state("AAPL")
        assert state.volume == 200
        assert state.applied == 2

    def test_session_roll_resets_accumulators(self, log):
        _fill(log, [
            _tick(1, "10.00"),
            _tick(2, "20.00", at=NEXT_SESSION),
            Correction("AAPL", 3, 1, CorrectionAction.CANCEL, NEXT_SESSION + timedelta(seconds=1)),
        ])
        aggregator = VwapAggregator(log, ALL, ["AAPL"])

        for record in log.read("AAPL"):
            aggregator.apply(record)

        state = aggregator.state("AAPL")
        assert state.session_id == "2024-03-18"
        assert state.volume == 100
        assert state.vwap == Decimal("20")
        assert state.log_position == 2

    def test_unknown_instrument_starts_empty(self, log):
        aggregator = VwapAggregator(log, ALL, ["AAPL"])
        assert aggregator.vwap("MSFT") is None
        assert aggregator.status() == {}


# ══════════════════════════════════════════════════════════
#  Restart
# ══════════════════════════════════════════════════════════


class TestRestart:

    def test_resumes_after_snapshot(self, log):
        _fill(log, [_tick(seq, venue="DARK" if seq % 2 else "LIT") for seq in range(1, 6)])
        store = InMemorySnapshotStore()

        first = VwapAggregator(log, LIT, ["AAPL"], snapshot_store=store)
        for record in log.read("AAPL"):
            first.apply(record)
        assert first.checkpoint("AAPL", force=True)

        second = VwapAggregator(log, LIT, ["AAPL"], snapshot_store=store)
        assert second.restart("AAPL") == 5
        assert second.state("AAPL").accounting_key() == first.state("AAPL").accounting_key()
        assert sorted(second.ledgers["AAPL"]) == [2, 4]

    def test_snapshot_ahead_of_log_discarded(self, log):
        _fill(log, [_tick(1), _tick(2)])
        store = InMemorySnapshotStore()
        ahead = AggregateState(
            instrument="AAPL", session_id="2024-03-15", volume=900,
            notional=Decimal("9000"), log_position=10, last_seq=11
        )
        store.put("AAPL", Snapshot.capture(ahead, {}, T0))

        aggregator = VwapAggregator(log, ALL, ["AAPL"], snapshot_store=store)
        assert aggregator.restart("AAPL") == 0
        assert aggregator.state("AAPL").volume == 0

    def test_snapshot_from_previous_session_ignored(self, log):
        _fill(log, [_tick(1), _tick(2), _tick(3, at=NEXT_SESSION), _tick(4, at=NEXT_SESSION)])
        store = InMemorySnapshotStore()

        first = VwapAggregator(log, ALL, ["AAPL"], snapshot_store=store)
        for record in log.read("AAPL", 0, 2):
            first.apply(record)
        first.checkpoint("AAPL", force=True)

        second = VwapAggregator(log, ALL, ["AAPL"], snapshot_store=store)
        assert second.restart("AAPL") == 2
        assert second.state("AAPL").session_id == "2024-03-18"
        assert second.state("AAPL").volume == 0

    def test_checkpoint_without_store(self, log):
        aggregator = VwapAggregator(log, ALL, ["AAPL"])
        assert not aggregator.checkpoint("AAPL", force=True)


# ══════════════════════════════════════════════════════════
#  Asynchronous consumption
# ══════════════════════════════════════════════════════════


class TestConsumption:

    @pytest.mark.asyncio
    async def test_consumes_acknowledges_and_checkpoints(self, log):
        _fill(log, [_tick(1, "10.00"), _tick(1, "20.00", instrument="MSFT")])
        store = InMemorySnapshotStore()
        aggregator = VwapAggregator(log, ALL, ["AAPL", "MSFT"], snapshot_store=store)

        await aggregator.start()
        await asyncio.wait_for(aggregator.wait_caught_up(), timeout=2)

        log.publish("AAPL", _tick(2, "11.00"))
        await asyncio.wait_for(aggregator.wait_for_position("AAPL", 1), timeout=2)
        await aggregator.stop()

        assert aggregator.vwap("AAPL") == Decimal("10.5")
        assert aggregator.vwap("MSFT") == Decimal("20")
        assert log.acknowledged(aggregator.group, "AAPL") == 1
        assert store.get("AAPL").log_position == 1

    @pytest.mark.asyncio
    async def test_resumes_after_log_outage(self, log, metrics):
        _fill(log, [_tick(1), _tick(2)])
        aggregator = VwapAggregator(log, ALL, ["AAPL"], config=FAST_OUTAGE, metrics=metrics)

        await aggregator.start()
        await asyncio.wait_for(aggregator.wait_caught_up(), timeout=2)

        log.set_available(False)
        await asyncio.sleep(0.05)
        log.set_available(True)
        log.publish("AAPL", _tick(3, "13.00"))

        await asyncio.wait_for(aggregator.wait_for_position("AAPL", 2), timeout=2)
        await aggregator.stop()

        assert metrics.get('log_outages', 'AAPL') == 1
        assert aggregator.state("AAPL").volume == 300
        assert aggregator.state("AAPL").applied == 3

    @pytest.mark.asyncio
    async def test_outage_beyond_grace_is_fatal(self, log):
        config = {'aggregator': {'log_retry_seconds': 0.01, 'log_grace_period_seconds': 0.05}}
        aggregator = VwapAggregator(log, ALL, ["AAPL"], config=config)
        log.set_available(False)

        await aggregator.start()
        with pytest.raises(LogUnavailableFatalError):
            await asyncio.wait_for(aggregator.wait_for_position("AAPL", 0), timeout=2)
        await aggregator.stop()


# ══════════════════════════════════════════════════════════
#  Batching invariance
# ══════════════════════════════════════════════════════════


def _mixed_tape():
    """40 records: LIT and DARK prints, one cancel and one amend."""
    events = []
    for seq in range(1, 41):
        if seq == 17:
            events.append(Correction("AAPL", seq, 6, CorrectionAction.CANCEL, T0 + timedelta(seconds=seq)))
        elif seq == 29:
            events.append(Correction(
                "AAPL", seq, 12, CorrectionAction.AMEND, T0 + timedelta(seconds=seq),
                new_price=Decimal("10.37"), new_volume=250
            ))
        else:
            price = f"10.{seq % 9}{seq % 7}"
            venue = "DARK" if seq % 5 == 0 else "LIT"
            events.append(_tick(seq, price, volume=100 + 10 * (seq % 4), venue=venue))
    return events


class TestBatchingInvariance:

    @pytest.mark.asyncio
    async def test_chunked_publication_matches_single_drain(self):
        events = _mixed_tape()

        whole_log = InMemoryOrderedLog()
        _fill(whole_log, events)
        whole = VwapAggregator(whole_log, LIT, ["AAPL"])
        await whole.start()
        await asyncio.wait_for(whole.wait_caught_up(), timeout=2)
        await whole.stop()

        chunked_log = InMemoryOrderedLog()
        chunked = VwapAggregator(chunked_log, LIT, ["AAPL"])
        await chunked.start()
        offset = 0
        for size in (1, 3, 7, 2, 11, 16):
            _fill(chunked_log, events[offset:offset + size])
            offset += size
            await asyncio.wait_for(
                chunked.wait_for_position("AAPL", chunked_log.end_position("AAPL") - 1), timeout=2
            )
        await chunked.stop()
        assert offset == len(events)

        one_by_one = VwapAggregator(whole_log, LIT, ["AAPL"])
        for record in whole_log.read("AAPL"):
            one_by_one.apply(record)

        expected = whole.state("AAPL").accounting_key()
        assert chunked.state("AAPL").accounting_key() == expected
        assert one_by_one.state("AAPL").accounting_key() == expected
        assert whole.state("AAPL").log_position == 39


# ══════════════════════════════════════════════════════════
#  Housekeeping
# ══════════════════════════════════════════════════════════


class TestHousekeeping:

    @pytest.mark.asyncio
    async def test_held_update_released_while_instrument_is_quiet(self, log):
        _fill(log, [_tick(1, "10.00"), _tick(2, "12.00")])
        publisher = InMemoryVwapPublisher(throttle_seconds=0.05)
        aggregator = VwapAggregator(log, ALL, ["AAPL"], publisher=publisher)
        assert aggregator.housekeeping_seconds == 0.05

        await aggregator.start()
        await asyncio.wait_for(aggregator.wait_caught_up(), timeout=2)
        await asyncio.sleep(0.3)

        # No further records and no flush: the held update still went out
        assert [u.volume for u in publisher.sent] == [100, 200]
        await aggregator.stop()

    @pytest.mark.asyncio
    async def test_idle_instrument_is_checkpointed(self, log):
        _fill(log, [_tick(1), _tick(2)])
        store = InMemorySnapshotStore()
        config = {'aggregator': {'checkpoint_interval_seconds': 0.05}}
        aggregator = VwapAggregator(log, ALL, ["AAPL"], snapshot_store=store, config=config)

        await aggregator.start()
        await asyncio.wait_for(aggregator.wait_caught_up(), timeout=2)
        await asyncio.sleep(0.3)

        assert store.get("AAPL").log_position == 1
        await aggregator.stop()

    def test_no_periodic_work_without_throttle_or_store(self, log):
        aggregator = VwapAggregator(log, ALL, ["AAPL"], publisher=InMemoryVwapPublisher())
        assert aggregator.housekeeping_seconds is None


# ══════════════════════════════════════════════════════════
#  Replay
# ══════════════════════════════════════════════════════════


class TestReplay:

    def test_replay_uses_own_policy_and_group(self, log):
        _fill(log, [_tick(1, "10.00"), _tick(2, "13.00", venue="DARK"), _tick(3, "11.00")])
        live = VwapAggregator(log, ALL, ["AAPL"])
        for record in log.read("AAPL"):
            live.apply(record)
        log.acknowledge(live.group, "AAPL", 2)
        before = live.state("AAPL")

        series = live.replay(LIT)

        assert list(series['position']) == [0, 1, 2]
        assert list(series['volume']) == [100, 100, 200]
        final = final_vwaps(series)
        assert final.loc["AAPL", 'vwap'] == Decimal("10.5")
        assert live.state("AAPL") == before
        assert live.state("AAPL").volume == 300
        assert log.acknowledged(live.group, "AAPL") == 2

    def test_replay_from_position(self, log):
        _fill(log, [_tick(1, "10.00"), _tick(2, "12.00")])
        series = VwapAggregator(log, ALL, ["AAPL"]).replay(ALL, from_position=1)
        assert list(series['seq']) == [2]
        assert series.iloc[0]['vwap'] == Decimal("12")
