"""
Integration tests for the full VWAP pipeline.

Tests:
- CSV tape → gap detector → log → aggregator, with a mid-tape session loss
- Replay of the same log under a stricter policy
- Checkpoint/restart equivalence with a full replay
- CLI entry point
"""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from tape_vwap.aggregation.aggregator import VwapAggregator
from tape_vwap.aggregation.policy import FilterPolicy
from tape_vwap.aggregation.replay import final_vwaps
from tape_vwap.connectors.csv_feed import CsvTickFeed
from tape_vwap.connectors.feed import FeedSession
from tape_vwap.connectors.publisher import InMemoryVwapPublisher
from tape_vwap.core.constants import CorrectionAction, CursorState, Provenance
from tape_vwap.core.types import Correction, Tick
from tape_vwap.gap.gap_detector import GapDetector
from tape_vwap.log.ordered_log import InMemoryOrderedLog
from tape_vwap.main import VwapSystem, main
from tape_vwap.monitoring.metrics_tracker import MetricsTracker
from tape_vwap.state.snapshot_store import FileSystemSnapshotStore, InMemorySnapshotStore


FAST_BACKFILL = {'backfill': {'timeout_seconds': 2, 'backoff_base_seconds': 0.01, 'backoff_max_seconds': 0.05}}

# All venues: AAPL 95787.50 / 950, MSFT 120400.00 / 300
EXPECTED_ALL = {'AAPL': "100.8289", 'MSFT': "401.3333"}
# Lit, round-lot, no T prints: AAPL 60550.00 / 600, MSFT 40000.00 / 100
EXPECTED_LIT = {'AAPL': "100.9167", 'MSFT': "400.0000"}


# ══════════════════════════════════════════════════════════
#  Component wiring
# ══════════════════════════════════════════════════════════


class TestTapeThroughPipeline:

    @pytest.mark.asyncio
    async def test_session_loss_is_backfilled(self, sample_ticks, policy_dir):
        feed = CsvTickFeed(sample_ticks)
        log = InMemoryOrderedLog()
        metrics = MetricsTracker()
        detector = GapDetector(
            log, backfill_query=feed.backfill_query, config=FAST_BACKFILL,
            metrics=metrics, instruments=["AAPL", "MSFT"]
        )
        publisher = InMemoryVwapPublisher()
        aggregator = VwapAggregator(
            log, FilterPolicy.from_yaml(policy_dir / "all_venues.yaml"), ["AAPL", "MSFT"],
            publisher=publisher, metrics=metrics
        )

        await aggregator.start()
        await FeedSession(feed, detector).run()
        await detector.wait_idle()
        await asyncio.wait_for(aggregator.wait_caught_up(), timeout=5)
        await aggregator.stop()

        # Gap-free and strictly ordered, including rows never streamed live
        assert [r.seq for r in log.read("AAPL")] == [1, 2, 3, 4, 5, 6, 7]
        assert [r.seq for r in log.read("MSFT")] == [1, 2, 3, 4]
        assert log.read("AAPL")[2].provenance == Provenance.HISTORICAL
        assert log.read("MSFT")[2].provenance == Provenance.HISTORICAL
        assert all(c.state == CursorState.LIVE for c in detector.cursors.values())

        for instrument, expected in EXPECTED_ALL.items():
            assert str(aggregator.state(instrument).rounded_vwap()) == expected
            assert publisher.latest[instrument].vwap == aggregator.vwap(instrument)
        assert not aggregator.state("AAPL").provisional
        assert metrics.get('gaps_detected', 'AAPL') >= 1

    @pytest.mark.asyncio
    async def test_replay_under_lit_policy(self, sample_ticks, policy_dir):
        feed = CsvTickFeed(sample_ticks)
        log = InMemoryOrderedLog()
        detector = GapDetector(log, backfill_query=feed.backfill_query, config=FAST_BACKFILL)
        live = VwapAggregator(log, FilterPolicy.from_yaml(policy_dir / "all_venues.yaml"), ["AAPL", "MSFT"])

        await live.start()
        await FeedSession(feed, detector).run()
        await detector.wait_idle()
        await asyncio.wait_for(live.wait_caught_up(), timeout=5)

        acked = {i: log.acknowledged(live.group, i) for i in ("AAPL", "MSFT")}
        series = live.replay(FilterPolicy.from_yaml(policy_dir / "lit_only.yaml"))
        await live.stop()

        finals = final_vwaps(series)
        for instrument, expected in EXPECTED_LIT.items():
            vwap = finals.loc[instrument, 'vwap']
            assert str(vwap.quantize(Decimal("0.0001"))) == expected
        # The live instance is untouched
        assert {i: log.acknowledged(live.group, i) for i in ("AAPL", "MSFT")} == acked
        assert str(live.state("AAPL").rounded_vwap()) == EXPECTED_ALL['AAPL']


# ══════════════════════════════════════════════════════════
#  Restart equivalence
# ══════════════════════════════════════════════════════════


T0 = datetime(2024, 3, 15, 14, 0, tzinfo=timezone.utc)
LIT = FilterPolicy(name="lit", venues_exclude=["DARK"])


def _long_tape(log):
    """1051 records; even sequence numbers print LIT at 10.50 x 1."""
    for position in range(1001):
        seq = position + 1
        venue = "LIT" if seq % 2 == 0 else "DARK"
        log.publish("AAPL", Tick("AAPL", Decimal("10.50"), 1, venue, seq, T0 + timedelta(seconds=seq)))
    for seq in range(1002, 1052):
        at = T0 + timedelta(seconds=seq)
        if seq == 1030:
            log.publish("AAPL", Correction("AAPL", seq, 500, CorrectionAction.CANCEL, at))
        elif seq == 1040:
            log.publish("AAPL", Correction(
                "AAPL", seq, 1000, CorrectionAction.AMEND, at,
                new_price=Decimal("10.60"), new_volume=3
            ))
        else:
            log.publish("AAPL", Tick("AAPL", Decimal("10.75"), 2, "LIT", seq, at))


class TestRestartEquivalence:

    def test_resume_matches_full_replay(self):
        log = InMemoryOrderedLog()
        _long_tape(log)
        assert log.end_position("AAPL") == 1051

        store = InMemorySnapshotStore()
        before = VwapAggregator(log, LIT, ["AAPL"], snapshot_store=store)
        for record in log.read("AAPL", 0, 1001):
            before.apply(record)
        assert before.checkpoint("AAPL", force=True)

        snapshot = store.get("AAPL")
        assert snapshot.log_position == 1000
        assert snapshot.volume == 500
        assert snapshot.notional == Decimal("5250.00")

        after = VwapAggregator(log, LIT, ["AAPL"], snapshot_store=store)
        assert after.restart("AAPL") == 1001
        for record in log.read("AAPL", 1001):
            after.apply(record)

        replayed = final_vwaps(before.replay(LIT))
        state = after.state("AAPL")
        assert state.log_position == 1050
        assert state.volume == replayed.loc["AAPL", 'volume']
        assert state.notional == replayed.loc["AAPL", 'notional']
        assert state.vwap == replayed.loc["AAPL", 'vwap']

    @pytest.mark.asyncio
    async def test_consumer_restart_from_disk(self, tmp_path):
        log = InMemoryOrderedLog()
        _long_tape(log)
        store = FileSystemSnapshotStore(str(tmp_path))

        first = VwapAggregator(log, LIT, ["AAPL"], snapshot_store=store, group="a")
        await first.start()
        await asyncio.wait_for(first.wait_caught_up(), timeout=10)
        await first.stop()

        second = VwapAggregator(log, LIT, ["AAPL"], snapshot_store=FileSystemSnapshotStore(str(tmp_path)), group="b")
        assert second.restart("AAPL") == 1051
        assert second.state("AAPL").accounting_key() == first.state("AAPL").accounting_key()


# ══════════════════════════════════════════════════════════
#  Orchestrator and CLI
# ══════════════════════════════════════════════════════════


class TestVwapSystem:

    @pytest.mark.asyncio
    async def test_run_and_replay(self, config_file, sample_ticks, policy_dir, tmp_path):
        system = VwapSystem(config_file=str(config_file))
        vwaps = await system.run(str(sample_ticks))

        assert vwaps == EXPECTED_ALL
        assert system.detector.stalled() == []
        assert list((tmp_path / "metrics").glob("metrics_*.json"))
        assert (tmp_path / "state" / "AAPL.json").exists()

        series = system.replay(str(policy_dir / "lit_only.yaml"))
        assert set(series['instrument']) == {"AAPL", "MSFT"}

    def test_main(self, config_file, sample_ticks, policy_dir, capsys):
        code = main([
            '--config', str(config_file),
            '--ticks', str(sample_ticks),
            '--replay-policy', str(policy_dir / "lit_only.yaml"),
        ])
        out = capsys.readouterr().out
        assert code == 0
        assert "Final VWAP (all_venues)" in out
        assert EXPECTED_ALL['AAPL'] in out
        assert EXPECTED_LIT['MSFT'] in out

    def test_main_missing_tape(self, config_file, tmp_path):
        assert main(['--config', str(config_file), '--ticks', str(tmp_path / "none.csv")]) == 1
