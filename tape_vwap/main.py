"""
VWAP System - Central orchestrator.

Connects the feed, the gap detector, the ordered log and the aggregator.

Pipeline:
1. Load configuration and the filter policy
2. Recover sequencing cursors from the log (restart safety)
3. Start one aggregator consumer per instrument (restores from snapshots)
4. Pump the feed through the gap detector into the log
5. Wait for outstanding backfills and for the aggregator to catch up
6. Report final VWAPs, optionally replay under a second policy
7. Shut down: final checkpoints, publisher flush, metrics export

Critical Design:
- Only a sustained log outage is fatal; it exits non-zero
- Everything else is handled and logged where it happens
"""

import argparse
import asyncio
import signal
import sys
from decimal import Decimal
from pathlib import Path
from typing import Dict, Optional

import pandas as pd

from .aggregation.aggregator import VwapAggregator
from .aggregation.policy import FilterPolicy
from .aggregation.replay import final_vwaps
from .connectors.csv_feed import CsvTickFeed
from .connectors.feed import FeedSession
from .connectors.heartbeat import FeedHeartbeatMonitor
from .connectors.publisher import VwapPublisher, build_publisher
from .core.config import load_config
from .core.constants import (
    HEARTBEAT_INTERVAL_SECONDS,
    HEARTBEAT_MAX_FAILURES,
    MAX_SNAPSHOT_BACKUPS,
    VWAP_DISPLAY_PLACES,
)
from .core.exceptions import LogUnavailableFatalError, VwapSystemError
from .data.session_calendar import SessionCalendar
from .gap.gap_detector import GapDetector
from .log.ordered_log import InMemoryOrderedLog
from .monitoring.logger import get_logger, setup_logger
from .monitoring.metrics_tracker import MetricsTracker
from .state.snapshot_store import FileSystemSnapshotStore


class VwapSystem:
    """
    VWAP engine orchestrator.

    Owns every component and runs one CSV tape through the pipeline.
    """

    def __init__(self, config_file: str = "config/config.yaml", env: Optional[str] = None):
        """
        Initialize VWAP system.

        Args:
            config_file: Path to configuration file
            env: Environment override (dev / paper / live)
        """
        self.config = load_config(config_file)
        if env:
            self.config['environment'] = env
        self.env = self.config.get('environment', 'dev')

        # Logging
        monitoring = self.config.get('monitoring', {}) or {}
        log_file = monitoring.get('log_file', f"data/logs/vwap_{self.env}.log")
        setup_logger(log_file=log_file, level=monitoring.get('log_level', 'INFO'))
        self.logger = get_logger(__name__)

        self.instruments = list(self.config['instruments'])
        self.metrics = MetricsTracker()
        self.calendar = SessionCalendar.from_config(self.config)

        # Components (initialized in setup)
        self.log: Optional[InMemoryOrderedLog] = None
        self.policy: Optional[FilterPolicy] = None
        self.detector: Optional[GapDetector] = None
        self.aggregator: Optional[VwapAggregator] = None
        self.publisher: Optional[VwapPublisher] = None
        self.feed: Optional[CsvTickFeed] = None
        self.session: Optional[FeedSession] = None
        self.heartbeat: Optional[FeedHeartbeatMonitor] = None

    def setup(self, ticks_file: str) -> None:
        """
        Build every component for one tape.

        Raises:
            VwapSystemError: configuration, policy or tape could not be loaded
        """
        self.logger.info("=" * 60)
        self.logger.info("Initializing VWAP System", env=self.env)
        self.logger.info("=" * 60)

        self.policy = FilterPolicy.from_yaml(self.config['policy'])
        self.logger.info("Policy loaded", policy=self.policy.name, policy_id=self.policy.policy_id)

        self.feed = CsvTickFeed(ticks_file)
        self.log = InMemoryOrderedLog()

        self.detector = GapDetector(
            self.log,
            backfill_query=self.feed.backfill_query,
            config=self.config,
            metrics=self.metrics,
            instruments=self.instruments
        )
        self.detector.recover_from_log()

        snapshots = self.config.get('snapshots', {}) or {}
        store = FileSystemSnapshotStore(
            state_dir=snapshots.get('dir', f"data/state/{self.env}"),
            max_backups=int(snapshots.get('max_backups', MAX_SNAPSHOT_BACKUPS))
        )
        self.publisher = build_publisher(self.config.get('publisher'))

        self.aggregator = VwapAggregator(
            self.log,
            self.policy,
            self.instruments,
            snapshot_store=store,
            publisher=self.publisher,
            config=self.config,
            metrics=self.metrics,
            calendar=self.calendar
        )

        self.session = FeedSession(self.feed, self.detector)
        heartbeat_config = self.config.get('heartbeat', {}) or {}
        if heartbeat_config.get('enabled', False):
            self.heartbeat = FeedHeartbeatMonitor(
                probe=self.feed.heartbeat,
                interval_seconds=heartbeat_config.get('interval_seconds', HEARTBEAT_INTERVAL_SECONDS),
                max_failures=heartbeat_config.get('max_failures', HEARTBEAT_MAX_FAILURES),
                on_connection_lost=self.session.on_drop,
                on_connection_restored=self.session.on_restore
            )

        self.logger.info("✓ ALL COMPONENTS READY", instruments=len(self.instruments))

    async def run(self, ticks_file: str) -> Dict[str, Optional[str]]:
        """
        Run one tape end to end.

        Returns:
            Final VWAP per instrument, rounded for display (None when no volume)

        Raises:
            LogUnavailableFatalError: the log stayed down past the grace period
        """
        self.setup(ticks_file)
        await self.aggregator.start()
        if self.heartbeat is not None:
            self.heartbeat.start()

        try:
            await self.session.run()
            await self.detector.wait_idle()
            self.detector.retry_pending()
            await self.aggregator.wait_caught_up()
        finally:
            await self.shutdown()

        stalled = self.detector.stalled()
        if stalled:
            self.logger.warning("Instruments stalled at end of tape", instruments=stalled)

        vwaps = {}
        for instrument in self.instruments:
            rounded = self.aggregator.state(instrument).rounded_vwap(VWAP_DISPLAY_PLACES)
            vwaps[instrument] = str(rounded) if rounded is not None else None
        return vwaps

    def replay(self, policy_file: str) -> pd.DataFrame:
        """Replay the committed log under another policy."""
        policy = FilterPolicy.from_yaml(policy_file)
        self.logger.info("Replaying under alternate policy", policy=policy.name, policy_id=policy.policy_id)
        return self.aggregator.replay(policy)

    async def shutdown(self) -> None:
        """Stop components in reverse order and export metrics."""
        self.logger.info("Shutting down VWAP system...")
        if self.heartbeat is not None:
            await self.heartbeat.stop()
        if self.aggregator is not None:
            await self.aggregator.stop()
        if self.detector is not None:
            self.detector.close()
        if self.publisher is not None:
            self.publisher.close()

        metrics_dir = (self.config.get('monitoring', {}) or {}).get('metrics_dir', 'data/metrics')
        self.metrics.export_metrics(metrics_dir)
        self.logger.info("Shutdown complete", totals=self.metrics.totals())


def _print_vwaps(title: str, vwaps: Dict[str, Optional[str]]) -> None:
    print("\n" + "=" * 60)
    print(f"  {title}")
    print("=" * 60)
    for instrument, vwap in vwaps.items():
        print(f"  {instrument:<12} {vwap if vwap is not None else '-'}")
    print("=" * 60)


async def _run(args: argparse.Namespace) -> int:
    system = VwapSystem(config_file=args.config, env=args.env)

    loop = asyncio.get_running_loop()
    main_task = asyncio.current_task()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, main_task.cancel)
        except (NotImplementedError, RuntimeError):
            pass

    try:
        vwaps = await system.run(args.ticks)
    except LogUnavailableFatalError as e:
        system.logger.critical("Fatal log outage - exiting", error=str(e))
        return 2

    _print_vwaps(f"Final VWAP ({system.policy.name})", vwaps)

    if args.replay_policy:
        series = system.replay(args.replay_policy)
        finals = final_vwaps(series)
        replayed = {}
        for instrument in system.instruments:
            vwap = finals.loc[instrument, 'vwap'] if instrument in finals.index else None
            if vwap is None or pd.isna(vwap):
                replayed[instrument] = None
            else:
                replayed[instrument] = str(vwap.quantize(Decimal(1).scaleb(-VWAP_DISPLAY_PLACES)))
        _print_vwaps(f"Replay VWAP ({Path(args.replay_policy).stem})", replayed)
    return 0


def main(argv=None) -> int:
    """Entry point."""
    parser = argparse.ArgumentParser(description='Policy-filtered, gap-free VWAP engine')
    parser.add_argument(
        '--config',
        default='config/config.yaml',
        help='Configuration file path'
    )
    parser.add_argument(
        '--ticks',
        required=True,
        help='CSV tape to run through the pipeline'
    )
    parser.add_argument(
        '--replay-policy',
        default=None,
        help='Policy YAML for a what-if replay of the same log'
    )
    parser.add_argument(
        '--env',
        choices=['dev', 'paper', 'live'],
        default=None,
        help='Environment override'
    )
    args = parser.parse_args(argv)

    try:
        return asyncio.run(_run(args))
    except VwapSystemError as e:
        print(f"Startup failed: {e}", file=sys.stderr)
        return 1
    except (KeyboardInterrupt, asyncio.CancelledError):
        return 130


if __name__ == "__main__":
    sys.exit(main())
