"""
VWAP Aggregator - Consumes the ordered log and maintains per-instrument VWAP.

Lifecycle per instrument:
1. restart(): load the latest same-session snapshot, pick the start position
2. consume: drain committed records, then suspend until the next publish
3. apply each record through the pure transitions in ``vwap``
4. acknowledge the position with the consumer group
5. checkpoint at the configured interval (best-effort)

A housekeeping task releases throttled updates and snapshots idle instruments,
so a quiet instrument still publishes its newest VWAP and gets checkpointed.

One asyncio task runs per instrument. Instruments share nothing but the
log, the publisher and the metrics tracker.

Log outages:
- LogUnavailableError suspends the instrument and resubscribes from the
  last acknowledged position every ``log_retry_seconds``
- An outage lasting longer than ``log_grace_period_seconds`` raises
  LogUnavailableFatalError, the only fatal condition
"""

import asyncio
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional

import pandas as pd

from ..core.constants import (
    CHECKPOINT_INTERVAL_SECONDS,
    DEFAULT_CONSUMER_GROUP,
    LOG_RETRY_SECONDS,
    LOG_UNAVAILABLE_GRACE_SECONDS,
)
from ..core.exceptions import LogUnavailableError, LogUnavailableFatalError
from ..core.types import AggregateState, LogRecord, Tick, VwapUpdate
from ..data.session_calendar import SessionCalendar
from ..log.ordered_log import LogSubscription, OrderedLog, StartPosition
from ..monitoring.logger import get_logger
from ..monitoring.metrics_tracker import MetricsTracker
from ..state.checkpoint_manager import CheckpointManager
from ..state.snapshot_store import SnapshotStore
from .policy import FilterPolicy
from .vwap import ContributionLedger, apply_correction, apply_tick


class VwapAggregator:
    """
    Stateful VWAP consumer for one consumer group and one filter policy.

    The policy is fixed for the lifetime of the instance; a different policy
    means a different instance (see ``replay``).
    """

    def __init__(
        self,
        log: OrderedLog,
        policy: FilterPolicy,
        instruments: Iterable[str],
        snapshot_store: Optional[SnapshotStore] = None,
        publisher=None,
        config: Optional[dict] = None,
        metrics: Optional[MetricsTracker] = None,
        calendar: Optional[SessionCalendar] = None,
        group: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """
        Initialize aggregator.

        Args:
            log: Ordered log to consume
            policy: Filter policy for this instance
            instruments: Instrument partitions to consume
            snapshot_store: Checkpoint store (None disables checkpointing)
            publisher: VwapPublisher receiving every state change
            config: Full system config; reads the ``aggregator`` section
            metrics: Shared metrics tracker
            calendar: Trading-session calendar
            group: Consumer group (defaults to the configured live group)
            clock: Wall-clock source, injectable for tests
        """
        config = config or {}
        agg_config = config.get('aggregator', {}) or {}

        self.log = log
        self.policy = policy
        self.instruments: List[str] = list(instruments)
        self.publisher = publisher
        self.metrics = metrics or MetricsTracker()
        self.calendar = calendar or SessionCalendar.from_config(config)
        self.group = group or agg_config.get('group', DEFAULT_CONSUMER_GROUP)
        self.clock = clock or (lambda: datetime.now(timezone.utc))

        self.log_retry_seconds = float(agg_config.get('log_retry_seconds', LOG_RETRY_SECONDS))
        self.grace_period_seconds = float(
            agg_config.get('log_grace_period_seconds', LOG_UNAVAILABLE_GRACE_SECONDS)
        )

        self.checkpoints: Optional[CheckpointManager] = None
        if snapshot_store is not None:
            self.checkpoints = CheckpointManager(
                snapshot_store,
                interval_seconds=agg_config.get('checkpoint_interval_seconds', CHECKPOINT_INTERVAL_SECONDS),
                metrics=self.metrics,
                clock=self.clock
            )

        self.housekeeping_seconds = self._housekeeping_period()

        self.states: Dict[str, AggregateState] = {}
        self.ledgers: Dict[str, ContributionLedger] = {}
        self.next_positions: Dict[str, int] = {}

        self._tasks: Dict[str, asyncio.Task] = {}
        self._housekeeper: Optional[asyncio.Task] = None
        self._subscriptions: Dict[str, LogSubscription] = {}
        self._running = False
        self._progress = asyncio.Event()

        self.logger = get_logger(__name__)
        self.logger.info(
            "VwapAggregator initialized",
            group=self.group,
            policy=self.policy.name,
            policy_id=self.policy.policy_id,
            instruments=len(self.instruments),
            checkpointing=self.checkpoints is not None
        )

    # ========================================================================
    # Queries
    # ========================================================================

    def state(self, instrument: str) -> AggregateState:
        return self.states.get(instrument) or AggregateState.empty(instrument)

    def vwap(self, instrument: str):
        """Current VWAP (``None`` while no volume has been accepted)."""
        return self.state(instrument).vwap

    def status(self) -> Dict[str, dict]:
        return {
            instrument: {
                'vwap': str(state.vwap) if state.vwap is not None else None,
                'volume': state.volume,
                'notional': str(state.notional),
                'log_position': state.log_position,
                'session_id': state.session_id,
                'provisional': state.provisional,
                'applied': state.applied,
                'filtered': state.filtered,
            }
            for instrument, state in sorted(self.states.items())
        }

    # ========================================================================
    # Restart / checkpoint
    # ========================================================================

    def current_session(self, instrument: str) -> Optional[str]:
        """Session of the newest committed record; None while the partition is empty."""
        record = self.log.last_record(instrument)
        if record is None:
            return None
        return self.calendar.session_id(record.event_time)

    def restart(self, instrument: str) -> int:
        """
        Rebuild state for ``instrument`` and choose where to resume.

        Returns:
            Log position to resume from:
            ``max(snapshot.log_position + 1, session start position)``
        """
        session_id = self.current_session(instrument)
        session_start = 0
        if session_id is not None:
            session_start = self.log.position_for_time(
                instrument, self.calendar.session_start(session_id)
            )

        snapshot = self.checkpoints.load(instrument, session_id) if self.checkpoints else None
        if snapshot is not None and snapshot.log_position is not None \
                and snapshot.log_position >= self.log.end_position(instrument):
            # Never trust a snapshot ahead of what the log actually committed
            self.logger.warning(
                "Snapshot ahead of log - discarding",
                instrument=instrument,
                snapshot_position=snapshot.log_position,
                log_end=self.log.end_position(instrument)
            )
            snapshot = None

        if snapshot is None:
            self.states[instrument] = AggregateState.empty(instrument, session_id)
            self.ledgers[instrument] = ContributionLedger()
            start = session_start
        else:
            self.states[instrument] = snapshot.to_state()
            self.ledgers[instrument] = ContributionLedger(snapshot.contributions)
            resume = snapshot.log_position + 1 if snapshot.log_position is not None else 0
            start = max(resume, session_start)

        self.next_positions[instrument] = start
        self._signal_progress()
        self.logger.info(
            "Aggregator restarted",
            instrument=instrument,
            session_id=session_id,
            from_snapshot=snapshot is not None,
            start_position=start,
            volume=self.states[instrument].volume
        )
        return start

    def checkpoint(self, instrument: str, force: bool = False) -> bool:
        """Persist the instrument's state; a no-op when checkpointing is off."""
        if self.checkpoints is None or instrument not in self.states:
            return False
        state = self.states[instrument]
        contributions = self.ledgers[instrument].snapshot()
        if force:
            return self.checkpoints.save(state, contributions)
        return self.checkpoints.maybe_save(state, contributions)

    # ========================================================================
    # Record application
    # ========================================================================

    def apply(self, record: LogRecord) -> AggregateState:
        """
        Apply one committed record to its instrument's state.

        Records at or below the applied position are skipped, so resuming
        from any earlier position is idempotent.
        """
        instrument = record.key
        if instrument not in self.states:
            self.states[instrument] = AggregateState.empty(instrument)
            self.ledgers[instrument] = ContributionLedger()

        state = self.states[instrument]
        self.next_positions[instrument] = max(self.next_positions.get(instrument, 0), record.position + 1)
        if state.log_position is not None and record.position <= state.log_position:
            return state

        event = record.payload
        session_id = self.calendar.session_id(event.event_time)
        if state.session_id is None or session_id > state.session_id:
            if state.session_id is not None:
                self.logger.info(
                    "Session roll",
                    instrument=instrument,
                    old_session=state.session_id,
                    new_session=session_id,
                    final_vwap=str(state.vwap) if state.vwap is not None else None
                )
            state = replace(
                AggregateState.empty(instrument, session_id),
                log_position=state.log_position,
                last_seq=state.last_seq
            )
            self.ledgers[instrument].clear()

        ledger = self.ledgers[instrument]
        if isinstance(event, Tick):
            new_state = apply_tick(state, event, self.policy, ledger, record.position)
            if new_state.filtered > state.filtered:
                self.metrics.increment('policy_filtered', instrument)
        else:
            new_state = apply_correction(state, event, self.policy, ledger, record.position)

        self.states[instrument] = new_state
        self.logger.debug(
            "Applied record",
            instrument=instrument,
            position=record.position,
            seq=event.seq,
            volume=new_state.volume
        )

        if self._changed(state, new_state):
            self._publish(new_state)
        self._signal_progress()
        return new_state

    @staticmethod
    def _changed(before: AggregateState, after: AggregateState) -> bool:
        return (before.volume, before.notional, before.provisional, before.session_id) != (
            after.volume, after.notional, after.provisional, after.session_id
        )

    def _publish(self, state: AggregateState) -> None:
        update = VwapUpdate.from_state(state, self.clock())
        self.metrics.record_vwap(update)
        if self.publisher is not None:
            self.publisher.publish(update)

    def _housekeeping_period(self) -> Optional[float]:
        periods = [
            period for period in (
                getattr(self.publisher, 'throttle_seconds', 0.0),
                self.checkpoints.interval_seconds if self.checkpoints else 0.0,
            )
            if period > 0
        ]
        return min(periods) if periods else None

    def _signal_progress(self) -> None:
        signal, self._progress = self._progress, asyncio.Event()
        signal.set()

    # ========================================================================
    # Consumption
    # ========================================================================

    async def start(self) -> None:
        """Spawn one consumer task per instrument; each restarts from its snapshot first."""
        self._running = True
        for instrument in self.instruments:
            if instrument in self._tasks:
                continue
            self._tasks[instrument] = asyncio.get_running_loop().create_task(
                self._consume(instrument), name=f"vwap-{self.group}-{instrument}"
            )
        if self.housekeeping_seconds is not None and self._housekeeper is None:
            self._housekeeper = asyncio.get_running_loop().create_task(
                self._housekeeping(), name=f"vwap-{self.group}-housekeeping"
            )

    async def run(self) -> None:
        """Start and wait for the consumers; propagates LogUnavailableFatalError."""
        await self.start()
        await asyncio.gather(*self._tasks.values())

    async def stop(self) -> None:
        """Stop consuming and take a final checkpoint of every instrument."""
        self._running = False
        for subscription in self._subscriptions.values():
            subscription.close()
        for task in self._tasks.values():
            task.cancel()
        await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        self._tasks.clear()
        if self._housekeeper is not None:
            self._housekeeper.cancel()
            await asyncio.gather(self._housekeeper, return_exceptions=True)
            self._housekeeper = None
        self._subscriptions.clear()
        for instrument in self.instruments:
            self.checkpoint(instrument, force=True)
        if self.publisher is not None:
            self.publisher.flush()
        self.logger.info("VwapAggregator stopped", group=self.group)

    async def wait_for_position(self, instrument: str, position: int) -> None:
        """Suspend until ``instrument`` has consumed ``position``."""
        while self.next_positions.get(instrument, 0) <= position:
            task = self._tasks.get(instrument)
            if task is not None and task.done():
                task.result()
                return
            await self._progress.wait()

    async def wait_caught_up(self) -> None:
        """Suspend until every instrument has consumed the log's current end."""
        for instrument in self.instruments:
            end = self.log.end_position(instrument)
            if end > 0:
                await self.wait_for_position(instrument, end - 1)

    async def _consume(self, instrument: str) -> None:
        try:
            await self._consume_partition(instrument)
        finally:
            # Wake waiters so they observe a finished task
            self._signal_progress()

    async def _consume_partition(self, instrument: str) -> None:
        loop = asyncio.get_running_loop()
        outage_started: Optional[float] = None

        while self._running:
            try:
                if instrument not in self.states:
                    self.restart(instrument)
                acked = self.log.acknowledged(self.group, instrument)
                start = self.next_positions.get(instrument, 0)
                if acked is not None:
                    start = max(start, acked + 1)

                subscription = self.log.subscribe(instrument, start_position=start, group=self.group)
                self._subscriptions[instrument] = subscription

                for record in subscription.drain():
                    self._handle(subscription, record)
                if outage_started is not None:
                    self.logger.info(
                        "Log available again - resumed",
                        instrument=instrument,
                        position=self.next_positions.get(instrument),
                        outage_seconds=round(loop.time() - outage_started, 3)
                    )
                    outage_started = None

                async for record in subscription:
                    self._handle(subscription, record)
                return

            except LogUnavailableError as e:
                now = loop.time()
                if outage_started is None:
                    outage_started = now
                    self.metrics.increment('log_outages', instrument)
                    self.logger.warning(
                        "Log unavailable - consumer suspended",
                        instrument=instrument,
                        acknowledged=self.log.acknowledged(self.group, instrument),
                        error=str(e)
                    )
                if now - outage_started >= self.grace_period_seconds:
                    self.logger.critical(
                        "Log unavailable beyond grace period",
                        instrument=instrument,
                        grace_seconds=self.grace_period_seconds
                    )
                    raise LogUnavailableFatalError(
                        "Ordered log unavailable beyond grace period",
                        instrument=instrument,
                        group=self.group,
                        outage_seconds=round(now - outage_started, 3)
                    )
                await asyncio.sleep(self.log_retry_seconds)

    async def _housekeeping(self) -> None:
        while self._running:
            await asyncio.sleep(self.housekeeping_seconds)
            if self.publisher is not None:
                self.publisher.release_due()
            for instrument in self.instruments:
                self.checkpoint(instrument)

    def _handle(self, subscription: LogSubscription, record: LogRecord) -> None:
        self.apply(record)
        subscription.acknowledge(record.key, record.position)
        self.checkpoint(record.key)

    # ========================================================================
    # Replay
    # ========================================================================

    def replay(
        self,
        policy: FilterPolicy,
        from_position: StartPosition = 0,
        instruments: Optional[Iterable[str]] = None
    ) -> pd.DataFrame:
        """
        Recompute the VWAP series under ``policy`` without touching this instance.

        See ``tape_vwap.aggregation.replay.replay``.
        """
        from .replay import replay
        return replay(
            self.log,
            policy,
            from_position=from_position,
            instruments=instruments if instruments is not None else self.instruments,
            calendar=self.calendar
        )
