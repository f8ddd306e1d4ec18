"""
Checkpoint Manager - Periodic, best-effort snapshots of aggregate state.

Critical Design Principles:
1. A checkpoint is taken only between record applications
2. A failed write is logged and counted, never raised to the consumer
3. The next interval retries; replay from the log is the fallback
4. A snapshot from another trading session is never resumed
"""

from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from ..core.constants import CHECKPOINT_INTERVAL_SECONDS
from ..core.exceptions import CheckpointWriteError, StateError
from ..core.types import AggregateState, Contribution, Snapshot
from ..monitoring.logger import get_logger
from ..monitoring.metrics_tracker import MetricsTracker
from .snapshot_store import SnapshotStore


class CheckpointManager:
    """Decides when to snapshot an instrument and persists it through a store."""

    def __init__(
        self,
        store: SnapshotStore,
        interval_seconds: float = CHECKPOINT_INTERVAL_SECONDS,
        metrics: Optional[MetricsTracker] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """
        Initialize checkpoint manager.

        Args:
            store: Snapshot store to write to
            interval_seconds: Minimum spacing between snapshots per instrument
            metrics: Shared metrics tracker
            clock: Wall-clock source, injectable for tests
        """
        self.store = store
        self.interval_seconds = float(interval_seconds)
        self.metrics = metrics
        self.clock = clock or (lambda: datetime.now(timezone.utc))

        self._last_saved: Dict[str, datetime] = {}
        self._last_position: Dict[str, Optional[int]] = {}

        self.logger = get_logger(__name__)

    def due(self, instrument: str) -> bool:
        last = self._last_saved.get(instrument)
        if last is None:
            return True
        return (self.clock() - last).total_seconds() >= self.interval_seconds

    def maybe_save(
        self,
        state: AggregateState,
        contributions: Dict[int, Contribution]
    ) -> bool:
        """Save if the interval elapsed since this instrument's last snapshot."""
        if not self.due(state.instrument):
            return False
        return self.save(state, contributions)

    def save(
        self,
        state: AggregateState,
        contributions: Dict[int, Contribution]
    ) -> bool:
        """
        Persist ``state`` and its contribution ledger.

        Returns:
            True if written; False if skipped (nothing new) or failed
        """
        if state.log_position is None:
            return False
        if self._last_position.get(state.instrument) == state.log_position:
            return False

        now = self.clock()
        snapshot = Snapshot.capture(state, contributions, timestamp=now)
        try:
            self.store.put(state.instrument, snapshot)
        except CheckpointWriteError as e:
            # Retried at the next interval
            self._last_saved[state.instrument] = now
            if self.metrics:
                self.metrics.increment('checkpoint_failures', state.instrument)
            self.logger.warning(
                "Checkpoint write failed",
                instrument=state.instrument,
                log_position=state.log_position,
                error=str(e)
            )
            return False

        self._last_saved[state.instrument] = now
        self._last_position[state.instrument] = state.log_position
        if self.metrics:
            self.metrics.increment('checkpoint_writes', state.instrument)
        self.logger.debug(
            "Checkpoint saved",
            instrument=state.instrument,
            log_position=state.log_position,
            volume=state.volume,
            notional=str(state.notional)
        )
        return True

    def load(self, instrument: str, session_id: Optional[str]) -> Optional[Snapshot]:
        """
        Latest usable snapshot for ``instrument`` in ``session_id``.

        Returns:
            Snapshot, or None when absent, unreadable, or from another session
        """
        try:
            snapshot = self.store.get(instrument)
        except StateError as e:
            self.logger.error("Snapshot load failed", instrument=instrument, error=str(e))
            return None

        if snapshot is None:
            self.logger.info("No snapshot found - starting fresh", instrument=instrument)
            return None

        if snapshot.session_id != session_id:
            self.logger.info(
                "Snapshot belongs to another session - starting fresh",
                instrument=instrument,
                snapshot_session=snapshot.session_id,
                current_session=session_id
            )
            return None

        self._last_position[instrument] = snapshot.log_position
        self.logger.info(
            "Snapshot loaded",
            instrument=instrument,
            log_position=snapshot.log_position,
            volume=snapshot.volume,
            timestamp=snapshot.timestamp.isoformat()
        )
        return snapshot
