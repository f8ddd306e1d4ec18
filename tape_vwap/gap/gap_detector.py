"""
Gap Detector - Guarantees a complete, strictly ordered record stream per
instrument on the path from the feed session to the ordered log.

Per-instrument state machine:
    Live → Disconnected         session lost
    Disconnected → Backfilling  session restored; backfill [last event time, now)
    Backfilling → Reconciling   backfill complete; merge ahead of buffered live records
    Reconciling → Live          merged stream emitted in order
    any → Stalled               backfill retry budget exhausted
    Stalled → Live              operator calls clear_stalled()

In Live, a record ahead of the expected sequence number is held in the
reorder buffer and a backfill for the missing range is requested. Live
arrivals that close the hole release the buffer and cancel the backfill.
A buffer that outgrows the reorder window is emitted flagged
``gap_unresolved`` so the pipeline never blocks indefinitely.
"""

from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from ..connectors.message_validator import FeedMessageValidator
from ..core.constants import DEFAULT_REORDER_WINDOW, CursorState, RejectReason
from ..core.exceptions import (
    BackfillError,
    DataValidationError,
    LogUnavailableError,
    SequenceGapUnresolvedError,
)
from ..core.types import AcceptResult, Correction, MarketEvent, Tick
from ..log.ordered_log import OrderedLog
from ..monitoring.logger import get_logger
from ..monitoring.metrics_tracker import MetricsTracker
from ..sequencing import ReorderBuffer, merge_backfill, missing_ranges, split_contiguous
from .backfill import BackfillController, BackfillQuery, BackfillRequest
from .cursor import SequenceCursor


RawRecord = Union[Tick, Correction, Mapping[str, Any]]


class GapDetector:
    """
    Sequencing gatekeeper between the feed session and the ordered log.

    Everything here runs on the event loop thread; backfills are the only
    asynchronous work and they report back through callbacks.
    """

    def __init__(
        self,
        log: OrderedLog,
        backfill_query: Optional[BackfillQuery] = None,
        config: Optional[dict] = None,
        metrics: Optional[MetricsTracker] = None,
        instruments: Optional[Iterable[str]] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """
        Initialize gap detector.

        Args:
            log: Ordered log the committed stream is published to
            backfill_query: Feed historical query (sync or async)
            config: Full system config; reads the ``gap`` and ``backfill`` sections
            metrics: Shared metrics tracker
            instruments: Accepted instrument ids (None accepts any)
            clock: Wall-clock source, injectable for tests
        """
        config = config or {}
        gap_config = config.get('gap', {}) or {}

        self.log = log
        self.metrics = metrics or MetricsTracker()
        self.instruments = set(instruments) if instruments is not None else None
        self.clock = clock or (lambda: datetime.now(timezone.utc))

        self.reorder_window = int(gap_config.get('reorder_window', DEFAULT_REORDER_WINDOW))
        initial = gap_config.get('initial_sequence')
        self.initial_sequence: Optional[int] = int(initial) if initial is not None else None

        self.cursors: Dict[str, SequenceCursor] = {}
        self.session_up = True

        self.backfill = BackfillController(
            backfill_query,
            on_complete=self._on_backfill_complete,
            on_failure=self._on_backfill_failed,
            config=config.get('backfill', {}) or {},
            metrics=self.metrics
        )

        self.logger = get_logger(__name__)
        self.logger.info(
            "GapDetector initialized",
            reorder_window=self.reorder_window,
            initial_sequence=self.initial_sequence,
            backfill_timeout=self.backfill.timeout,
            backfill_retries=self.backfill.max_retries
        )

    # ========================================================================
    # Feed boundary
    # ========================================================================

    def on_tick(self, raw: RawRecord) -> AcceptResult:
        """
        Offer one record from the feed.

        Args:
            raw: Tick, Correction, or a raw feed mapping

        Returns:
            AcceptResult; accepted records are committed to the log now or
            held until the hole before them is filled

        Must be called from a running event loop: a detected gap schedules
        its backfill as an asyncio task.
        """
        try:
            event = self._normalize(raw)
        except DataValidationError as e:
            instrument = raw.get('instrument') if isinstance(raw, Mapping) else None
            self.logger.warning("Rejected invalid record", error=str(e))
            self.metrics.increment('rejected_invalid', str(instrument or 'unknown'))
            return AcceptResult.reject(RejectReason.INVALID.value, instrument)

        cursor = self._cursor(event.instrument)

        if cursor.state == CursorState.STALLED:
            self.metrics.increment('rejected_stalled', event.instrument)
            return AcceptResult.reject(RejectReason.STALLED.value, event.instrument, event.seq)

        if cursor.last_seq is not None and event.seq <= cursor.last_seq:
            return self._reject_behind(cursor, event)

        if event.seq in cursor.buffer:
            if cursor.buffer.add(event):
                return AcceptResult.accept(event, "replaced")
            self.logger.debug("Duplicate buffered record", instrument=event.instrument, seq=event.seq)
            self.metrics.increment('duplicates', event.instrument)
            return AcceptResult.reject(RejectReason.DUPLICATE.value, event.instrument, event.seq)

        if cursor.state != CursorState.LIVE:
            cursor.buffer.add(event)
            return AcceptResult.accept(event, "buffered")

        expected = cursor.expected_seq(self.initial_sequence)
        if len(cursor.buffer) and (expected is None or expected in cursor.buffer):
            # Records held back by a log outage go first
            self._advance(cursor)
            expected = cursor.expected_seq(self.initial_sequence)

        if expected is not None and event.seq < expected:
            self.metrics.increment('late', event.instrument)
            return AcceptResult.reject(RejectReason.LATE.value, event.instrument, event.seq)

        if expected is None or event.seq == expected:
            if not self._emit(cursor, [event]):
                return AcceptResult.accept(event, "buffered")
            self._advance(cursor)
            self._track_gap(cursor)
            return AcceptResult.accept(event)

        cursor.buffer.add(event)
        if cursor.buffer.overflowing:
            self._flush_unresolved(cursor, "reorder window exceeded")
        else:
            self._track_gap(cursor)
        return AcceptResult.accept(event, "buffered")

    def on_session_drop(self) -> None:
        """Feed session lost: every tracked instrument becomes Disconnected."""
        self.session_up = False
        now = self.clock()
        for cursor in self.cursors.values():
            if cursor.state == CursorState.STALLED:
                continue
            previous = cursor.transition(CursorState.DISCONNECTED)
            cursor.dropped_at = now
            self.logger.info(
                "Instrument disconnected",
                instrument=cursor.instrument,
                previous_state=previous.value,
                last_seq=cursor.last_seq
            )

    def on_session_restore(self) -> None:
        """Feed session back: backfill each Disconnected instrument from its last event time."""
        self.session_up = True
        now = self.clock()
        for cursor in list(self.cursors.values()):
            if cursor.state != CursorState.DISCONNECTED:
                continue
            from_seq = cursor.expected_seq(self.initial_sequence)
            self.logger.info(
                "Instrument backfilling after reconnect",
                instrument=cursor.instrument,
                from_time=cursor.last_event_time.isoformat() if cursor.last_event_time else None,
                buffered=len(cursor.buffer)
            )
            self.backfill.request(BackfillRequest(
                instrument=cursor.instrument,
                from_seq=from_seq,
                to_seq=None,
                from_time=cursor.last_event_time,
                to_time=now
            ))
            cursor.transition(CursorState.BACKFILLING)
            cursor.gap = (from_seq, None)

    def request_backfill(
        self,
        instrument: str,
        from_seq: Optional[int],
        to_seq: Optional[int]
    ) -> None:
        """
        Fetch ``[from_seq, to_seq]`` for ``instrument`` from the feed.

        Idempotent: an identical outstanding request is left running. A
        different window supersedes (cancels) the outstanding one.
        """
        cursor = self._cursor(instrument)
        self.backfill.request(BackfillRequest(
            instrument=instrument,
            from_seq=from_seq,
            to_seq=to_seq,
            from_time=cursor.last_event_time,
            to_time=self.clock()
        ))
        # Recorded only once the backfill task exists
        cursor.gap = (from_seq, to_seq)

    def clear_stalled(self, instrument: str) -> bool:
        """
        Operator action: return a Stalled instrument to Live.

        Records buffered before the stall are kept; if a hole is still open
        a fresh backfill (with a fresh retry budget) is requested for it.

        Returns:
            True if the instrument was stalled
        """
        cursor = self.cursors.get(instrument)
        if cursor is None or cursor.state != CursorState.STALLED:
            return False
        cursor.transition(CursorState.LIVE if self.session_up else CursorState.DISCONNECTED)
        cursor.gap = None
        self.logger.warning("Stalled instrument cleared by operator", instrument=instrument)
        if cursor.state == CursorState.LIVE:
            self._advance(cursor)
            self._track_gap(cursor)
        return True

    def retry_pending(self) -> int:
        """Re-attempt publication of records held back by a log outage."""
        emitted = 0
        for cursor in self.cursors.values():
            if cursor.state != CursorState.LIVE:
                continue
            before = cursor.last_seq
            self._advance(cursor)
            if cursor.last_seq != before:
                emitted += 1
                self._track_gap(cursor)
        return emitted

    def recover_from_log(self, log: Optional[OrderedLog] = None) -> None:
        """Rebuild cursors from the last committed record of every partition."""
        log = log or self.log
        for key in log.keys():
            if self.instruments is not None and key not in self.instruments:
                continue
            record = log.last_record(key)
            if record is None:
                continue
            cursor = self._cursor(key)
            cursor.commit(record.seq, record.event_time)
            cursor.provisional = cursor.provisional or record.payload.gap_unresolved
            self.logger.info(
                "Cursor recovered from log",
                instrument=key,
                last_seq=record.seq,
                position=record.position
            )

    def status(self) -> Dict[str, Dict[str, Any]]:
        """Per-instrument cursor snapshot for operators."""
        return {instrument: cursor.to_dict() for instrument, cursor in sorted(self.cursors.items())}

    def stalled(self) -> List[str]:
        return sorted(i for i, c in self.cursors.items() if c.state == CursorState.STALLED)

    async def wait_idle(self) -> None:
        """Wait for every outstanding backfill to finish."""
        await self.backfill.wait_idle()

    def close(self) -> None:
        self.backfill.cancel_all()

    # ========================================================================
    # Backfill callbacks
    # ========================================================================

    def _on_backfill_complete(self, request: BackfillRequest, records: List[MarketEvent]) -> None:
        cursor = self._cursor(request.instrument)
        if cursor.state == CursorState.STALLED:
            return

        from_session = cursor.state == CursorState.BACKFILLING
        cursor.transition(CursorState.RECONCILING)
        cursor.gap = None

        expected = cursor.expected_seq(self.initial_sequence)
        merged = merge_backfill(records, cursor.buffer.drain(), after_seq=cursor.last_seq)
        prefix, remainder = split_contiguous(merged, expected)

        self.logger.info(
            "Reconciling backfill",
            instrument=cursor.instrument,
            historical=len(records),
            merged=len(merged),
            contiguous=len(prefix),
            after_session_loss=from_session
        )

        if not self._emit(cursor, prefix):
            for event in remainder:
                cursor.buffer.add(event)
            cursor.transition(CursorState.LIVE if self.session_up else CursorState.DISCONNECTED)
            return

        if remainder:
            self._emit_past_hole(cursor, remainder, "backfill incomplete")

        cursor.transition(CursorState.LIVE if self.session_up else CursorState.DISCONNECTED)

    def _on_backfill_failed(self, request: BackfillRequest, error: BackfillError) -> None:
        cursor = self._cursor(request.instrument)
        cursor.transition(CursorState.STALLED)
        cursor.gap = None
        self.metrics.increment('stalls', cursor.instrument)
        self.logger.critical(
            "Instrument STALLED: backfill retry budget exhausted",
            instrument=cursor.instrument,
            error=str(error),
            last_seq=cursor.last_seq,
            buffered=len(cursor.buffer)
        )

    # ========================================================================
    # Internals
    # ========================================================================

    def _normalize(self, raw: RawRecord) -> MarketEvent:
        if isinstance(raw, (Tick, Correction)):
            event = raw
        elif isinstance(raw, Mapping):
            event = FeedMessageValidator.parse(raw)
        else:
            raise DataValidationError(f"Unsupported record type: {type(raw).__name__}")
        if self.instruments is not None and event.instrument not in self.instruments:
            raise DataValidationError(
                f"Unknown instrument: {event.instrument}",
                instrument=event.instrument
            )
        return event

    def _cursor(self, instrument: str) -> SequenceCursor:
        cursor = self.cursors.get(instrument)
        if cursor is None:
            cursor = SequenceCursor(
                instrument=instrument,
                state=CursorState.LIVE if self.session_up else CursorState.DISCONNECTED,
                buffer=ReorderBuffer(self.reorder_window)
            )
            self.cursors[instrument] = cursor
        return cursor

    def _reject_behind(self, cursor: SequenceCursor, event: MarketEvent) -> AcceptResult:
        if cursor.was_skipped(event.seq):
            self.logger.warning(
                "Late record behind an unresolved gap",
                instrument=event.instrument,
                seq=event.seq,
                last_seq=cursor.last_seq
            )
            self.metrics.increment('late', event.instrument)
            return AcceptResult.reject(RejectReason.LATE.value, event.instrument, event.seq)
        self.logger.debug("Duplicate record", instrument=event.instrument, seq=event.seq)
        self.metrics.increment('duplicates', event.instrument)
        return AcceptResult.reject(RejectReason.DUPLICATE.value, event.instrument, event.seq)

    def _emit(self, cursor: SequenceCursor, events: List[MarketEvent]) -> bool:
        """
        Publish ``events`` in order.

        On a log outage the unpublished tail goes back into the buffer and
        False is returned; ``retry_pending`` or the next arrival resumes it.
        """
        for index, event in enumerate(events):
            try:
                self.log.publish(event.instrument, event, event.provenance)
            except LogUnavailableError as e:
                for pending in events[index:]:
                    cursor.buffer.add(pending)
                self.metrics.increment('log_outages', cursor.instrument)
                self.logger.warning(
                    "Log unavailable, holding records",
                    instrument=cursor.instrument,
                    held=len(events) - index,
                    error=str(e)
                )
                return False
            cursor.commit(event.seq, event.event_time)
            if event.gap_unresolved:
                cursor.provisional = True
            self.metrics.increment('ticks_accepted', cursor.instrument)
            self.logger.debug(
                "Committed record",
                instrument=event.instrument,
                seq=event.seq,
                provenance=event.provenance.value
            )
        return True

    def _advance(self, cursor: SequenceCursor) -> None:
        """Release whatever the buffer now holds in order."""
        while len(cursor.buffer):
            expected = cursor.expected_seq(self.initial_sequence)
            lowest = cursor.buffer.lowest_seq
            if expected is None:
                expected = lowest
            if expected in cursor.buffer:
                run = cursor.buffer.pop_contiguous(expected)
            elif cursor.buffer.get(lowest).gap_unresolved:
                # Already declared past a hole before a log outage held it back
                cursor.skipped.append((expected, lowest - 1))
                run = cursor.buffer.pop_contiguous(lowest)
            else:
                return
            if not self._emit(cursor, run):
                return

    def _track_gap(self, cursor: SequenceCursor) -> None:
        """Keep exactly one backfill covering the hole before the buffered records."""
        if not len(cursor.buffer):
            if cursor.gap is not None:
                self.logger.info(
                    "Gap closed by live arrivals",
                    instrument=cursor.instrument,
                    last_seq=cursor.last_seq
                )
                self.backfill.cancel(cursor.instrument)
                cursor.gap = None
            return

        expected = cursor.expected_seq(self.initial_sequence)
        if expected is None or expected in cursor.buffer:
            # No hole: the buffer is waiting on the log, not on the feed
            return
        to_seq = cursor.buffer.highest_seq - 1
        if cursor.gap is not None:
            from_seq, current_to = cursor.gap
            if from_seq is not None and from_seq <= expected and (current_to is None or to_seq <= current_to):
                return
            if current_to is not None:
                to_seq = max(to_seq, current_to)

        if cursor.gap is None:
            self.metrics.increment('gaps_detected', cursor.instrument)
            self.logger.info(
                "Sequence gap detected",
                instrument=cursor.instrument,
                expected=expected,
                received=cursor.buffer.lowest_seq
            )
        self.request_backfill(cursor.instrument, expected, to_seq)

    def _flush_unresolved(self, cursor: SequenceCursor, reason: str) -> None:
        """Give up on the open hole and emit everything buffered, flagged."""
        self.backfill.cancel(cursor.instrument)
        cursor.gap = None
        self._emit_past_hole(cursor, cursor.buffer.drain(), reason)

    def _emit_past_hole(self, cursor: SequenceCursor, events: List[MarketEvent], reason: str) -> None:
        expected = cursor.expected_seq(self.initial_sequence)
        if expected is None:
            expected = events[0].seq
        holes = missing_ranges([e.seq for e in events], expected, events[-1].seq)
        cursor.skipped.extend(holes)
        cursor.provisional = True

        error = SequenceGapUnresolvedError(
            f"Emitting past unresolved gap: {reason}",
            instrument=cursor.instrument,
            missing=holes
        )
        self.metrics.increment('gaps_unresolved', cursor.instrument)
        self.logger.warning(str(error), flagged=len(events))

        self._emit(cursor, [e.flagged() for e in events])
