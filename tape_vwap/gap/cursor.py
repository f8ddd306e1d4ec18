"""
Sequence Cursor - Per-instrument sequencing state owned by the gap detector.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from ..core.constants import DEFAULT_REORDER_WINDOW, CursorState
from ..sequencing import ReorderBuffer


@dataclass
class SequenceCursor:
    """
    Mutable continuity state of one instrument.

    Attributes:
        instrument: Instrument id
        state: Current sequencing state
        last_seq: Last sequence number committed to the log
        last_event_time: Event time of that record
        provisional: Set once anything was emitted past an unresolved gap
        buffer: Records held until the hole before them closes
        gap: Outstanding missing range (inclusive; ``None`` end means open)
        skipped: Ranges emitted past without being filled
        dropped_at: When the feed session was lost
    """
    instrument: str
    state: CursorState = CursorState.LIVE
    last_seq: Optional[int] = None
    last_event_time: Optional[datetime] = None
    provisional: bool = False
    buffer: ReorderBuffer = field(default_factory=lambda: ReorderBuffer(DEFAULT_REORDER_WINDOW))
    gap: Optional[Tuple[Optional[int], Optional[int]]] = None
    skipped: List[Tuple[int, int]] = field(default_factory=list)
    dropped_at: Optional[datetime] = None

    def expected_seq(self, initial_sequence: Optional[int] = None) -> Optional[int]:
        """Sequence number that would extend the committed order."""
        if self.last_seq is None:
            return initial_sequence
        return self.last_seq + 1

    def was_skipped(self, seq: int) -> bool:
        return any(start <= seq <= end for start, end in self.skipped)

    def commit(self, seq: int, event_time: datetime) -> None:
        self.last_seq = seq
        self.last_event_time = event_time

    def transition(self, state: CursorState) -> CursorState:
        """Move to ``state``; returns the previous state."""
        previous, self.state = self.state, state
        return previous

    def to_dict(self) -> Dict[str, Any]:
        return {
            'instrument': self.instrument,
            'state': self.state.value,
            'last_seq': self.last_seq,
            'last_event_time': self.last_event_time.isoformat() if self.last_event_time else None,
            'provisional': self.provisional,
            'buffered': len(self.buffer),
            'gap': list(self.gap) if self.gap else None,
            'skipped': [list(r) for r in self.skipped],
            'dropped_at': self.dropped_at.isoformat() if self.dropped_at else None,
        }
