"""
Reorder Buffer - Hold out-of-order records until the gap before them closes.
"""

from typing import Dict, List, Optional

from ..core.types import MarketEvent
from .merge import prefer


class ReorderBuffer:
    """
    Bounded per-instrument buffer keyed by sequence number.

    The buffer never emits anything on its own; the gap detector pops the
    contiguous run once the expected sequence number arrives, or drains it
    whole when ``overflowing`` says the reorder window has been exceeded.
    """

    def __init__(self, capacity: int):
        if capacity < 0:
            raise ValueError("capacity must be >= 0")
        self.capacity = capacity
        self._events: Dict[int, MarketEvent] = {}

    def __len__(self) -> int:
        return len(self._events)

    def __contains__(self, seq: int) -> bool:
        return seq in self._events

    @property
    def overflowing(self) -> bool:
        return len(self._events) > self.capacity

    @property
    def lowest_seq(self) -> Optional[int]:
        return min(self._events) if self._events else None

    @property
    def highest_seq(self) -> Optional[int]:
        return max(self._events) if self._events else None

    def get(self, seq: int) -> Optional[MarketEvent]:
        return self._events.get(seq)

    def add(self, event: MarketEvent) -> bool:
        """
        Store ``event``.

        Returns:
            False if a record with the same sequence number was already held
            and kept (i.e. ``event`` is a duplicate), True otherwise
        """
        current = self._events.get(event.seq)
        if current is None:
            self._events[event.seq] = event
            return True
        chosen = prefer(current, event)
        self._events[event.seq] = chosen
        return chosen is event

    def pop_contiguous(self, next_seq: int) -> List[MarketEvent]:
        """Remove and return the run of records starting exactly at ``next_seq``."""
        run: List[MarketEvent] = []
        while next_seq in self._events:
            run.append(self._events.pop(next_seq))
            next_seq += 1
        return run

    def drain(self) -> List[MarketEvent]:
        """Remove and return every held record in sequence order."""
        events = [self._events[s] for s in sorted(self._events)]
        self._events.clear()
        return events

    def discard_through(self, seq: int) -> int:
        """Drop records at or below ``seq``; returns how many were dropped."""
        stale = [s for s in self._events if s <= seq]
        for s in stale:
            del self._events[s]
        return len(stale)
