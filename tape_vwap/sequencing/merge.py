"""
Merge - Combine backfilled and buffered live records into committed order.

Rules:
1. Output is sorted by sequence number, one record per sequence number
2. A historical record is authoritative over a live record with the same
   sequence number, even when the payloads differ
3. Records at or below the last committed sequence number are dropped
"""

from typing import Dict, Iterable, List, Optional, Tuple

from ..core.constants import Provenance
from ..core.types import MarketEvent


def prefer(existing: MarketEvent, incoming: MarketEvent) -> MarketEvent:
    """Pick which of two records with the same sequence number survives."""
    if incoming.provenance == Provenance.HISTORICAL and existing.provenance != Provenance.HISTORICAL:
        return incoming
    return existing


def dedupe(events: Iterable[MarketEvent]) -> Dict[int, MarketEvent]:
    """Index records by sequence number, resolving collisions with ``prefer``."""
    by_seq: Dict[int, MarketEvent] = {}
    for event in events:
        current = by_seq.get(event.seq)
        by_seq[event.seq] = event if current is None else prefer(current, event)
    return by_seq


def merge_backfill(
    historical: Iterable[MarketEvent],
    buffered: Iterable[MarketEvent],
    after_seq: Optional[int] = None
) -> List[MarketEvent]:
    """
    Merge a backfill response ahead of live records buffered during an outage.

    Args:
        historical: Records returned by the backfill query (any order)
        buffered: Live records held while the session was down
        after_seq: Last committed sequence number; anything at or below is dropped

    Returns:
        Records in strict ascending sequence order
    """
    # Historical first so it wins ties regardless of the live payload
    by_seq = dedupe(list(historical) + list(buffered))
    merged = sorted(by_seq.values(), key=lambda e: e.seq)
    if after_seq is not None:
        merged = [e for e in merged if e.seq > after_seq]
    return merged


def split_contiguous(
    events: List[MarketEvent],
    next_seq: Optional[int]
) -> Tuple[List[MarketEvent], List[MarketEvent]]:
    """
    Split sorted records at the first hole.

    Args:
        events: Records sorted by sequence number
        next_seq: The sequence number expected next (None accepts the first record)

    Returns:
        (contiguous prefix starting at next_seq, remainder after the first hole)
    """
    expected = next_seq
    for index, event in enumerate(events):
        if expected is not None and event.seq != expected:
            return events[:index], events[index:]
        expected = event.seq + 1
    return list(events), []


def missing_ranges(seqs: Iterable[int], start: int, end: int) -> List[Tuple[int, int]]:
    """
    Inclusive ranges within [start, end] not covered by ``seqs``.

    >>> missing_ranges([3, 4, 7], 2, 8)
    [(2, 2), (5, 6), (8, 8)]
    """
    present = sorted(s for s in set(seqs) if start <= s <= end)
    ranges: List[Tuple[int, int]] = []
    cursor = start
    for seq in present:
        if seq > cursor:
            ranges.append((cursor, seq - 1))
        cursor = seq + 1
    if cursor <= end:
        ranges.append((cursor, end))
    return ranges
