"""
Sequencing utilities shared by the gap detector.

Main Components:
    ReorderBuffer: bounded out-of-order holding area keyed by sequence number
    merge_backfill: historical-authoritative merge of backfill and live records
    split_contiguous: cut a sorted stream at its first hole
    missing_ranges: enumerate uncovered sequence ranges
"""

from .merge import dedupe, merge_backfill, missing_ranges, prefer, split_contiguous
from .reorder_buffer import ReorderBuffer

__all__ = [
    "ReorderBuffer",
    "dedupe",
    "merge_backfill",
    "missing_ranges",
    "prefer",
    "split_contiguous",
]
