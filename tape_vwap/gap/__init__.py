"""
Gap detection and backfill reconciliation.

Main Components:
    GapDetector: per-instrument continuity state machine in front of the log
    BackfillController: async historical queries with timeout and bounded retry
    SequenceCursor: per-instrument sequencing state
"""

from .backfill import BackfillController, BackfillRequest
from .cursor import SequenceCursor
from .gap_detector import GapDetector

__all__ = [
    "BackfillController",
    "BackfillRequest",
    "GapDetector",
    "SequenceCursor",
]
