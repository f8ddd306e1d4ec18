"""
VWAP aggregation.

Main Components:
    FilterPolicy: immutable, declarative print filter
    apply_tick / apply_correction: pure transitions over AggregateState
    ContributionLedger: per-print contributions that corrections reverse
    VwapAggregator: live log consumer with checkpoint/restart
    replay: independent recomputation under an alternate policy
"""

from .aggregator import VwapAggregator
from .policy import FilterPolicy
from .replay import final_vwaps, replay
from .vwap import ContributionLedger, apply_correction, apply_tick

__all__ = [
    "ContributionLedger",
    "FilterPolicy",
    "VwapAggregator",
    "apply_correction",
    "apply_tick",
    "final_vwaps",
    "replay",
]
