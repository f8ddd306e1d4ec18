"""
Metrics Tracker - Count pipeline events per instrument.

Exports metrics for:
- Operator visibility (duplicates, stalls, unresolved gaps)
- Post-session analysis of backfill and checkpoint health
"""

from collections import defaultdict, deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Deque, Dict, Optional
import json

from ..core.types import VwapUpdate


COUNTERS = (
    'ticks_accepted',
    'duplicates',
    'late',
    'rejected_invalid',
    'rejected_stalled',
    'policy_filtered',
    'gaps_detected',
    'gaps_unresolved',
    'backfill_requests',
    'backfill_retries',
    'backfill_failures',
    'stalls',
    'checkpoint_writes',
    'checkpoint_failures',
    'log_outages',
)


class MetricsTracker:
    """
    Track pipeline counters and a bounded history of VWAP updates.

    Counters are keyed by instrument; ``totals()`` sums across instruments.
    One tracker can be shared by the gap detector and any number of
    aggregators since every call is made from the same event loop.
    """

    def __init__(self, max_history: int = 10000):
        """
        Initialize metrics tracker.

        Args:
            max_history: Max VWAP updates to keep in memory
        """
        self.max_history = max_history
        self.counters: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self.vwap_history: Deque[dict] = deque(maxlen=max_history)

        from .logger import get_logger
        self.logger = get_logger(__name__)

    def increment(self, counter: str, instrument: str, amount: int = 1) -> None:
        """Add ``amount`` to ``counter`` for ``instrument``."""
        if counter not in COUNTERS:
            raise KeyError(f"Unknown counter: {counter}")
        self.counters[instrument][counter] += amount

    def get(self, counter: str, instrument: Optional[str] = None) -> int:
        """Current value of ``counter`` for one instrument, or summed over all."""
        if instrument is not None:
            return self.counters.get(instrument, {}).get(counter, 0)
        return sum(c.get(counter, 0) for c in self.counters.values())

    def totals(self) -> Dict[str, int]:
        return {name: self.get(name) for name in COUNTERS}

    def record_vwap(self, update: VwapUpdate) -> None:
        """Record a published VWAP update."""
        self.vwap_history.append(update.to_dict())

    def export_metrics(self, output_dir: str = "data/metrics") -> Path:
        """Export counters and VWAP history to a timestamped JSON file."""
        output_path = Path(output_dir)
        output_path.mkdir(parents=True, exist_ok=True)

        timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
        metrics_file = output_path / f"metrics_{timestamp}.json"

        with open(metrics_file, 'w') as f:
            json.dump({
                'exported_at': datetime.now(timezone.utc).isoformat(),
                'totals': self.totals(),
                'per_instrument': {k: dict(v) for k, v in self.counters.items()},
                'vwap_history': list(self.vwap_history),
            }, f, indent=2)

        self.logger.info("Metrics exported", path=str(metrics_file))
        return metrics_file

    def get_current_metrics(self) -> Dict:
        """Get latest metrics."""
        return {
            'totals': self.totals(),
            'last_vwap': self.vwap_history[-1] if self.vwap_history else None
        }
