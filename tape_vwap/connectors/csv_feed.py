"""
CSV Tick Feed - File-backed feed for replaying recorded tape.

Columns (header row required):
    instrument, seq, event_time, price, volume, venue      ticks
    conditions                                             optional, ';'-separated
    kind, ref_seq, action, new_price, new_volume           corrections
    live                                                   optional; false = only
                                                           reachable through backfill
    session                                                optional; 'drop' / 'restore'
                                                           rows are session notifications

Values are read as strings so prices reach Decimal without float rounding.
"""

import asyncio
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator, Dict, List, Optional, Union

import pandas as pd

from ..core.constants import Provenance
from ..core.exceptions import DataValidationError, MissingConfigError
from ..core.types import MarketEvent, ensure_utc
from ..monitoring.logger import get_logger
from .feed import FeedBoundary, FeedItem, SessionEvent
from .message_validator import FeedMessageValidator


_FALSE_VALUES = {'0', 'false', 'no', 'n', 'f'}


class CsvTickFeed(FeedBoundary):
    """Streams a CSV tape and answers backfill queries from the same file."""

    def __init__(self, path: Union[str, Path], pace_seconds: float = 0.0):
        """
        Load the tape.

        Args:
            path: CSV file
            pace_seconds: Delay between streamed rows (0 = as fast as possible)
        """
        self.path = Path(path)
        if not self.path.exists():
            raise MissingConfigError("Tick file not found", path=str(self.path))
        self.pace_seconds = float(pace_seconds)
        self.logger = get_logger(__name__)

        frame = pd.read_csv(self.path, dtype=str, keep_default_na=False)
        frame.columns = [c.strip().lower() for c in frame.columns]
        if 'session' not in frame.columns:
            frame['session'] = ''
        if 'live' not in frame.columns:
            frame['live'] = 'true'

        frame['session'] = frame['session'].str.strip().str.lower()
        frame['live'] = ~frame['live'].str.strip().str.lower().isin(_FALSE_VALUES)

        records = frame[frame['session'] == '']
        times = records['event_time'] if 'event_time' in records.columns else pd.Series(dtype=str)
        frame['_ts'] = pd.to_datetime(times, utc=True, errors='coerce', format='ISO8601')

        self.frame = frame
        self.logger.info(
            "CSV tape loaded",
            path=str(self.path),
            rows=len(frame),
            live_rows=int((frame['live'] & (frame['session'] == '')).sum()),
            instruments=sorted(set(records.get('instrument', pd.Series(dtype=str))))
        )

    def _row_to_message(self, row: pd.Series) -> Dict[str, str]:
        message = {
            key: value for key, value in row.items()
            if not key.startswith('_') and key not in ('live', 'session') and value != ''
        }
        if 'conditions' in message:
            message['conditions'] = message['conditions'].replace(';', ',')
        return message

    async def records(self) -> AsyncIterator[FeedItem]:
        for _, row in self.frame.iterrows():
            if row['session']:
                yield SessionEvent(row['session'])
            elif row['live']:
                yield self._row_to_message(row)
            if self.pace_seconds:
                await asyncio.sleep(self.pace_seconds)

    def backfill_query(
        self,
        instrument: str,
        from_time: Optional[datetime],
        to_time: datetime
    ) -> List[MarketEvent]:
        records = self.frame[(self.frame['session'] == '') & (self.frame['instrument'] == instrument)]
        mask = records['_ts'] < pd.Timestamp(ensure_utc(to_time))
        if from_time is not None:
            mask &= records['_ts'] >= pd.Timestamp(ensure_utc(from_time))

        events: List[MarketEvent] = []
        for _, row in records[mask].iterrows():
            message = self._row_to_message(row)
            message['provenance'] = Provenance.HISTORICAL.value
            try:
                events.append(FeedMessageValidator.parse(message))
            except DataValidationError as e:
                self.logger.warning("Skipping invalid historical row", error=str(e))
        return events
