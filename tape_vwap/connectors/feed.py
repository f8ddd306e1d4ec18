"""
Feed boundary contract and the session adapter that drives the gap detector.

A feed produces an ordered stream of raw records interleaved with session
notifications, and answers historical queries for backfill. The transport
and wire protocol of a real vendor feed live behind this interface.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, AsyncIterator, Iterable, Mapping, Optional, Union

from ..core.types import AcceptResult, MarketEvent
from ..monitoring.logger import get_logger

if TYPE_CHECKING:
    from ..gap.gap_detector import GapDetector


class SessionEvent(str, Enum):
    """Session notifications carried in a feed stream."""
    DROP = "drop"
    RESTORE = "restore"


FeedItem = Union[MarketEvent, Mapping[str, Any], SessionEvent]


class FeedBoundary(ABC):
    """Upstream feed contract."""

    @abstractmethod
    def records(self) -> AsyncIterator[FeedItem]:
        """Live records and session notifications, in arrival order."""

    @abstractmethod
    def backfill_query(
        self,
        instrument: str,
        from_time: Optional[datetime],
        to_time: datetime
    ) -> Iterable[MarketEvent]:
        """
        Historical records for ``instrument`` with event time in [from_time, to_time).

        ``from_time`` None means from the start of the trading session. May be
        implemented as a coroutine.
        """

    def heartbeat(self) -> bool:
        """True while the session is healthy."""
        return True


class FeedSession:
    """
    Adapts a FeedBoundary onto a GapDetector.

    ``receive`` / ``on_drop`` / ``on_restore`` can also be called directly by
    a transport that pushes instead of being iterated.
    """

    def __init__(self, boundary: FeedBoundary, detector: "GapDetector"):
        self.boundary = boundary
        self.detector = detector
        self.received = 0
        self.rejected = 0
        self.connected = True
        self.logger = get_logger(__name__)

    def receive(self, raw: FeedItem) -> AcceptResult:
        self.received += 1
        result = self.detector.on_tick(raw)
        if not result.accepted:
            self.rejected += 1
            self.logger.debug(
                "Feed record rejected",
                instrument=result.instrument,
                seq=result.seq,
                reason=result.reason
            )
        return result

    def on_drop(self) -> None:
        if not self.connected:
            return
        self.connected = False
        self.logger.warning("Feed session lost")
        self.detector.on_session_drop()

    def on_restore(self) -> None:
        if self.connected:
            return
        self.connected = True
        self.logger.info("Feed session restored")
        self.detector.on_session_restore()

    async def run(self) -> None:
        """Pump the boundary's stream into the detector until it ends."""
        async for item in self.boundary.records():
            if item == SessionEvent.DROP:
                self.on_drop()
            elif item == SessionEvent.RESTORE:
                self.on_restore()
            else:
                self.receive(item)
            # Let consumers and backfills run between records
            await asyncio.sleep(0)
        self.logger.info(
            "Feed stream ended",
            received=self.received,
            rejected=self.rejected
        )
