"""
Backfill Controller - Asynchronous historical queries with bounded retry.

Each instrument has at most one outstanding request. Requesting the same
window again reuses the in-flight task; requesting a different window
cancels the superseded one.

Retry schedule:
    attempt 0 → query, bounded by timeout
    attempt n → sleep min(base * 2**(n-1), max), query again
After ``max_retries`` failed retries the failure callback receives a
BackfillExhaustedError.
"""

import asyncio
import inspect
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from ..core.constants import (
    BACKFILL_BACKOFF_BASE_SECONDS,
    BACKFILL_BACKOFF_MAX_SECONDS,
    BACKFILL_MAX_RETRIES,
    BACKFILL_TIMEOUT_SECONDS,
    Provenance,
)
from ..core.exceptions import BackfillError, BackfillExhaustedError, BackfillTimeoutError
from ..core.types import MarketEvent
from ..monitoring.logger import get_logger
from ..monitoring.metrics_tracker import MetricsTracker


BackfillQuery = Callable[[str, Optional[datetime], datetime], Iterable[MarketEvent]]


@dataclass(frozen=True)
class BackfillRequest:
    """
    One historical window to fetch for an instrument.

    ``from_seq``/``to_seq`` bound the sequence numbers kept from the
    response (inclusive, ``None`` = unbounded). ``from_time``/``to_time``
    are what the feed is actually asked for; a ``None`` start means the
    beginning of the current trading session.
    """
    instrument: str
    from_seq: Optional[int]
    to_seq: Optional[int]
    from_time: Optional[datetime]
    to_time: datetime

    def covers(self, seq: int) -> bool:
        if self.from_seq is not None and seq < self.from_seq:
            return False
        if self.to_seq is not None and seq > self.to_seq:
            return False
        return True

    def same_window(self, other: "BackfillRequest") -> bool:
        return (self.instrument, self.from_seq, self.to_seq) == (
            other.instrument, other.from_seq, other.to_seq
        )


class BackfillController:
    """
    Runs backfill queries as asyncio tasks, one per instrument.

    Never blocks the caller: ``request`` schedules a task and returns it.
    Synchronous queries run in a worker thread so a slow vendor call cannot
    stall other instruments on the event loop.
    """

    def __init__(
        self,
        query: Optional[BackfillQuery],
        on_complete: Callable[[BackfillRequest, List[MarketEvent]], None],
        on_failure: Callable[[BackfillRequest, BackfillError], None],
        config: Optional[dict] = None,
        metrics: Optional[MetricsTracker] = None
    ):
        """
        Initialize backfill controller.

        Args:
            query: Feed backfill query (sync or async); None answers every
                request with an empty result
            on_complete: Called with the request and its filtered records
            on_failure: Called when the retry budget is exhausted
            config: ``backfill`` config section
            metrics: Shared metrics tracker
        """
        config = config or {}
        self.query = query
        self.on_complete = on_complete
        self.on_failure = on_failure
        self.timeout = float(config.get('timeout_seconds', BACKFILL_TIMEOUT_SECONDS))
        self.max_retries = int(config.get('max_retries', BACKFILL_MAX_RETRIES))
        self.backoff_base = float(config.get('backoff_base_seconds', BACKFILL_BACKOFF_BASE_SECONDS))
        self.backoff_max = float(config.get('backoff_max_seconds', BACKFILL_BACKOFF_MAX_SECONDS))
        self.metrics = metrics

        self._requests: Dict[str, BackfillRequest] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

        self.logger = get_logger(__name__)

    def outstanding(self, instrument: str) -> Optional[BackfillRequest]:
        return self._requests.get(instrument)

    def request(self, request: BackfillRequest) -> asyncio.Task:
        """
        Schedule ``request``, superseding any different outstanding window.

        Returns:
            The task fetching the window (the existing one for a repeat request)
        """
        current = self._requests.get(request.instrument)
        if current is not None and current.same_window(request):
            return self._tasks[request.instrument]
        if current is not None:
            self.logger.info(
                "Superseding backfill",
                instrument=request.instrument,
                old_window=(current.from_seq, current.to_seq),
                new_window=(request.from_seq, request.to_seq)
            )
            self.cancel(request.instrument)

        self.logger.info(
            "Backfill requested",
            instrument=request.instrument,
            from_seq=request.from_seq,
            to_seq=request.to_seq,
            from_time=request.from_time.isoformat() if request.from_time else None,
            to_time=request.to_time.isoformat()
        )
        if self.metrics:
            self.metrics.increment('backfill_requests', request.instrument)

        task = asyncio.get_running_loop().create_task(
            self._run(request), name=f"backfill-{request.instrument}"
        )
        self._requests[request.instrument] = request
        self._tasks[request.instrument] = task
        return task

    def cancel(self, instrument: str) -> bool:
        """Cancel the outstanding backfill for ``instrument``, if any."""
        self._requests.pop(instrument, None)
        task = self._tasks.pop(instrument, None)
        if task is None:
            return False
        if not task.done():
            task.cancel()
            self.logger.debug("Backfill cancelled", instrument=instrument)
        return True

    def cancel_all(self) -> None:
        for instrument in list(self._tasks):
            self.cancel(instrument)

    async def wait_idle(self) -> None:
        """Wait until no backfill is outstanding (including follow-up requests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _backoff(self, retry: int) -> float:
        return min(self.backoff_base * (2 ** retry), self.backoff_max)

    async def _query(self, request: BackfillRequest) -> List[MarketEvent]:
        if self.query is None:
            return []
        if inspect.iscoroutinefunction(self.query):
            result = await self.query(request.instrument, request.from_time, request.to_time)
        else:
            result = await asyncio.to_thread(
                self.query, request.instrument, request.from_time, request.to_time
            )
            if inspect.isawaitable(result):
                result = await result
        return list(result or [])

    def _filter(self, request: BackfillRequest, records: List[MarketEvent]) -> List[MarketEvent]:
        kept = []
        for record in records:
            if record.instrument != request.instrument or not request.covers(record.seq):
                continue
            kept.append(record.with_provenance(Provenance.HISTORICAL))
        return kept

    def _finish(self, request: BackfillRequest) -> bool:
        """Drop bookkeeping for ``request``; False if it was superseded meanwhile."""
        if self._requests.get(request.instrument) is not request:
            return False
        del self._requests[request.instrument]
        self._tasks.pop(request.instrument, None)
        return True

    async def _run(self, request: BackfillRequest) -> None:
        last_error: Optional[BackfillError] = None

        for attempt in range(self.max_retries + 1):
            if attempt > 0:
                delay = self._backoff(attempt - 1)
                if self.metrics:
                    self.metrics.increment('backfill_retries', request.instrument)
                self.logger.warning(
                    "Retrying backfill",
                    instrument=request.instrument,
                    attempt=attempt,
                    delay=delay,
                    error=str(last_error)
                )
                await asyncio.sleep(delay)

            try:
                records = await asyncio.wait_for(self._query(request), timeout=self.timeout)
            except asyncio.TimeoutError:
                last_error = BackfillTimeoutError(
                    f"Backfill attempt timed out after {self.timeout}s",
                    instrument=request.instrument,
                    attempt=attempt
                )
                continue
            except asyncio.CancelledError:
                raise
            except Exception as e:
                last_error = BackfillError(
                    f"Backfill query failed: {e}",
                    instrument=request.instrument,
                    attempt=attempt
                )
                continue

            if self._finish(request):
                kept = self._filter(request, records)
                self.logger.info(
                    "Backfill complete",
                    instrument=request.instrument,
                    received=len(records),
                    kept=len(kept),
                    attempts=attempt + 1
                )
                self.on_complete(request, kept)
            return

        if self._finish(request):
            if self.metrics:
                self.metrics.increment('backfill_failures', request.instrument)
            self.on_failure(request, BackfillExhaustedError(
                f"Backfill failed after {self.max_retries + 1} attempts",
                instrument=request.instrument,
                from_seq=request.from_seq,
                to_seq=request.to_seq,
                last_error=str(last_error)
            ))
