"""
Ordered Log - Append-only, per-key-ordered, replayable record stream.

Contract relied upon by the gap detector and the aggregators:
1. Strict order within a partition (one partition per instrument key)
2. Retention of at least one trading session
3. Replay from any position or any event timestamp
4. Independent consumer groups, each with its own acknowledged position

``InMemoryOrderedLog`` is the in-process reference implementation used for
wiring and tests. Storage, replication and partition routing of a
production log live outside this package.
"""

import asyncio
import fnmatch
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, Iterator, List, Mapping, Optional, Tuple, Union

from ..core.constants import Provenance
from ..core.exceptions import LogUnavailableError
from ..core.types import LogRecord, MarketEvent, ensure_utc
from . import envelope


logger = logging.getLogger(__name__)

StartPosition = Union[int, Mapping[str, int]]

_GLOB_CHARS = set('*?[')


class OrderedLog(ABC):
    """Ordered log contract."""

    @abstractmethod
    def publish(
        self,
        key: str,
        record: MarketEvent,
        provenance: Optional[Provenance] = None
    ) -> int:
        """Append ``record`` to partition ``key``; returns its committed position."""

    @abstractmethod
    def subscribe(
        self,
        key_pattern: str,
        start_position: StartPosition = 0,
        group: Optional[str] = None
    ) -> "LogSubscription":
        """Open an ordered, restartable read cursor."""

    @abstractmethod
    def acknowledge(self, group: str, key: str, position: int) -> None:
        """Advance ``group``'s progress marker for ``key``."""

    @abstractmethod
    def acknowledged(self, group: str, key: str) -> Optional[int]:
        """Last position acknowledged by ``group`` on ``key``."""

    @abstractmethod
    def read(self, key: str, start: int = 0, end: Optional[int] = None) -> List[LogRecord]:
        """Committed records of ``key`` in ``[start, end)``."""

    @abstractmethod
    def end_position(self, key: str) -> int:
        """Position the next record on ``key`` will receive."""

    @abstractmethod
    def keys(self) -> List[str]:
        """Known partition keys."""

    def last_record(self, key: str) -> Optional[LogRecord]:
        end = self.end_position(key)
        if end == 0:
            return None
        records = self.read(key, end - 1, end)
        return records[0] if records else None

    def position_for_time(self, key: str, timestamp: datetime) -> int:
        """First position on ``key`` whose event time is at or after ``timestamp``."""
        timestamp = ensure_utc(timestamp)
        for record in self.read(key):
            if record.event_time >= timestamp:
                return record.position
        return self.end_position(key)


class InMemoryOrderedLog(OrderedLog):
    """
    Process-local ordered log.

    Records are stored as envelopes and decoded on read, so every consumer
    sees exactly what crossed the wire contract. Readers that exhaust a
    partition wait on an ``asyncio.Event`` that the next publish sets.
    """

    def __init__(self):
        self._partitions: Dict[str, List[Tuple[dict, str, datetime]]] = {}
        self._appends: List[Tuple[str, int]] = []
        self._acks: Dict[Tuple[str, str], int] = {}
        self._available = True
        self._signal = asyncio.Event()

    # ------------------------------------------------------------------
    # Availability
    # ------------------------------------------------------------------

    @property
    def available(self) -> bool:
        return self._available

    def set_available(self, available: bool) -> None:
        """Simulate an outage (False) or its end (True); wakes every reader."""
        if available != self._available:
            logger.warning("Ordered log availability changed: available=%s", available)
        self._available = available
        self._notify()

    def _check_available(self) -> None:
        if not self._available:
            raise LogUnavailableError("Ordered log unavailable")

    def _notify(self) -> None:
        signal, self._signal = self._signal, asyncio.Event()
        signal.set()

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    def publish(
        self,
        key: str,
        record: MarketEvent,
        provenance: Optional[Provenance] = None
    ) -> int:
        self._check_available()
        if record.instrument != key:
            raise ValueError(f"Record instrument {record.instrument!r} does not match key {key!r}")

        partition = self._partitions.setdefault(key, [])
        position = len(partition)
        prov = Provenance(provenance) if provenance is not None else record.provenance
        partition.append((envelope.encode(record), prov.value, datetime.now(timezone.utc)))
        self._appends.append((key, position))

        logger.debug("Published %s seq=%d at position %d", key, record.seq, position)
        self._notify()
        return position

    def subscribe(
        self,
        key_pattern: str,
        start_position: StartPosition = 0,
        group: Optional[str] = None
    ) -> "LogSubscription":
        return LogSubscription(self, key_pattern, start_position, group)

    def acknowledge(self, group: str, key: str, position: int) -> None:
        current = self._acks.get((group, key))
        if current is None or position > current:
            self._acks[(group, key)] = position

    def acknowledged(self, group: str, key: str) -> Optional[int]:
        return self._acks.get((group, key))

    def read(self, key: str, start: int = 0, end: Optional[int] = None) -> List[LogRecord]:
        self._check_available()
        partition = self._partitions.get(key, [])
        end = len(partition) if end is None else min(end, len(partition))
        return [self._record(key, p) for p in range(max(start, 0), end)]

    def end_position(self, key: str) -> int:
        return len(self._partitions.get(key, []))

    def keys(self) -> List[str]:
        return sorted(self._partitions)

    # ------------------------------------------------------------------
    # Internals used by LogSubscription
    # ------------------------------------------------------------------

    def _record(self, key: str, position: int) -> LogRecord:
        env, prov, published_at = self._partitions[key][position]
        return LogRecord(
            key=key,
            position=position,
            provenance=Provenance(prov),
            payload=envelope.decode(env),
            published_at=published_at
        )

    def _append_count(self) -> int:
        return len(self._appends)

    def _append_at(self, index: int) -> Tuple[str, int]:
        return self._appends[index]


class LogSubscription:
    """
    Pull-based cursor over one key or a glob of keys.

    ``async for record in subscription`` suspends when the log is exhausted
    and resumes on the next publish; it never polls. ``drain()`` yields only
    what is already committed. Closing the subscription ends iteration; a
    consumer restarts by opening a new subscription at its next position.
    """

    def __init__(
        self,
        log: InMemoryOrderedLog,
        key_pattern: str,
        start_position: StartPosition = 0,
        group: Optional[str] = None
    ):
        self._log = log
        self.key_pattern = key_pattern
        self.group = group
        self._exact = not (_GLOB_CHARS & set(key_pattern))
        self._start = start_position
        self._next: Dict[str, int] = {}
        self._append_index = 0
        self._closed = False

        if self._exact:
            self._next[key_pattern] = self._start_for(key_pattern)

    def _start_for(self, key: str) -> int:
        if isinstance(self._start, Mapping):
            return int(self._start.get(key, 0))
        return int(self._start)

    def position(self, key: str) -> int:
        """Next position this subscription will read on ``key``."""
        if key not in self._next:
            return self._start_for(key)
        return self._next[key]

    def _poll(self) -> Optional[LogRecord]:
        self._log._check_available()

        if self._exact:
            key = self.key_pattern
            position = self._next[key]
            if position < self._log.end_position(key):
                self._next[key] = position + 1
                return self._log._record(key, position)
            return None

        while self._append_index < self._log._append_count():
            key, position = self._log._append_at(self._append_index)
            self._append_index += 1
            if not fnmatch.fnmatchcase(key, self.key_pattern):
                continue
            if position < self._next.setdefault(key, self._start_for(key)):
                continue
            self._next[key] = position + 1
            return self._log._record(key, position)
        return None

    def __aiter__(self) -> "LogSubscription":
        return self

    async def __anext__(self) -> LogRecord:
        while not self._closed:
            signal = self._log._signal
            record = self._poll()
            if record is not None:
                return record
            await signal.wait()
        raise StopAsyncIteration

    def drain(self) -> Iterator[LogRecord]:
        """Yield committed records until the log is exhausted, without waiting."""
        while not self._closed:
            record = self._poll()
            if record is None:
                return
            yield record

    def acknowledge(self, key: str, position: int) -> None:
        if self.group is None:
            raise ValueError("Subscription has no consumer group to acknowledge for")
        self._log.acknowledge(self.group, key, position)

    def close(self) -> None:
        self._closed = True
        self._log._notify()

    @property
    def closed(self) -> bool:
        return self._closed
