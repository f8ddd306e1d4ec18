"""
VWAP Publishers - Deliver VwapUpdate records to downstream subscribers.

Both publishers throttle per instrument: when updates arrive faster than
``throttle_seconds`` only the newest one is kept and it goes out once the
interval has elapsed. Held updates leave on the next ``publish()`` for the
instrument, on ``release_due()`` (called periodically by the aggregator), or
on ``flush()``. A throttle of 0 sends every update.

Wire format of ``ZmqVwapPublisher`` (PUB socket, two frames):
    frame 0: instrument id (topic, so SUB sockets can filter by prefix)
    frame 1: JSON of ``VwapUpdate.to_dict()``; an undefined VWAP is ``null``
"""

import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional

import zmq

from ..core.constants import DEFAULT_ZMQ_ENDPOINT, PUBLISH_THROTTLE_SECONDS
from ..core.exceptions import InvalidConfigError
from ..core.types import VwapUpdate


logger = logging.getLogger(__name__)


class VwapPublisher(ABC):
    """Throttling front end shared by all publishers."""

    def __init__(
        self,
        throttle_seconds: float = PUBLISH_THROTTLE_SECONDS,
        clock: Optional[Callable[[], float]] = None
    ):
        self.throttle_seconds = float(throttle_seconds)
        self.clock = clock or time.monotonic
        self._last_sent: Dict[str, float] = {}
        self._pending: Dict[str, VwapUpdate] = {}
        self.latest: Dict[str, VwapUpdate] = {}

    def publish(self, update: VwapUpdate) -> bool:
        """
        Offer an update.

        Returns:
            True if it was sent now, False if it is held by the throttle
        """
        self.latest[update.instrument] = update
        now = self.clock()
        last = self._last_sent.get(update.instrument)
        if self.throttle_seconds > 0 and last is not None and now - last < self.throttle_seconds:
            self._pending[update.instrument] = update
            return False

        self._pending.pop(update.instrument, None)
        self._last_sent[update.instrument] = now
        self._send(update)
        return True

    def release_due(self) -> int:
        """Send held updates whose throttle interval has elapsed; returns the count."""
        now = self.clock()
        due = [
            instrument for instrument in self._pending
            if now - self._last_sent.get(instrument, now) >= self.throttle_seconds
        ]
        for instrument in due:
            update = self._pending.pop(instrument)
            self._last_sent[instrument] = now
            self._send(update)
        return len(due)

    def flush(self) -> int:
        """Send every held update regardless of the throttle; returns the count."""
        pending, self._pending = self._pending, {}
        now = self.clock()
        for instrument, update in pending.items():
            self._last_sent[instrument] = now
            self._send(update)
        return len(pending)

    def close(self) -> None:
        self.flush()

    @abstractmethod
    def _send(self, update: VwapUpdate) -> None:
        """Deliver one update."""


class InMemoryVwapPublisher(VwapPublisher):
    """Delivers updates to in-process callbacks and keeps them in ``sent``."""

    def __init__(
        self,
        throttle_seconds: float = PUBLISH_THROTTLE_SECONDS,
        clock: Optional[Callable[[], float]] = None
    ):
        super().__init__(throttle_seconds, clock)
        self.sent: List[VwapUpdate] = []
        self._callbacks: List[Callable[[VwapUpdate], None]] = []

    def subscribe(self, callback: Callable[[VwapUpdate], None]) -> None:
        self._callbacks.append(callback)

    def _send(self, update: VwapUpdate) -> None:
        self.sent.append(update)
        for callback in self._callbacks:
            try:
                callback(update)
            except Exception as e:
                logger.error("VWAP subscriber callback raised: %s", e, exc_info=True)


class ZmqVwapPublisher(VwapPublisher):
    """Publishes updates on a ZeroMQ PUB socket."""

    def __init__(
        self,
        endpoint: str = DEFAULT_ZMQ_ENDPOINT,
        throttle_seconds: float = PUBLISH_THROTTLE_SECONDS,
        context: Optional[zmq.Context] = None,
        clock: Optional[Callable[[], float]] = None
    ):
        """
        Initialize the publisher and bind its socket.

        Args:
            endpoint: Address to bind (e.g. ``tcp://127.0.0.1:5560``)
            throttle_seconds: Minimum spacing between updates per instrument
            context: ZeroMQ context to use (a private one by default)
            clock: Monotonic clock, injectable for tests
        """
        super().__init__(throttle_seconds, clock)
        self.endpoint = endpoint
        self._own_context = context is None
        self.context = context or zmq.Context()
        self.socket = self.context.socket(zmq.PUB)
        self.socket.setsockopt(zmq.LINGER, 0)
        self.socket.setsockopt(zmq.SNDHWM, 10000)
        try:
            self.socket.bind(endpoint)
        except zmq.ZMQError as e:
            self.socket.close()
            raise InvalidConfigError(f"Cannot bind VWAP publisher: {e}", endpoint=endpoint)
        logger.info("VWAP publisher bound to %s", endpoint)

    def _send(self, update: VwapUpdate) -> None:
        payload = json.dumps(update.to_dict()).encode('utf-8')
        try:
            self.socket.send_multipart([update.instrument.encode('utf-8'), payload], flags=zmq.NOBLOCK)
        except zmq.Again:
            # PUB drops at the high-water mark anyway; never block the aggregator
            logger.warning("VWAP publisher queue full, dropped update for %s", update.instrument)

    def close(self) -> None:
        super().close()
        self.socket.close()
        if self._own_context:
            self.context.term()
        logger.info("VWAP publisher closed")


def build_publisher(config: Optional[dict]) -> VwapPublisher:
    """Create the publisher named by the ``publisher`` config section."""
    config = config or {}
    kind = config.get('kind', 'memory')
    throttle = config.get('throttle_seconds', PUBLISH_THROTTLE_SECONDS)
    if kind == 'zmq':
        return ZmqVwapPublisher(config.get('endpoint', DEFAULT_ZMQ_ENDPOINT), throttle)
    if kind == 'memory':
        return InMemoryVwapPublisher(throttle)
    raise InvalidConfigError(f"Unknown publisher kind: {kind}", kind=kind)
