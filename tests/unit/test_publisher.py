"""
Unit tests for VWAP publishers (throttling, in-memory delivery, ZeroMQ wire format).
"""

import json
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
import zmq

from tape_vwap.connectors.publisher import (
    InMemoryVwapPublisher,
    ZmqVwapPublisher,
    build_publisher,
)
from tape_vwap.core.exceptions import InvalidConfigError
from tape_vwap.core.types import VwapUpdate


T0 = datetime(2024, 3, 15, 14, 30, tzinfo=timezone.utc)


def _update(instrument="AAPL", vwap="10.5", volume=200):
    return VwapUpdate(
        instrument=instrument,
        vwap=Decimal(vwap) if vwap is not None else None,
        volume=volume,
        notional=Decimal(vwap or 0) * volume,
        log_position=3,
        session_id="2024-03-15",
        provisional=False,
        timestamp=T0
    )


class FakeClock:

    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


class TestThrottle:

    def test_zero_throttle_sends_everything(self):
        publisher = InMemoryVwapPublisher()
        assert publisher.publish(_update(vwap="10"))
        assert publisher.publish(_update(vwap="11"))
        assert len(publisher.sent) == 2

    def test_holds_newest_until_interval(self):
        clock = FakeClock()
        publisher = InMemoryVwapPublisher(throttle_seconds=1.0, clock=clock)

        assert publisher.publish(_update(vwap="10"))
        assert not publisher.publish(_update(vwap="11"))
        assert not publisher.publish(_update(vwap="12"))
        # Other instruments are throttled independently
        assert publisher.publish(_update("MSFT", vwap="400"))

        clock.now += 1.0
        assert publisher.publish(_update(vwap="13"))
        assert [u.vwap for u in publisher.sent if u.instrument == "AAPL"] == [Decimal("10"), Decimal("13")]
        assert publisher.flush() == 0

    def test_release_due_sends_held_without_new_publish(self):
        clock = FakeClock()
        publisher = InMemoryVwapPublisher(throttle_seconds=1.0, clock=clock)
        publisher.publish(_update(volume=100))
        clock.now += 0.5
        publisher.publish(_update(volume=200))

        assert publisher.release_due() == 0
        clock.now += 3600
        assert publisher.release_due() == 1
        assert [u.volume for u in publisher.sent] == [100, 200]
        assert publisher.release_due() == 0

    def test_flush_sends_held(self):
        clock = FakeClock()
        publisher = InMemoryVwapPublisher(throttle_seconds=5.0, clock=clock)
        publisher.publish(_update(vwap="10"))
        publisher.publish(_update(vwap="12"))

        assert publisher.flush() == 1
        assert publisher.sent[-1].vwap == Decimal("12")
        assert publisher.latest["AAPL"].vwap == Decimal("12")

    def test_callbacks(self):
        publisher = InMemoryVwapPublisher()
        received = []
        publisher.subscribe(received.append)
        publisher.subscribe(MagicMock(side_effect=RuntimeError("subscriber bug")))

        publisher.publish(_update())
        assert len(received) == 1
        assert len(publisher.sent) == 1


class TestZmqPublisher:

    def _publisher(self):
        context = MagicMock()
        socket = context.socket.return_value
        return ZmqVwapPublisher("tcp://127.0.0.1:5999", context=context), context, socket

    def test_binds_pub_socket(self):
        publisher, context, socket = self._publisher()
        context.socket.assert_called_once_with(zmq.PUB)
        socket.bind.assert_called_once_with("tcp://127.0.0.1:5999")

    def test_two_frame_message(self):
        publisher, _, socket = self._publisher()
        publisher.publish(_update())

        frames = socket.send_multipart.call_args[0][0]
        assert frames[0] == b"AAPL"
        body = json.loads(frames[1])
        assert body['vwap'] == "10.5"
        assert body['session_id'] == "2024-03-15"
        assert socket.send_multipart.call_args[1]['flags'] == zmq.NOBLOCK

    def test_undefined_vwap_is_null(self):
        publisher, _, socket = self._publisher()
        publisher.publish(_update(vwap=None, volume=0))
        body = json.loads(socket.send_multipart.call_args[0][0][1])
        assert body['vwap'] is None

    def test_full_queue_drops(self, caplog):
        publisher, _, socket = self._publisher()
        socket.send_multipart.side_effect = zmq.Again()
        assert publisher.publish(_update())
        assert "dropped update for AAPL" in caplog.text

    def test_close_keeps_shared_context(self):
        publisher, context, socket = self._publisher()
        publisher.close()
        socket.close.assert_called_once()
        context.term.assert_not_called()

    def test_bind_failure(self):
        context = MagicMock()
        context.socket.return_value.bind.side_effect = zmq.ZMQError()
        with pytest.raises(InvalidConfigError):
            ZmqVwapPublisher("tcp://bad", context=context)


class TestBuildPublisher:

    def test_default_is_memory(self):
        assert isinstance(build_publisher(None), InMemoryVwapPublisher)

    def test_throttle_passed_through(self):
        publisher = build_publisher({'kind': 'memory', 'throttle_seconds': 2})
        assert publisher.throttle_seconds == 2.0

    def test_unknown_kind(self):
        with pytest.raises(InvalidConfigError):
            build_publisher({'kind': 'carrier-pigeon'})
