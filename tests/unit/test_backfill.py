"""
Unit tests for the backfill controller (retry, timeout, supersession).
"""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from tape_vwap.core.constants import Provenance
from tape_vwap.core.exceptions import BackfillExhaustedError
from tape_vwap.core.types import Tick
from tape_vwap.gap.backfill import BackfillController, BackfillRequest
from tape_vwap.monitoring.metrics_tracker import MetricsTracker


T0 = datetime(2024, 3, 15, 14, 30, tzinfo=timezone.utc)
FAST = {'timeout_seconds': 0.05, 'max_retries': 1, 'backoff_base_seconds': 0.001, 'backoff_max_seconds': 0.001}


def _tick(seq, instrument="AAPL"):
    return Tick(instrument, Decimal("10"), 10, "LIT", seq, T0 + timedelta(seconds=seq))


def _request(from_seq=2, to_seq=4, instrument="AAPL"):
    return BackfillRequest(instrument, from_seq, to_seq, T0, T0 + timedelta(minutes=5))


class TestBackfillRequest:

    def test_covers(self):
        request = _request(2, 4)
        assert request.covers(2)
        assert request.covers(4)
        assert not request.covers(1)
        assert not request.covers(5)
        assert _request(2, None).covers(10_000)

    def test_same_window_ignores_times(self):
        a = _request(2, 4)
        b = BackfillRequest("AAPL", 2, 4, None, T0)
        assert a.same_window(b)
        assert not a.same_window(_request(2, 5))


class TestBackfillController:

    def test_backoff_is_capped(self):
        controller = BackfillController(
            None, MagicMock(), MagicMock(),
            config={'backoff_base_seconds': 0.5, 'backoff_max_seconds': 3}
        )
        assert [controller._backoff(n) for n in range(5)] == [0.5, 1.0, 2.0, 3, 3]

    @pytest.mark.asyncio
    async def test_async_query_filtered_and_marked_historical(self):
        async def query(instrument, from_time, to_time):
            return [_tick(1), _tick(2), _tick(3), _tick(3, "MSFT"), _tick(5)]

        on_complete = MagicMock()
        controller = BackfillController(query, on_complete, MagicMock(), config=FAST)
        controller.request(_request(2, 4))
        await controller.wait_idle()

        request, records = on_complete.call_args[0]
        assert request.from_seq == 2
        assert [r.seq for r in records] == [2, 3]
        assert all(r.instrument == "AAPL" for r in records)
        assert all(r.provenance == Provenance.HISTORICAL for r in records)

    @pytest.mark.asyncio
    async def test_same_window_reuses_task(self):
        controller = BackfillController(MagicMock(return_value=[]), MagicMock(), MagicMock(), config=FAST)
        first = controller.request(_request(2, 4))
        second = controller.request(_request(2, 4))
        assert first is second
        await controller.wait_idle()

    @pytest.mark.asyncio
    async def test_new_window_supersedes(self):
        on_complete = MagicMock()
        controller = BackfillController(MagicMock(return_value=[]), on_complete, MagicMock(), config=FAST)
        first = controller.request(_request(2, 4))
        second = controller.request(_request(2, 6))

        await controller.wait_idle()
        await asyncio.gather(first, return_exceptions=True)

        assert first.cancelled()
        assert second.done() and not second.cancelled()
        assert on_complete.call_count == 1
        assert on_complete.call_args[0][0].to_seq == 6

    @pytest.mark.asyncio
    async def test_timeouts_exhaust_budget(self):
        async def slow(instrument, from_time, to_time):
            await asyncio.sleep(1)
            return []

        metrics = MetricsTracker()
        on_complete, on_failure = MagicMock(), MagicMock()
        controller = BackfillController(slow, on_complete, on_failure, config=FAST, metrics=metrics)
        controller.request(_request())
        await controller.wait_idle()

        on_complete.assert_not_called()
        request, error = on_failure.call_args[0]
        assert isinstance(error, BackfillExhaustedError)
        assert error.context['instrument'] == "AAPL"
        assert metrics.get('backfill_retries', 'AAPL') == 1
        assert metrics.get('backfill_failures', 'AAPL') == 1
        assert controller.outstanding("AAPL") is None

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failure(self):
        query = MagicMock(side_effect=[ConnectionError("reset"), [_tick(2)]])
        on_complete, on_failure = MagicMock(), MagicMock()
        controller = BackfillController(query, on_complete, on_failure, config=FAST)
        controller.request(_request())
        await controller.wait_idle()

        on_failure.assert_not_called()
        assert [r.seq for r in on_complete.call_args[0][1]] == [2]
        assert query.call_count == 2

    @pytest.mark.asyncio
    async def test_without_query_completes_empty(self):
        on_complete = MagicMock()
        controller = BackfillController(None, on_complete, MagicMock(), config=FAST)
        controller.request(_request())
        await controller.wait_idle()
        assert on_complete.call_args[0][1] == []

    @pytest.mark.asyncio
    async def test_cancel_all(self):
        controller = BackfillController(MagicMock(return_value=[]), MagicMock(), MagicMock(), config=FAST)
        controller.request(_request(instrument="AAPL"))
        controller.request(_request(instrument="MSFT"))
        controller.cancel_all()
        assert controller.outstanding("AAPL") is None
        assert controller.outstanding("MSFT") is None
        assert not controller.cancel("AAPL")
