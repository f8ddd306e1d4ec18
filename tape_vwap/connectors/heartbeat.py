"""
Heartbeat Monitor for the feed session.

Periodically checks if the feed is responding and turns consecutive
failures into a session drop, and the first recovered heartbeat into a
session restore.
"""

import asyncio
import inspect
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from ..core.constants import HEARTBEAT_INTERVAL_SECONDS, HEARTBEAT_MAX_FAILURES
from ..core.exceptions import HeartbeatTimeoutError


logger = logging.getLogger(__name__)


class FeedHeartbeatMonitor:
    """
    Background task that monitors feed session health.

    Sends periodic heartbeat probes and tracks consecutive failures. After
    ``max_failures`` in a row the session is declared lost; the next
    successful probe declares it restored.
    """

    def __init__(
        self,
        probe: Callable[[], bool],
        interval_seconds: float = HEARTBEAT_INTERVAL_SECONDS,
        max_failures: int = HEARTBEAT_MAX_FAILURES,
        on_connection_lost: Optional[Callable[[], None]] = None,
        on_connection_restored: Optional[Callable[[], None]] = None
    ):
        """
        Initialize heartbeat monitor.

        Args:
            probe: Heartbeat callable (sync or async) returning True when healthy
            interval_seconds: How often to probe
            max_failures: Consecutive failures that count as a lost session
            on_connection_lost: Called once when the session is declared lost
            on_connection_restored: Called once when it comes back
        """
        self.probe = probe
        self.interval = float(interval_seconds)
        self.max_failures = int(max_failures)
        self.on_connection_lost = on_connection_lost
        self.on_connection_restored = on_connection_restored

        self.running = False
        self.connection_lost = False
        self.task: Optional[asyncio.Task] = None
        self.last_successful_heartbeat: Optional[datetime] = None
        self.consecutive_failures = 0

        logger.info(
            "FeedHeartbeatMonitor initialized: interval=%.1fs, max_failures=%d",
            self.interval, self.max_failures
        )

    def start(self) -> None:
        """Start heartbeat monitoring as a task on the running loop."""
        if self.running:
            logger.warning("Heartbeat monitor already running, ignoring start() call")
            return

        logger.info("Starting heartbeat monitor")
        self.running = True
        self.task = asyncio.get_running_loop().create_task(self._run(), name="FeedHeartbeatMonitor")

    async def stop(self) -> None:
        """Stop heartbeat monitoring."""
        if not self.running:
            logger.debug("Heartbeat monitor not running, ignoring stop() call")
            return

        logger.info("Stopping heartbeat monitor")
        self.running = False
        if self.task:
            self.task.cancel()
            await asyncio.gather(self.task, return_exceptions=True)
        self.task = None
        logger.info("Heartbeat monitor stopped")

    async def check_once(self) -> bool:
        """Run one probe and update the failure accounting."""
        try:
            result = self.probe()
            if inspect.isawaitable(result):
                result = await result
            success = bool(result)
            error = None
        except Exception as e:
            logger.error("Heartbeat exception: %s", e, exc_info=True)
            success = False
            error = str(e)

        if success:
            self._handle_heartbeat_success()
        else:
            self._handle_heartbeat_failure(error)
        return success

    async def _run(self) -> None:
        """Main heartbeat loop."""
        logger.info("Heartbeat monitor loop started")
        while self.running:
            await self.check_once()
            await asyncio.sleep(self.interval)
        logger.info("Heartbeat monitor loop ended")

    def _handle_heartbeat_success(self) -> None:
        self.last_successful_heartbeat = datetime.now(timezone.utc)
        self.consecutive_failures = 0
        logger.debug("Heartbeat successful at %s", self.last_successful_heartbeat.isoformat())

        if self.connection_lost:
            self.connection_lost = False
            logger.info("Feed heartbeat recovered")
            self._call(self.on_connection_restored, "restored")

    def _handle_heartbeat_failure(self, error: Optional[str] = None) -> None:
        self.consecutive_failures += 1
        logger.warning(
            "Heartbeat failure #%d (max: %d)%s",
            self.consecutive_failures,
            self.max_failures,
            f" - Error: {error}" if error else ""
        )

        if self.consecutive_failures >= self.max_failures and not self.connection_lost:
            self.connection_lost = True
            timeout = HeartbeatTimeoutError(
                f"Heartbeat failed {self.consecutive_failures} times",
                last_success=self.last_successful_heartbeat.isoformat() if self.last_successful_heartbeat else None,
                error=error
            )
            logger.error("Feed session lost: %s", timeout)
            self._call(self.on_connection_lost, "lost")

    @staticmethod
    def _call(callback: Optional[Callable[[], None]], label: str) -> None:
        if callback is None:
            return
        logger.info("Calling connection %s callback", label)
        try:
            callback()
        except Exception as callback_error:
            logger.error(
                "Connection %s callback raised exception: %s",
                label,
                callback_error,
                exc_info=True
            )

    def get_status(self) -> dict:
        """
        Get current heartbeat status.

        Returns:
            {
                'healthy': bool,
                'last_success': datetime,
                'consecutive_failures': int
            }
        """
        return {
            'healthy': not self.connection_lost and self.last_successful_heartbeat is not None,
            'last_success': self.last_successful_heartbeat,
            'consecutive_failures': self.consecutive_failures
        }
