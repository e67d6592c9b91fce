"""
Background scheduler for periodic security housekeeping.

Wakes up on a fixed interval and drives the time-based work of the
other services: monitor analysis/cleanup, secure log flushing and log
sink delivery. run_once(now) performs one cycle and is what tests call.
"""

import asyncio
import time
from typing import Any, Callable, Dict, Optional

import structlog

from .metrics import MetricsCollector
from .secure_logger import SecureLogger
from .security_monitor import SecurityMonitor
from .sink import LogSink

logger = structlog.get_logger(__name__)


class BackgroundScheduler:
    """
    Asyncio task calling tick(now) on the monitor and logger.

    Features:
    - Automatic startup/shutdown
    - Periodic ticking
    - Sink draining after every cycle
    """

    def __init__(
        self,
        monitor: SecurityMonitor,
        secure_logger: SecureLogger,
        sink: LogSink,
        interval_seconds: float = 30,
        clock: Callable[[], float] = time.time,
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        self.monitor = monitor
        self.secure_logger = secure_logger
        self.sink = sink
        self.interval = interval_seconds
        self.metrics = metrics
        self._clock = clock
        self._task: Optional[asyncio.Task[None]] = None
        self._running = False
        self.cycles = 0

        logger.info("Background scheduler initialized", interval_seconds=interval_seconds)

    async def start(self) -> None:
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())

        logger.info("Background scheduler started")

    async def stop(self) -> None:
        if not self._running:
            return

        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.info("Background scheduler stopped")

    async def run_once(self, now: Optional[float] = None) -> Dict[str, Any]:
        """Run one housekeeping cycle at the given time."""
        now = self._clock() if now is None else now

        ran = self.monitor.tick(now)
        flushed = self.secure_logger.tick(now)
        delivery = await self.sink.drain()

        if self.metrics:
            self.metrics.update_system_metrics()

        self.cycles += 1
        return {
            "analysis": ran["analysis"],
            "cleanup": ran["cleanup"],
            "flushed_events": flushed,
            "delivered_batches": delivery.batches_sent,
            "delivery_error": delivery.error_message,
        }

    async def _run_loop(self) -> None:
        while self._running:
            try:
                result = await self.run_once()
                if result["delivery_error"]:
                    logger.warning("Log delivery incomplete", error=result["delivery_error"])

                await asyncio.sleep(self.interval)

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Scheduler loop error", error=str(e))
                await asyncio.sleep(self.interval)

    def is_healthy(self) -> bool:
        return self._running and self._task is not None and not self._task.done()
