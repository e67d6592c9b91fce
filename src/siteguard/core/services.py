"""
Services container.

Builds and owns one instance of every SiteGuard service for the process.
The FastAPI app keeps it on app.state.services; tests build fresh ones.
"""

import time
from dataclasses import dataclass
from typing import Callable, Optional

import structlog
from prometheus_client import CollectorRegistry
from redis.asyncio import Redis

from ..config import Settings
from .guard import RateLimitGuard
from .masking import Sanitizer
from .metrics import MetricsCollector
from .rate_limiter import RateLimiter, build_limits
from .scheduler import BackgroundScheduler
from .secure_logger import SecureLogger
from .security_monitor import MonitorThresholds, SecurityMonitor
from .sink import LogSink, create_sink
from .store import KeyValueStore, create_store

logger = structlog.get_logger(__name__)


@dataclass
class SecurityServices:
    settings: Settings
    metrics: MetricsCollector
    store: KeyValueStore
    limiter: RateLimiter
    guard: RateLimitGuard
    sanitizer: Sanitizer
    sink: LogSink
    secure_logger: SecureLogger
    monitor: SecurityMonitor
    scheduler: BackgroundScheduler
    started: bool = False

    async def start(self) -> None:
        """Connect the store, start the sink and the background scheduler."""
        if self.started:
            return
        await self.store.connect()
        await self.sink.start()
        await self.scheduler.start()
        self.started = True
        logger.info(
            "Security services started",
            store_fallback=self.store.using_fallback,
            environment=self.secure_logger.environment,
        )

    async def stop(self) -> None:
        """Stop the scheduler, flush and deliver remaining logs, close the store."""
        if not self.started:
            return
        await self.scheduler.stop()
        self.secure_logger.flush()
        await self.sink.drain()
        await self.sink.stop()
        await self.store.close()
        self.started = False
        logger.info("Security services stopped")


def build_services(
    settings: Settings,
    clock: Callable[[], float] = time.time,
    registry: Optional[CollectorRegistry] = None,
    redis_client: Optional[Redis] = None,
    sink: Optional[LogSink] = None,
    metrics: Optional[MetricsCollector] = None,
) -> SecurityServices:
    """Wire every service from settings. Pass a registry to isolate metrics."""
    metrics = metrics or MetricsCollector(registry)

    store = create_store(settings.store, clock=clock, client=redis_client, metrics=metrics)
    limiter = RateLimiter(
        store,
        limits=build_limits(settings.rate_limit.overrides),
        clock=clock,
        metrics=metrics,
    )

    sanitizer = Sanitizer()
    if sink is None:
        sink = create_sink(
            settings.logger.sink_url,
            timeout_seconds=settings.logger.sink_timeout_seconds,
            max_pending_batches=settings.logger.sink_max_pending_batches,
        )
    secure_logger = SecureLogger(
        sanitizer=sanitizer,
        environment=settings.logger.environment,
        buffer_size=settings.logger.buffer_size,
        flush_interval_seconds=settings.logger.flush_interval_seconds,
        sink=sink,
        clock=clock,
        metrics=metrics,
    )

    monitor = SecurityMonitor(
        secure_logger,
        thresholds=MonitorThresholds.from_settings(settings.monitor),
        clock=clock,
        metrics=metrics,
    )
    guard = RateLimitGuard(limiter, monitor=monitor)

    scheduler = BackgroundScheduler(
        monitor,
        secure_logger,
        sink,
        interval_seconds=settings.monitor.scheduler_interval_seconds,
        clock=clock,
        metrics=metrics,
    )

    return SecurityServices(
        settings=settings,
        metrics=metrics,
        store=store,
        limiter=limiter,
        guard=guard,
        sanitizer=sanitizer,
        sink=sink,
        secure_logger=secure_logger,
        monitor=monitor,
        scheduler=scheduler,
    )
