"""
Delivery targets for buffered secure log batches.

The secure logger hands every flushed batch to a sink. Sinks never block
the caller: HttpLogSink only queues the batch, and the background
scheduler drains the queue over HTTP.
"""

import asyncio
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, List, Optional

import aiohttp
import structlog

logger = structlog.get_logger(__name__)

LogBatch = List[Dict[str, Any]]


@dataclass
class DeliveryResult:
    """Result of a drain operation."""
    success: bool
    batches_sent: int
    events_sent: int
    error_message: Optional[str] = None


class LogSink(ABC):
    """Extension point receiving flushed batches of sanitized log events."""

    @abstractmethod
    def submit(self, batch: LogBatch) -> None:
        ...

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None

    async def drain(self) -> DeliveryResult:
        return DeliveryResult(success=True, batches_sent=0, events_sent=0)

    @property
    def pending_batches(self) -> int:
        return 0


class NullSink(LogSink):
    """Discards batches; counts what it was given."""

    def __init__(self) -> None:
        self.batches_received = 0
        self.events_received = 0

    def submit(self, batch: LogBatch) -> None:
        self.batches_received += 1
        self.events_received += len(batch)


class HttpLogSink(LogSink):
    """
    Posts batches as JSON to an external log collector.

    Batches wait in a bounded queue; when the queue is full the oldest
    batch is dropped. A failed POST leaves the batch at the head of the
    queue for the next drain.
    """

    def __init__(
        self,
        url: str,
        timeout_seconds: float = 10.0,
        max_pending_batches: int = 100,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.session = session
        self._owns_session = session is None
        self._queue: Deque[LogBatch] = deque(maxlen=max_pending_batches)
        self.dropped_batches = 0

        logger.info("HTTP log sink initialized", url=url, max_pending_batches=max_pending_batches)

    def submit(self, batch: LogBatch) -> None:
        if not batch:
            return
        if len(self._queue) == self._queue.maxlen:
            self.dropped_batches += 1
            logger.warning("Log sink queue full, dropping oldest batch", pending=len(self._queue))
        self._queue.append(list(batch))

    @property
    def pending_batches(self) -> int:
        return len(self._queue)

    async def start(self) -> None:
        if self.session is None:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds)
            )
            self._owns_session = True

    async def stop(self) -> None:
        if self.session is not None and self._owns_session:
            await self.session.close()
            self.session = None

    async def drain(self) -> DeliveryResult:
        """Send queued batches in order until the queue is empty or a send fails."""
        if not self._queue:
            return DeliveryResult(success=True, batches_sent=0, events_sent=0)

        if self.session is None:
            return DeliveryResult(
                success=False,
                batches_sent=0,
                events_sent=0,
                error_message="Sink not started",
            )

        batches_sent = 0
        events_sent = 0
        while self._queue:
            batch = self._queue[0]
            try:
                delivered = await self._post(batch)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.warning("Log batch delivery failed", error=str(e), pending=len(self._queue))
                return DeliveryResult(False, batches_sent, events_sent, str(e))

            if not delivered:
                return DeliveryResult(False, batches_sent, events_sent, "Collector rejected batch")

            self._queue.popleft()
            batches_sent += 1
            events_sent += len(batch)

        logger.debug("Log batches delivered", batches=batches_sent, events=events_sent)
        return DeliveryResult(success=True, batches_sent=batches_sent, events_sent=events_sent)

    async def _post(self, batch: LogBatch) -> bool:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": "siteguard-log-sink/1.0",
        }
        async with self.session.post(self.url, json={"events": batch}, headers=headers) as response:
            if 200 <= response.status < 300:
                return True
            error_text = await response.text()
            logger.error("Log collector returned error", status=response.status, error=error_text[:200])
            return False


def create_sink(url: str = "", timeout_seconds: float = 10.0, max_pending_batches: int = 100) -> LogSink:
    if not url:
        return NullSink()
    return HttpLogSink(url, timeout_seconds=timeout_seconds, max_pending_batches=max_pending_batches)
