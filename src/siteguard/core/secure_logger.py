"""
Secure application logger.

Every call is sanitized before anything is printed or buffered. In
development events are written straight to structlog; in production they
are buffered and flushed to a LogSink when the buffer fills or when the
flush interval elapses (driven by tick()). SECURITY and ERROR events also
take the critical path immediately in every environment.
"""

import secrets
import threading
import time
import traceback
from collections import deque
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

import structlog

from .masking import Sanitizer
from .metrics import MetricsCollector
from .request_context import RequestLike, to_descriptor
from .sink import LogSink, NullSink

logger = structlog.get_logger(__name__)


class LogLevel(str, Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    SECURITY = "security"
    AUDIT = "audit"


CRITICAL_LEVELS = (LogLevel.SECURITY, LogLevel.ERROR)
RECENT_CRITICAL_LIMIT = 10


@dataclass(frozen=True)
class LogContext:
    """Who/where a log event came from."""
    timestamp: str
    user_id: Optional[str] = None
    ip: str = "unknown"
    user_agent: str = "unknown"
    endpoint: Optional[str] = None
    method: Optional[str] = None
    request_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class LogEvent:
    level: LogLevel
    message: str
    context: LogContext
    metadata: Optional[Any] = None
    stack_trace: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level": self.level.value,
            "message": self.message,
            "context": self.context.to_dict(),
            "metadata": self.metadata,
            "stack_trace": self.stack_trace,
        }


CriticalHook = Callable[[LogEvent], None]


def _iso(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


class SecureLogger:
    """
    Sanitizing logger with environment-dependent delivery.

    One instance per process, owned by the services container. The
    buffer is guarded by a lock so request handlers running on worker
    threads can log concurrently.
    """

    def __init__(
        self,
        sanitizer: Optional[Sanitizer] = None,
        environment: str = "development",
        buffer_size: int = 1000,
        flush_interval_seconds: float = 60,
        sink: Optional[LogSink] = None,
        clock: Callable[[], float] = time.time,
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        self.sanitizer = sanitizer or Sanitizer()
        self.environment = environment
        self.buffer_size = buffer_size
        self.flush_interval_seconds = flush_interval_seconds
        self.sink = sink or NullSink()
        self.metrics = metrics
        self._clock = clock

        self._buffer: List[Dict[str, Any]] = []
        self._lock = threading.Lock()
        self._last_flush = clock()
        self._level_counts: Dict[str, int] = {level.value: 0 for level in LogLevel}
        self._recent_critical: Deque[Dict[str, Any]] = deque(maxlen=RECENT_CRITICAL_LIMIT)
        self._critical_hooks: List[CriticalHook] = []
        self.flush_count = 0

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def buffered_count(self) -> int:
        with self._lock:
            return len(self._buffer)

    def add_critical_hook(self, hook: CriticalHook) -> None:
        """Register a callable invoked synchronously for every SECURITY/ERROR event."""
        self._critical_hooks.append(hook)

    def extract_context(self, request: RequestLike = None, user_id: Optional[str] = None) -> LogContext:
        request = to_descriptor(request)
        timestamp = _iso(self._clock())
        if request is None:
            return LogContext(timestamp=timestamp, user_id=user_id, request_id=secrets.token_hex(4))

        return LogContext(
            timestamp=timestamp,
            user_id=user_id or request.user_id,
            ip=request.client_ip,
            user_agent=request.user_agent,
            endpoint=request.url,
            method=request.method,
            request_id=request.request_id or secrets.token_hex(4),
        )

    def log(
        self,
        level: LogLevel,
        message: str,
        metadata: Optional[Any] = None,
        request: RequestLike = None,
        user_id: Optional[str] = None,
        error: Optional[BaseException] = None,
    ) -> LogEvent:
        level = LogLevel(level)
        context = self.extract_context(request, user_id)
        clean_message, clean_metadata = self.sanitizer.sanitize_event(message, metadata)

        stack_trace = None
        if error is not None:
            raw_trace = "".join(traceback.format_exception(type(error), error, error.__traceback__))
            secrets_found = self.sanitizer.collect_secrets(metadata) if metadata is not None else set()
            stack_trace = self.sanitizer.sanitize(raw_trace, extra_secrets=secrets_found)

        event = LogEvent(
            level=level,
            message=clean_message,
            context=context,
            metadata=clean_metadata,
            stack_trace=stack_trace,
        )
        record = event.to_dict()

        with self._lock:
            self._level_counts[level.value] += 1
            if level in CRITICAL_LEVELS:
                self._recent_critical.appendleft(record)

        if self.is_production:
            self._buffer_event(record)
        else:
            self._emit(event)

        if level in CRITICAL_LEVELS:
            self._handle_critical_event(event)

        return event

    def info(self, message: str, metadata: Optional[Any] = None, request: RequestLike = None,
             user_id: Optional[str] = None) -> LogEvent:
        return self.log(LogLevel.INFO, message, metadata, request, user_id)

    def warn(self, message: str, metadata: Optional[Any] = None, request: RequestLike = None,
             user_id: Optional[str] = None) -> LogEvent:
        return self.log(LogLevel.WARN, message, metadata, request, user_id)

    def error(self, message: str, error: Optional[BaseException] = None, metadata: Optional[Any] = None,
              request: RequestLike = None, user_id: Optional[str] = None) -> LogEvent:
        return self.log(LogLevel.ERROR, message, metadata, request, user_id, error)

    def security(self, message: str, metadata: Optional[Any] = None, request: RequestLike = None,
                 user_id: Optional[str] = None) -> LogEvent:
        return self.log(LogLevel.SECURITY, message, metadata, request, user_id)

    def audit(self, message: str, metadata: Optional[Any] = None, request: RequestLike = None,
              user_id: Optional[str] = None) -> LogEvent:
        return self.log(LogLevel.AUDIT, message, metadata, request, user_id)

    def _emit(self, event: LogEvent) -> None:
        if event.level in CRITICAL_LEVELS:
            emit = logger.error
        elif event.level == LogLevel.WARN:
            emit = logger.warning
        else:
            emit = logger.info

        emit(
            f"[{event.level.value.upper()}] {event.message}",
            context=event.context.to_dict(),
            metadata=event.metadata,
            stack=event.stack_trace,
        )
        if self.metrics:
            self.metrics.record_log_event(event.level.value, 0)

    def _buffer_event(self, record: Dict[str, Any]) -> None:
        with self._lock:
            self._buffer.append(record)
            buffered = len(self._buffer)

        if self.metrics:
            self.metrics.record_log_event(record["level"], buffered)

        if buffered >= self.buffer_size:
            self.flush()

    def _handle_critical_event(self, event: LogEvent) -> None:
        logger.error(
            "Critical security event",
            security_level=event.level.value,
            summary=event.message,
            event_time=event.context.timestamp,
            user_id=event.context.user_id,
            ip=event.context.ip,
            endpoint=event.context.endpoint,
        )
        for hook in list(self._critical_hooks):
            try:
                hook(event)
            except Exception:
                logger.exception("Critical event hook failed", hook=getattr(hook, "__name__", repr(hook)))

    def flush(self, now: Optional[float] = None) -> int:
        """Hand every buffered event to the sink. Returns the number flushed."""
        with self._lock:
            batch = self._buffer
            self._buffer = []
            self._last_flush = self._clock() if now is None else now

        if not batch:
            return 0

        self.sink.submit(batch)
        self.flush_count += 1
        if self.metrics:
            self.metrics.record_log_flush()

        logger.debug("Secure log buffer flushed", events=len(batch))
        return len(batch)

    def tick(self, now: float) -> int:
        """Flush when the flush interval has elapsed since the last flush."""
        if now - self._last_flush >= self.flush_interval_seconds:
            return self.flush(now)
        return 0

    def get_security_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "total_events": sum(self._level_counts.values()),
                "buffered_events": len(self._buffer),
                "by_level": dict(self._level_counts),
                "recent_critical": list(self._recent_critical),
                "flushes": self.flush_count,
            }


SAFE_ERROR_MESSAGES: Dict[str, str] = {
    "validation": "Données fournies invalides",
    "auth": "Échec de l'authentification",
    "permission": "Accès non autorisé",
    "notfound": "Ressource non trouvée",
    "ratelimit": "Trop de requêtes",
    "database": "Service temporairement indisponible",
    "upload": "Erreur lors de l'upload du fichier",
    "default": "Une erreur est survenue",
}

_ERROR_CATEGORIES = (
    ("validation", ("validation", "invalid")),
    ("auth", ("auth", "token", "session")),
    ("permission", ("permission", "access", "forbidden")),
    ("notfound", ("not found", "404")),
    ("ratelimit", ("rate", "limit")),
    ("database", ("database", "connection", "prisma")),
    ("upload", ("upload", "file")),
)


def create_safe_error_message(error: Any, is_production: bool) -> str:
    """
    Turn an internal error into a message that is safe to show a client.

    Outside production the raw message is returned. In production the
    lowercased error text is matched against fixed categories and one
    generic sentence is returned; raw text never reaches the client.
    """
    if not is_production:
        return str(error)

    if isinstance(error, BaseException):
        text = f"{type(error).__name__}: {error}".lower()
    else:
        text = str(error).lower()

    for category, keywords in _ERROR_CATEGORIES:
        if any(keyword in text for keyword in keywords):
            return SAFE_ERROR_MESSAGES[category]
    return SAFE_ERROR_MESSAGES["default"]
