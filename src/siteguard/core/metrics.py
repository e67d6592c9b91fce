"""
Prometheus metrics collection.

In-memory counters for throttling and security monitoring;
Prometheus handles storage. A registry can be injected so tests
build isolated collectors.
"""

import time
from typing import Optional

import structlog
from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Info

logger = structlog.get_logger(__name__)


class MetricsCollector:
    """
    Centralized metrics collection for SiteGuard.

    Keep metrics simple, use in-memory counters, let Prometheus handle storage.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        self.registry = registry if registry is not None else REGISTRY

        self.service_info = Info(
            "siteguard_service",
            "SiteGuard service information",
            registry=self.registry,
        )
        self.service_info.info({
            "version": "0.1.0",
            "service": "siteguard",
        })

        # Rate limiting
        self.rate_limit_decisions_total = Counter(
            "rate_limit_decisions_total",
            "Rate limit decisions by category and outcome",
            ["category", "decision"],
            registry=self.registry,
        )

        # Security monitoring
        self.security_events_total = Counter(
            "security_events_total",
            "Security events recorded by the monitor",
            ["type", "severity"],
            registry=self.registry,
        )

        self.security_escalations_total = Counter(
            "security_escalations_total",
            "Escalated security events synthesized from accumulated patterns",
            ["type"],
            registry=self.registry,
        )

        # Secure logger
        self.log_events_total = Counter(
            "secure_log_events_total",
            "Sanitized log events by level",
            ["level"],
            registry=self.registry,
        )

        self.log_flushes_total = Counter(
            "secure_log_flushes_total",
            "Buffered log flushes handed to the sink",
            registry=self.registry,
        )

        self.log_buffer_size = Gauge(
            "secure_log_buffer_size",
            "Events currently buffered for delivery",
            registry=self.registry,
        )

        # Store
        self.store_fallback_active = Gauge(
            "store_fallback_active",
            "1 when the key-value store serves from the in-process fallback",
            registry=self.registry,
        )

        self.uptime_seconds = Gauge(
            "uptime_seconds",
            "Service uptime in seconds",
            registry=self.registry,
        )

        self._start_time = time.time()

    def record_rate_limit(self, category: str, allowed: bool) -> None:
        """Record a rate limit decision."""
        self.rate_limit_decisions_total.labels(
            category=category,
            decision="allowed" if allowed else "denied",
        ).inc()

    def record_security_event(self, event_type: str, severity: str) -> None:
        self.security_events_total.labels(type=event_type, severity=severity).inc()

    def record_escalation(self, event_type: str) -> None:
        self.security_escalations_total.labels(type=event_type).inc()

    def record_log_event(self, level: str, buffered: int) -> None:
        self.log_events_total.labels(level=level).inc()
        self.log_buffer_size.set(buffered)

    def record_log_flush(self) -> None:
        self.log_flushes_total.inc()
        self.log_buffer_size.set(0)

    def set_store_fallback(self, active: bool) -> None:
        self.store_fallback_active.set(1 if active else 0)

    def update_system_metrics(self) -> None:
        self.uptime_seconds.set(time.time() - self._start_time)
