"""
Security event monitor.

Records security events, tracks per-IP and per-user activity and
synthesizes escalated events when accumulated patterns cross fixed
thresholds:
- 10 failed logins from one IP => SUSPICIOUS_IP (critical)
- 5 failed logins or 20 suspicious actions for one user => UNUSUAL_USER_BEHAVIOR (high)

Escalated events re-enter the same pipeline. Periodic analysis and
cleanup run from tick(now), so tests drive them with a fake clock.

Each in-process map has its own lock; sweeps copy before iterating.
"""

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Tuple, Union

import structlog

from ..config import MonitorSettings
from .metrics import MetricsCollector
from .request_context import UNKNOWN, RequestLike, to_descriptor
from .secure_logger import SecureLogger

logger = structlog.get_logger(__name__)

ONE_HOUR = 60 * 60


class SecurityEventType(str, Enum):
    FAILED_LOGIN = "failed_login"
    SUSPICIOUS_IP = "suspicious_ip"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    UNAUTHORIZED_ACCESS = "unauthorized_access"
    SENSITIVE_DATA_ACCESS = "sensitive_data_access"
    ADMIN_ACTION = "admin_action"
    FILE_UPLOAD_ANOMALY = "file_upload_anomaly"
    DATABASE_ERROR_SPIKE = "database_error_spike"
    UNUSUAL_USER_BEHAVIOR = "unusual_user_behavior"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    def at_least(self, other: "Severity") -> bool:
        return self.rank >= Severity(other).rank


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}

# Events the monitor synthesizes itself; they never count as user actions
SYNTHESIZED_TYPES = (SecurityEventType.SUSPICIOUS_IP, SecurityEventType.UNUSUAL_USER_BEHAVIOR)


@dataclass(frozen=True)
class SecurityEvent:
    type: SecurityEventType
    severity: Severity
    description: str
    timestamp: float
    user_id: Optional[str] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    endpoint: Optional[str] = None
    method: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "description": self.description,
            "timestamp": datetime.fromtimestamp(self.timestamp, tz=timezone.utc).isoformat(),
            "user_id": self.user_id,
            "ip": self.ip,
            "user_agent": self.user_agent,
            "endpoint": self.endpoint,
            "method": self.method,
            "metadata": self.metadata,
        }


@dataclass
class IPTrackingRecord:
    count: int = 0
    last_seen: float = 0.0
    failed_logins: int = 0
    events: Deque[SecurityEventType] = field(default_factory=lambda: deque(maxlen=100))


@dataclass
class UserBehaviorRecord:
    login_attempts: int = 0
    last_login: Optional[float] = None
    suspicious_actions: int = 0
    recent_endpoints: Deque[str] = field(default_factory=lambda: deque(maxlen=20))
    last_seen: float = 0.0
    last_decay: float = 0.0


@dataclass(frozen=True)
class MonitorThresholds:
    failed_logins_per_ip: int = 10
    failed_logins_per_user: int = 5
    suspicious_actions_per_user: int = 20
    database_errors_per_minute: int = 50
    coordinated_attack_events: int = 20
    error_spike_events: int = 10
    recent_endpoints: int = 20
    retention_seconds: int = 24 * 60 * 60
    analysis_interval_seconds: int = 5 * 60
    cleanup_interval_seconds: int = 15 * 60

    @classmethod
    def from_settings(cls, settings: MonitorSettings) -> "MonitorThresholds":
        return cls(
            failed_logins_per_ip=settings.failed_logins_per_ip,
            failed_logins_per_user=settings.failed_logins_per_user,
            suspicious_actions_per_user=settings.suspicious_actions_per_user,
            database_errors_per_minute=settings.database_errors_per_minute,
            coordinated_attack_events=settings.coordinated_attack_events,
            error_spike_events=settings.error_spike_events,
            recent_endpoints=settings.recent_endpoints,
            retention_seconds=settings.retention_seconds,
            analysis_interval_seconds=settings.analysis_interval_seconds,
            cleanup_interval_seconds=settings.cleanup_interval_seconds,
        )


ActionHook = Callable[[SecurityEvent], None]

# (type, severity, description, user_id, ip, metadata)
_Escalation = Tuple[SecurityEventType, Severity, str, Optional[str], Optional[str], Dict[str, Any]]


def mask_ip(ip: str) -> str:
    return ip[:8] + "***"


class SecurityMonitor:
    """
    In-process security event tracker with threshold escalation.

    Automatic actions (flagging an IP or a user) are hook points only:
    the monitor records the flag and calls registered action hooks, it
    never blocks traffic itself.
    """

    def __init__(
        self,
        secure_logger: SecureLogger,
        thresholds: Optional[MonitorThresholds] = None,
        clock: Callable[[], float] = time.time,
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        self.secure_logger = secure_logger
        self.thresholds = thresholds or MonitorThresholds()
        self.metrics = metrics
        self._clock = clock

        self._events: List[SecurityEvent] = []
        self._ips: Dict[str, IPTrackingRecord] = {}
        self._users: Dict[str, UserBehaviorRecord] = {}
        self._events_lock = threading.Lock()
        self._ips_lock = threading.Lock()
        self._users_lock = threading.Lock()

        self.flagged_ips: Set[str] = set()
        self.flagged_users: Set[str] = set()
        self._action_hooks: List[ActionHook] = []

        started = clock()
        self._last_analysis = started
        self._last_cleanup_run = started
        self.last_cleanup: Optional[float] = None

    def add_action_hook(self, hook: ActionHook) -> None:
        """Register mitigation for SUSPICIOUS_IP / UNUSUAL_USER_BEHAVIOR events."""
        self._action_hooks.append(hook)

    def log_security_event(
        self,
        event_type: Union[str, SecurityEventType],
        severity: Union[str, Severity],
        description: str,
        request: RequestLike = None,
        user_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        ip: Optional[str] = None,
    ) -> SecurityEvent:
        """Record an event, log it securely and update tracking counters.

        The description and metadata are sanitized once here; the stored event,
        the secure log and the critical alert all carry the clean values.
        """
        event_type = SecurityEventType(event_type)
        severity = Severity(severity)
        descriptor = to_descriptor(request)

        if ip is None and descriptor is not None and descriptor.client_ip != UNKNOWN:
            ip = descriptor.client_ip

        clean_description, clean_metadata = self.secure_logger.sanitizer.sanitize_event(
            description, dict(metadata or {})
        )

        event = SecurityEvent(
            type=event_type,
            severity=severity,
            description=clean_description,
            timestamp=self._clock(),
            user_id=user_id,
            ip=ip,
            user_agent=descriptor.user_agent if descriptor else None,
            endpoint=descriptor.url if descriptor else None,
            method=descriptor.method if descriptor else None,
            metadata=clean_metadata,
        )

        with self._events_lock:
            self._events.append(event)

        if self.metrics:
            self.metrics.record_security_event(event_type.value, severity.value)

        self.secure_logger.security(
            f"Security event: {event_type.value} - {event.description}",
            {"event_type": event_type.value, "severity": severity.value, **event.metadata},
            request=descriptor,
            user_id=user_id,
        )

        if severity.at_least(Severity.HIGH):
            self._handle_critical_event(event)

        for escalation in self._update_counters(event):
            self._escalate(*escalation)

        return event

    def _escalate(
        self,
        event_type: SecurityEventType,
        severity: Severity,
        description: str,
        user_id: Optional[str],
        ip: Optional[str],
        metadata: Dict[str, Any],
    ) -> SecurityEvent:
        if self.metrics:
            self.metrics.record_escalation(event_type.value)
        return self.log_security_event(event_type, severity, description, user_id=user_id, metadata=metadata, ip=ip)

    def _update_counters(self, event: SecurityEvent) -> List[_Escalation]:
        escalations: List[_Escalation] = []
        is_failed_login = event.type == SecurityEventType.FAILED_LOGIN

        if event.ip:
            with self._ips_lock:
                record = self._ips.setdefault(event.ip, IPTrackingRecord())
                record.count += 1
                record.last_seen = event.timestamp
                record.events.append(event.type)
                if is_failed_login:
                    record.failed_logins += 1
                    failed = record.failed_logins
                else:
                    failed = 0

            if is_failed_login and failed == self.thresholds.failed_logins_per_ip:
                escalations.append((
                    SecurityEventType.SUSPICIOUS_IP,
                    Severity.CRITICAL,
                    f"IP {event.ip} exceeded failed login threshold ({failed} attempts)",
                    None,
                    event.ip,
                    {"ip": event.ip, "attempt_count": failed, "time_span": "24h"},
                ))

        if event.user_id and event.type not in SYNTHESIZED_TYPES:
            with self._users_lock:
                record = self._users.get(event.user_id)
                if record is None:
                    record = UserBehaviorRecord(
                        recent_endpoints=deque(maxlen=self.thresholds.recent_endpoints),
                        last_decay=event.timestamp,
                    )
                    self._users[event.user_id] = record
                record.suspicious_actions += 1
                record.last_seen = event.timestamp
                if event.endpoint:
                    record.recent_endpoints.append(event.endpoint)
                if is_failed_login:
                    record.login_attempts += 1
                attempts = record.login_attempts
                actions = record.suspicious_actions

            if is_failed_login and attempts == self.thresholds.failed_logins_per_user:
                escalations.append((
                    SecurityEventType.UNUSUAL_USER_BEHAVIOR,
                    Severity.HIGH,
                    f"User {event.user_id} exceeded failed login threshold",
                    event.user_id,
                    None,
                    {"attempt_count": attempts},
                ))
            elif actions == self.thresholds.suspicious_actions_per_user:
                escalations.append((
                    SecurityEventType.UNUSUAL_USER_BEHAVIOR,
                    Severity.HIGH,
                    f"User {event.user_id} exceeded suspicious action threshold",
                    event.user_id,
                    None,
                    {"suspicious_actions": actions},
                ))

        return escalations

    def _handle_critical_event(self, event: SecurityEvent) -> None:
        logger.error(
            "Critical security alert",
            event_type=event.type.value,
            description=event.description,
            severity=event.severity.value,
            ip=event.ip,
            user_id=event.user_id,
            event_time=event.to_dict()["timestamp"],
        )

        if event.type == SecurityEventType.SUSPICIOUS_IP and event.ip:
            self._flag_ip(event.ip)
        elif event.type == SecurityEventType.UNUSUAL_USER_BEHAVIOR and event.user_id:
            self._flag_user(event.user_id)
        else:
            return

        for hook in list(self._action_hooks):
            try:
                hook(event)
            except Exception:
                logger.exception("Security action hook failed", event_type=event.type.value)

    def _flag_ip(self, ip: str) -> None:
        self.flagged_ips.add(ip)
        masked = mask_ip(ip)
        self.secure_logger.security(
            f"Automatic action: IP {masked} flagged for monitoring",
            {"action": "ip_flagged", "ip": masked, "auto_action": True},
        )

    def _flag_user(self, user_id: str) -> None:
        self.flagged_users.add(user_id)
        self.secure_logger.security(
            f"Automatic action: User {user_id} flagged for review",
            {"action": "user_flagged", "user_id": user_id, "auto_action": True},
        )

    def monitor_failed_login(self, ip: str, user_id: Optional[str] = None, request: RequestLike = None) -> SecurityEvent:
        suffix = f" for user {user_id}" if user_id else ""
        return self.log_security_event(
            SecurityEventType.FAILED_LOGIN,
            Severity.MEDIUM,
            f"Failed login attempt from {ip}{suffix}",
            request,
            user_id,
            {"ip": ip, "user_id": user_id},
            ip=ip,
        )

    def monitor_unauthorized_access(
        self,
        endpoint: str,
        user_id: Optional[str] = None,
        request: RequestLike = None,
    ) -> SecurityEvent:
        descriptor = to_descriptor(request)
        return self.log_security_event(
            SecurityEventType.UNAUTHORIZED_ACCESS,
            Severity.HIGH,
            f"Unauthorized access attempt to {endpoint}",
            descriptor,
            user_id,
            {"endpoint": endpoint, "method": descriptor.method if descriptor else None},
        )

    def monitor_sensitive_data_access(self, data_type: str, user_id: str, request: RequestLike = None) -> SecurityEvent:
        descriptor = to_descriptor(request)
        return self.log_security_event(
            SecurityEventType.SENSITIVE_DATA_ACCESS,
            Severity.MEDIUM,
            f"Access to sensitive data: {data_type}",
            descriptor,
            user_id,
            {"data_type": data_type, "endpoint": descriptor.url if descriptor else None},
        )

    def monitor_admin_action(
        self,
        action: str,
        user_id: str,
        request: RequestLike = None,
        target_resource: Optional[str] = None,
    ) -> SecurityEvent:
        target = f" on {target_resource}" if target_resource else ""
        return self.log_security_event(
            SecurityEventType.ADMIN_ACTION,
            Severity.MEDIUM,
            f"Admin action: {action}{target}",
            request,
            user_id,
            {"action": action, "target_resource": target_resource},
        )

    def monitor_file_upload_anomaly(
        self,
        reason: str,
        user_id: Optional[str] = None,
        request: RequestLike = None,
        file_info: Optional[Dict[str, Any]] = None,
    ) -> SecurityEvent:
        return self.log_security_event(
            SecurityEventType.FILE_UPLOAD_ANOMALY,
            Severity.MEDIUM,
            f"File upload anomaly: {reason}",
            request,
            user_id,
            {"reason": reason, "file_info": file_info},
        )

    def monitor_database_error_spike(self, error_count: int, time_window: str) -> Optional[SecurityEvent]:
        """Record a spike only when error_count reaches the per-minute threshold."""
        if error_count < self.thresholds.database_errors_per_minute:
            return None
        return self.log_security_event(
            SecurityEventType.DATABASE_ERROR_SPIKE,
            Severity.HIGH,
            f"Database error spike: {error_count} errors in {time_window}",
            metadata={"error_count": error_count, "time_window": time_window},
        )

    def monitor_rate_limit_exceeded(self, identity: str, category: str, request: RequestLike = None) -> SecurityEvent:
        descriptor = to_descriptor(request)
        return self.log_security_event(
            SecurityEventType.RATE_LIMIT_EXCEEDED,
            Severity.LOW,
            f"Rate limit exceeded for category {category}",
            descriptor,
            descriptor.user_id if descriptor else None,
            {"category": category, "identity_prefix": identity[:16]},
        )

    def _events_since(self, cutoff: float) -> List[SecurityEvent]:
        with self._events_lock:
            return [event for event in self._events if event.timestamp > cutoff]

    def analyze_security_patterns(self, now: Optional[float] = None) -> List[SecurityEvent]:
        """Sweep the last hour for coordinated attacks, abnormal users and error spikes."""
        now = self._clock() if now is None else now
        self._last_analysis = now
        recent = self._events_since(now - ONE_HOUR)
        synthesized: List[SecurityEvent] = []

        by_ip: Dict[str, List[SecurityEvent]] = {}
        for event in recent:
            if event.ip:
                by_ip.setdefault(event.ip, []).append(event)

        for ip, events in by_ip.items():
            if len(events) <= self.thresholds.coordinated_attack_events:
                continue
            if not any(e.severity.at_least(Severity.HIGH) for e in events):
                continue
            synthesized.append(self._escalate(
                SecurityEventType.SUSPICIOUS_IP,
                Severity.CRITICAL,
                f"Coordinated attack detected from IP {ip}",
                None,
                ip,
                {
                    "ip": ip,
                    "event_count": len(events),
                    "event_types": sorted({e.type.value for e in events}),
                },
            ))

        with self._users_lock:
            users = [
                (user_id, record.suspicious_actions, list(record.recent_endpoints))
                for user_id, record in self._users.items()
            ]

        for user_id, actions, endpoints in users:
            if actions > self.thresholds.suspicious_actions_per_user:
                synthesized.append(self._escalate(
                    SecurityEventType.UNUSUAL_USER_BEHAVIOR,
                    Severity.HIGH,
                    f"Abnormal behavior pattern detected for user {user_id}",
                    user_id,
                    None,
                    {
                        "suspicious_actions": actions,
                        "recent_endpoints_count": len(endpoints),
                        "unique_endpoints": len(set(endpoints)),
                    },
                ))

        error_events = [
            e for e in recent
            if e.type == SecurityEventType.DATABASE_ERROR_SPIKE or e.severity == Severity.CRITICAL
        ]
        if len(error_events) > self.thresholds.error_spike_events:
            synthesized.append(self._escalate(
                SecurityEventType.DATABASE_ERROR_SPIKE,
                Severity.CRITICAL,
                f"System error spike detected: {len(error_events)} critical events in the last hour",
                None,
                None,
                {
                    "error_count": len(error_events),
                    "time_window": "1 hour",
                    "error_types": sorted({e.type.value for e in error_events}),
                },
            ))

        logger.debug("Security pattern analysis completed", recent_events=len(recent), synthesized=len(synthesized))
        return synthesized

    def cleanup_old_data(self, now: Optional[float] = None) -> Dict[str, int]:
        """
        Drop events and IP records past retention; decay idle user records.

        A user record is decayed at most once per retention period of
        inactivity. It is never deleted.
        """
        now = self._clock() if now is None else now
        cutoff = now - self.thresholds.retention_seconds

        with self._events_lock:
            before = len(self._events)
            self._events = [event for event in self._events if event.timestamp > cutoff]
            events_removed = before - len(self._events)

        with self._ips_lock:
            stale_ips = [ip for ip, record in list(self._ips.items()) if record.last_seen < cutoff]
            for ip in stale_ips:
                del self._ips[ip]

        users_decayed = 0
        with self._users_lock:
            for record in list(self._users.values()):
                if now - max(record.last_seen, record.last_decay) >= self.thresholds.retention_seconds:
                    record.login_attempts = 0
                    record.suspicious_actions //= 2
                    record.recent_endpoints.clear()
                    record.last_decay = now
                    users_decayed += 1

        self.last_cleanup = now
        self._last_cleanup_run = now

        logger.info(
            "Security monitor cleanup completed",
            events_removed=events_removed,
            ips_removed=len(stale_ips),
            users_decayed=users_decayed,
        )
        return {
            "events_removed": events_removed,
            "ips_removed": len(stale_ips),
            "users_decayed": users_decayed,
        }

    def tick(self, now: float) -> Dict[str, bool]:
        """Run analysis and cleanup when their intervals have elapsed."""
        ran = {"analysis": False, "cleanup": False}
        if now - self._last_analysis >= self.thresholds.analysis_interval_seconds:
            self.analyze_security_patterns(now)
            ran["analysis"] = True
        if now - self._last_cleanup_run >= self.thresholds.cleanup_interval_seconds:
            self.cleanup_old_data(now)
            ran["cleanup"] = True
        return ran

    def get_ip_record(self, ip: str) -> Optional[IPTrackingRecord]:
        with self._ips_lock:
            return self._ips.get(ip)

    def get_user_record(self, user_id: str) -> Optional[UserBehaviorRecord]:
        with self._users_lock:
            return self._users.get(user_id)

    def recent_events(
        self,
        limit: int = 20,
        min_severity: Severity = Severity.HIGH,
        now: Optional[float] = None,
    ) -> List[SecurityEvent]:
        """Most recent events of the last hour at or above min_severity, newest first."""
        now = self._clock() if now is None else now
        events = [e for e in self._events_since(now - ONE_HOUR) if e.severity.at_least(min_severity)]
        events.sort(key=lambda e: e.timestamp, reverse=True)
        return events[:limit]

    def get_monitoring_stats(self, now: Optional[float] = None) -> Dict[str, Any]:
        """Read-only snapshot of the monitor state."""
        now = self._clock() if now is None else now
        with self._events_lock:
            total_events = len(self._events)
        recent = self._events_since(now - ONE_HOUR)
        with self._ips_lock:
            tracked_ips = len(self._ips)
        with self._users_lock:
            tracked_users = len(self._users)

        by_type = {event_type.value: 0 for event_type in SecurityEventType}
        by_severity = {severity.value: 0 for severity in Severity}
        for event in recent:
            by_type[event.type.value] += 1
            by_severity[event.severity.value] += 1

        return {
            "total_events": total_events,
            "recent_events": len(recent),
            "tracked_ips": tracked_ips,
            "tracked_users": tracked_users,
            "events_by_type": by_type,
            "events_by_severity": by_severity,
            "flagged_ips": sorted(mask_ip(ip) for ip in self.flagged_ips),
            "flagged_users": sorted(self.flagged_users),
            "last_cleanup": (
                datetime.fromtimestamp(self.last_cleanup, tz=timezone.utc).isoformat()
                if self.last_cleanup is not None else None
            ),
        }
