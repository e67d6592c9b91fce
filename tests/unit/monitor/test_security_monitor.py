"""
Tests for the security monitor.

Threshold escalation, periodic pattern analysis and cleanup are all
driven by the fake clock.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List

import pytest

from src.siteguard.core import security_monitor as security_monitor_module
from src.siteguard.core.masking import REDACTED
from src.siteguard.core.request_context import RequestDescriptor
from src.siteguard.core.security_monitor import (
    MonitorThresholds,
    SecurityEvent,
    SecurityEventType,
    SecurityMonitor,
    Severity,
    mask_ip,
)

ATTACKER_IP = "203.0.113.50"
DAY = 24 * 60 * 60


def count_type(monitor: SecurityMonitor, event_type: SecurityEventType) -> int:
    return monitor.get_monitoring_stats()["events_by_type"][event_type.value]


class TestFailedLoginEscalation:
    """Per-IP and per-user thresholds."""

    def test_ten_failures_escalate_exactly_once(self, monitor: SecurityMonitor) -> None:
        for _ in range(10):
            monitor.monitor_failed_login(ATTACKER_IP)

        assert count_type(monitor, SecurityEventType.SUSPICIOUS_IP) == 1
        assert ATTACKER_IP in monitor.flagged_ips

        monitor.monitor_failed_login(ATTACKER_IP)
        assert count_type(monitor, SecurityEventType.SUSPICIOUS_IP) == 1

    def test_nine_failures_do_not_escalate(self, monitor: SecurityMonitor) -> None:
        for _ in range(9):
            monitor.monitor_failed_login(ATTACKER_IP)

        assert count_type(monitor, SecurityEventType.SUSPICIOUS_IP) == 0
        assert monitor.get_ip_record(ATTACKER_IP).failed_logins == 9
        assert monitor.flagged_ips == set()

    def test_escalated_event_is_critical(self, monitor: SecurityMonitor) -> None:
        for _ in range(10):
            monitor.monitor_failed_login(ATTACKER_IP)

        critical = monitor.recent_events(min_severity=Severity.CRITICAL)
        assert len(critical) == 1
        assert critical[0].type == SecurityEventType.SUSPICIOUS_IP
        assert critical[0].ip == ATTACKER_IP
        assert critical[0].metadata["attempt_count"] == 10

    def test_user_escalates_after_five_failures(self, monitor: SecurityMonitor) -> None:
        for index in range(5):
            monitor.monitor_failed_login(f"198.51.100.{index}", user_id="alice")

        assert count_type(monitor, SecurityEventType.UNUSUAL_USER_BEHAVIOR) == 1
        assert "alice" in monitor.flagged_users

        record = monitor.get_user_record("alice")
        assert record.login_attempts == 5
        # The synthesized event is not counted as one of alice's actions
        assert record.suspicious_actions == 5

    def test_user_escalates_after_twenty_actions(self, monitor: SecurityMonitor) -> None:
        for index in range(20):
            monitor.monitor_sensitive_data_access(f"invoice-{index}", "bob")

        assert count_type(monitor, SecurityEventType.UNUSUAL_USER_BEHAVIOR) == 1
        assert monitor.get_user_record("bob").suspicious_actions == 20

    def test_action_hooks_receive_escalations(self, monitor: SecurityMonitor) -> None:
        seen: List[SecurityEvent] = []
        monitor.add_action_hook(seen.append)

        for _ in range(10):
            monitor.monitor_failed_login(ATTACKER_IP)

        assert [event.type for event in seen] == [SecurityEventType.SUSPICIOUS_IP]

    def test_custom_thresholds(self, secure_logger, clock) -> None:
        monitor = SecurityMonitor(secure_logger, MonitorThresholds(failed_logins_per_ip=3), clock=clock)
        for _ in range(3):
            monitor.monitor_failed_login(ATTACKER_IP)

        assert count_type(monitor, SecurityEventType.SUSPICIOUS_IP) == 1


class TestEventRecording:
    """Convenience operations and the generic entry point."""

    def test_event_fields_from_request(self, monitor: SecurityMonitor) -> None:
        descriptor = RequestDescriptor.from_headers(
            {"x-forwarded-for": "192.0.2.10", "user-agent": "curl/8.0"},
            url="http://testserver/admin",
            method="DELETE",
        )
        event = monitor.monitor_unauthorized_access("/admin", user_id="mallory", request=descriptor)

        assert event.type == SecurityEventType.UNAUTHORIZED_ACCESS
        assert event.severity == Severity.HIGH
        assert event.ip == "192.0.2.10"
        assert event.user_agent == "curl/8.0"
        assert event.metadata == {"endpoint": "/admin", "method": "DELETE"}
        assert event.endpoint == "http://testserver/admin"
        assert event.method == "DELETE"
        assert event.to_dict()["method"] == "DELETE"

    def test_unknown_ip_is_not_tracked(self, monitor: SecurityMonitor) -> None:
        monitor.monitor_admin_action("export", "admin-1", request=RequestDescriptor())
        assert monitor.get_monitoring_stats()["tracked_ips"] == 0
        assert monitor.get_monitoring_stats()["tracked_users"] == 1

    def test_generic_event_accepts_strings(self, monitor: SecurityMonitor) -> None:
        event = monitor.log_security_event("file_upload_anomaly", "medium", "Double extension", ip="192.0.2.1")
        assert event.type == SecurityEventType.FILE_UPLOAD_ANOMALY
        assert event.severity == Severity.MEDIUM

    def test_invalid_type_is_rejected(self, monitor: SecurityMonitor) -> None:
        with pytest.raises(ValueError):
            monitor.log_security_event("not_a_type", Severity.LOW, "nope")

    def test_database_spike_threshold(self, monitor: SecurityMonitor) -> None:
        assert monitor.monitor_database_error_spike(49, "1 minute") is None

        event = monitor.monitor_database_error_spike(50, "1 minute")
        assert event is not None
        assert event.severity == Severity.HIGH
        assert event.metadata == {"error_count": 50, "time_window": "1 minute"}

    def test_upload_anomaly_metadata(self, monitor: SecurityMonitor) -> None:
        event = monitor.monitor_file_upload_anomaly(
            "MIME mismatch", user_id="carol", file_info={"name": "logo.png.exe", "size": 1024}
        )
        assert event.metadata["file_info"] == {"name": "logo.png.exe", "size": 1024}

    def test_events_are_logged_securely(self, monitor: SecurityMonitor) -> None:
        monitor.monitor_admin_action("rotate", "admin-1")
        stats = monitor.secure_logger.get_security_stats()
        assert stats["by_level"]["security"] == 1

    def test_event_metric(self, monitor: SecurityMonitor, registry) -> None:
        monitor.monitor_failed_login(ATTACKER_IP)
        assert registry.get_sample_value(
            "security_events_total", {"type": "failed_login", "severity": "medium"}
        ) == 1


class RecordingLogger:
    """Stands in for the module structlog logger to capture alert records."""

    def __init__(self) -> None:
        self.records: List[Dict[str, Any]] = []

    def error(self, event: str, **kw: Any) -> None:
        self.records.append({"event": event, **kw})

    def exception(self, event: str, **kw: Any) -> None:
        self.records.append({"event": event, **kw})

    def info(self, event: str, **kw: Any) -> None:
        pass

    def warning(self, event: str, **kw: Any) -> None:
        pass

    def debug(self, event: str, **kw: Any) -> None:
        pass


class TestEventSanitization:
    """No sensitive value survives in stored, listed or alerted events."""

    SECRET = "tok-SECRET-999"

    def test_stored_event_metadata_is_sanitized(self, monitor: SecurityMonitor) -> None:
        event = monitor.monitor_file_upload_anomaly(
            "bad file", user_id="u1", file_info={"name": "cv.pdf", "session_token": self.SECRET}
        )

        assert event.metadata["file_info"] == {"name": "cv.pdf", "session_token": REDACTED}
        assert self.SECRET not in str(event.to_dict())

    def test_description_is_sanitized(self, monitor: SecurityMonitor) -> None:
        event = monitor.log_security_event("admin_action", "high", "reset password=hunter22 for bob@example.com")

        assert event.description == "reset [REDACTED] for [REDACTED]"

    def test_metadata_secret_scrubbed_from_description(self, monitor: SecurityMonitor) -> None:
        event = monitor.log_security_event(
            SecurityEventType.SUSPICIOUS_IP,
            Severity.HIGH,
            "Replayed abcd-efgh-1234 from scanner",
            metadata={"session_token": "abcd-efgh-1234"},
            ip="192.0.2.200",
        )

        assert event.description == "Replayed [REDACTED] from scanner"
        assert event.metadata == {"session_token": REDACTED}

    def test_recent_events_carry_clean_values(self, monitor: SecurityMonitor) -> None:
        monitor.log_security_event(
            SecurityEventType.UNAUTHORIZED_ACCESS,
            Severity.HIGH,
            "Replayed cookie",
            metadata={"cookie": self.SECRET, "note": f"value {self.SECRET}"},
        )

        recent = monitor.recent_events()
        assert len(recent) == 1
        assert self.SECRET not in str(recent[0].to_dict())
        assert recent[0].metadata["note"] == "value [REDACTED]"

    def test_critical_alert_record_is_sanitized(
        self, monitor: SecurityMonitor, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        recorder = RecordingLogger()
        monkeypatch.setattr(security_monitor_module, "logger", recorder)

        monitor.log_security_event("admin_action", "high", "reset password=hunter22 for bob@example.com")

        alerts = [record for record in recorder.records if record["event"] == "Critical security alert"]
        assert len(alerts) == 1
        assert alerts[0]["description"] == "reset [REDACTED] for [REDACTED]"
        assert "hunter22" not in str(recorder.records)


class TestPatternAnalysis:
    """Hourly sweep over recent events."""

    def test_coordinated_attack(self, monitor: SecurityMonitor) -> None:
        for _ in range(20):
            monitor.log_security_event(SecurityEventType.FILE_UPLOAD_ANOMALY, Severity.MEDIUM, "scan", ip=ATTACKER_IP)
        monitor.log_security_event(SecurityEventType.UNAUTHORIZED_ACCESS, Severity.HIGH, "admin scan", ip=ATTACKER_IP)

        synthesized = monitor.analyze_security_patterns()

        assert [event.type for event in synthesized] == [SecurityEventType.SUSPICIOUS_IP]
        assert synthesized[0].metadata["event_count"] == 21
        assert ATTACKER_IP in monitor.flagged_ips

    def test_many_low_severity_events_are_not_an_attack(self, monitor: SecurityMonitor) -> None:
        for _ in range(30):
            monitor.log_security_event(SecurityEventType.RATE_LIMIT_EXCEEDED, Severity.LOW, "throttled", ip=ATTACKER_IP)

        assert monitor.analyze_security_patterns() == []

    def test_events_older_than_an_hour_are_ignored(self, monitor: SecurityMonitor, clock) -> None:
        for _ in range(21):
            monitor.log_security_event(SecurityEventType.UNAUTHORIZED_ACCESS, Severity.HIGH, "scan", ip=ATTACKER_IP)

        clock.advance(3601)
        assert monitor.analyze_security_patterns() == []

    def test_user_rescan_above_threshold(self, monitor: SecurityMonitor) -> None:
        for index in range(21):
            monitor.monitor_sensitive_data_access("payroll", "dave", RequestDescriptor(url=f"/api/payroll/{index % 3}"))

        synthesized = monitor.analyze_security_patterns()
        users = [event for event in synthesized if event.type == SecurityEventType.UNUSUAL_USER_BEHAVIOR]

        assert len(users) == 1
        assert users[0].metadata == {
            "suspicious_actions": 21,
            "recent_endpoints_count": 20,
            "unique_endpoints": 3,
        }

    def test_error_spike(self, monitor: SecurityMonitor) -> None:
        for index in range(11):
            monitor.log_security_event(
                SecurityEventType.DATABASE_ERROR_SPIKE, Severity.HIGH, "errors", ip=f"10.0.0.{index}"
            )

        synthesized = monitor.analyze_security_patterns()

        spikes = [event for event in synthesized if event.type == SecurityEventType.DATABASE_ERROR_SPIKE]
        assert len(spikes) == 1
        assert spikes[0].severity == Severity.CRITICAL
        assert spikes[0].metadata["error_count"] == 11

    def test_ten_error_events_are_not_a_spike(self, monitor: SecurityMonitor) -> None:
        for _ in range(10):
            monitor.log_security_event(SecurityEventType.DATABASE_ERROR_SPIKE, Severity.HIGH, "errors")

        assert monitor.analyze_security_patterns() == []


class TestCleanup:
    """Retention and decay."""

    def test_old_events_and_ips_removed(self, monitor: SecurityMonitor, clock) -> None:
        monitor.monitor_failed_login(ATTACKER_IP)
        clock.advance(DAY + 1)
        monitor.monitor_failed_login("192.0.2.77")

        result = monitor.cleanup_old_data()

        assert result["events_removed"] == 1
        assert result["ips_removed"] == 1
        assert monitor.get_ip_record(ATTACKER_IP) is None
        assert monitor.get_ip_record("192.0.2.77") is not None

    def test_user_decay(self, monitor: SecurityMonitor, clock) -> None:
        for index in range(3):
            monitor.monitor_failed_login(f"198.51.100.{index}", user_id="erin")
        for _ in range(8):
            monitor.monitor_sensitive_data_access("payroll", "erin", RequestDescriptor(url="/api/payroll"))

        clock.advance(DAY + 1)
        result = monitor.cleanup_old_data()

        record = monitor.get_user_record("erin")
        assert result["users_decayed"] == 1
        assert record.login_attempts == 0
        assert record.suspicious_actions == 5
        assert len(record.recent_endpoints) == 0

    def test_decay_once_per_quiet_period(self, monitor: SecurityMonitor, clock) -> None:
        for _ in range(8):
            monitor.monitor_sensitive_data_access("payroll", "frank")

        clock.advance(DAY + 1)
        monitor.cleanup_old_data()
        clock.advance(15 * 60)
        monitor.cleanup_old_data()

        assert monitor.get_user_record("frank").suspicious_actions == 4

        clock.advance(DAY)
        monitor.cleanup_old_data()
        assert monitor.get_user_record("frank").suspicious_actions == 2

    def test_active_user_not_decayed(self, monitor: SecurityMonitor, clock) -> None:
        monitor.monitor_sensitive_data_access("payroll", "gina")
        clock.advance(DAY - 60)
        monitor.monitor_sensitive_data_access("payroll", "gina")
        clock.advance(120)

        assert monitor.cleanup_old_data()["users_decayed"] == 0
        assert monitor.get_user_record("gina").suspicious_actions == 2


class TestTickAndStats:
    """Scheduling and read-only statistics."""

    def test_tick_intervals(self, monitor: SecurityMonitor, clock) -> None:
        start = clock()
        assert monitor.tick(start + 299) == {"analysis": False, "cleanup": False}
        assert monitor.tick(start + 300) == {"analysis": True, "cleanup": False}
        assert monitor.tick(start + 599) == {"analysis": False, "cleanup": False}
        assert monitor.tick(start + 900) == {"analysis": True, "cleanup": True}

    def test_last_cleanup_reports_actual_time(self, monitor: SecurityMonitor, clock) -> None:
        assert monitor.get_monitoring_stats()["last_cleanup"] is None

        clock.advance(900)
        monitor.tick(clock())

        last_cleanup = monitor.get_monitoring_stats()["last_cleanup"]
        assert last_cleanup == datetime.fromtimestamp(clock(), tz=timezone.utc).isoformat()

    def test_stats_are_read_only(self, monitor: SecurityMonitor) -> None:
        for _ in range(10):
            monitor.monitor_failed_login(ATTACKER_IP)

        first = monitor.get_monitoring_stats()
        second = monitor.get_monitoring_stats()

        assert first == second
        assert first["total_events"] == 11
        assert first["recent_events"] == 11
        assert first["tracked_ips"] == 1
        assert first["events_by_severity"]["critical"] == 1
        assert first["flagged_ips"] == [mask_ip(ATTACKER_IP)]
        assert first["flagged_ips"] == ["203.0.11***"]

    def test_recent_events_newest_first(self, monitor: SecurityMonitor, clock) -> None:
        monitor.monitor_unauthorized_access("/a")
        clock.advance(1)
        monitor.monitor_unauthorized_access("/b")
        monitor.monitor_admin_action("noop", "admin-1")

        recent = monitor.recent_events()
        assert [event.metadata["endpoint"] for event in recent] == ["/b", "/a"]
