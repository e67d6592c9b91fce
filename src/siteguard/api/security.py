"""
Security event intake endpoint.

Lets other services of the application report what they observed
(failed logins, unauthorized access, upload anomalies...) so that the
monitor can correlate them.
"""

from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Request

from src.siteguard.core.auth import authenticate_admin_token
from src.siteguard.core.exceptions import ValidationError
from src.siteguard.core.guard import with_rate_limit
from src.siteguard.core.request_context import UNKNOWN, RequestDescriptor
from src.siteguard.core.security_monitor import SecurityEvent, SecurityEventType, SecurityMonitor
from src.siteguard.models import ErrorResponse, SecurityEventRequest, SecurityEventResponse

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/v1/security")


def _require(report: SecurityEventRequest, *fields: str) -> None:
    missing = [name for name in fields if getattr(report, name) in (None, "")]
    if missing:
        raise ValidationError(
            f"Missing fields for {report.type.value} event",
            details={"missing": missing, "type": report.type.value},
        )


def _descriptor(report: SecurityEventRequest) -> RequestDescriptor:
    """Describe the observed client, not the reporting service."""
    headers: Dict[str, str] = {}
    if report.client_ip:
        headers["x-forwarded-for"] = report.client_ip
    if report.user_agent:
        headers["user-agent"] = report.user_agent
    return RequestDescriptor.from_headers(
        headers,
        url=report.endpoint,
        method=report.method,
        user_id=report.user_id,
    )


def record_report(monitor: SecurityMonitor, report: SecurityEventRequest) -> Optional[SecurityEvent]:
    """Route a report to the matching monitor operation."""
    descriptor = _descriptor(report)

    if report.type == SecurityEventType.FAILED_LOGIN:
        ip = report.client_ip or (descriptor.client_ip if descriptor.client_ip != UNKNOWN else None)
        if ip is None:
            _require(report, "client_ip")
        return monitor.monitor_failed_login(ip, report.user_id, descriptor)

    if report.type == SecurityEventType.UNAUTHORIZED_ACCESS:
        _require(report, "endpoint")
        return monitor.monitor_unauthorized_access(report.endpoint, report.user_id, descriptor)

    if report.type == SecurityEventType.SENSITIVE_DATA_ACCESS:
        _require(report, "data_type", "user_id")
        return monitor.monitor_sensitive_data_access(report.data_type, report.user_id, descriptor)

    if report.type == SecurityEventType.ADMIN_ACTION:
        _require(report, "action", "user_id")
        return monitor.monitor_admin_action(report.action, report.user_id, descriptor, report.target_resource)

    if report.type == SecurityEventType.FILE_UPLOAD_ANOMALY:
        _require(report, "reason")
        return monitor.monitor_file_upload_anomaly(report.reason, report.user_id, descriptor, report.file_info)

    if report.type == SecurityEventType.DATABASE_ERROR_SPIKE:
        _require(report, "error_count", "time_window")
        return monitor.monitor_database_error_spike(report.error_count, report.time_window)

    _require(report, "severity", "description")
    return monitor.log_security_event(
        report.type,
        report.severity,
        report.description,
        descriptor,
        report.user_id,
        report.metadata,
    )


@router.post(
    "/events",
    response_model=SecurityEventResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Missing fields for the event type"},
        401: {"model": ErrorResponse, "description": "Unauthorized - admin token required"},
        429: {"description": "Rate limit exceeded"},
    },
    summary="Report a security event",
)
@with_rate_limit(category=None)
async def report_security_event(
    report: SecurityEventRequest,
    request: Request,
    admin_token: str = Depends(authenticate_admin_token),
) -> Dict[str, Any]:
    event = record_report(request.app.state.services.monitor, report)

    logger.debug("Security event reported", event_type=report.type.value, recorded=event is not None)
    return SecurityEventResponse(
        recorded=event is not None,
        event=event.to_dict() if event is not None else None,
    ).model_dump()
