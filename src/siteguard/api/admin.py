"""
Admin API endpoints for SiteGuard.

Rate limit counter administration, store backend status and the
monitoring snapshot. Every endpoint requires the admin bearer token;
state-changing calls are recorded as admin actions by the monitor.
"""

from typing import Any, Dict, List

import structlog
from fastapi import APIRouter, Depends, Query, Request

from src.siteguard.core.auth import authenticate_admin_token
from src.siteguard.core.guard import with_rate_limit
from src.siteguard.core.rate_limiter import LimitCategory
from src.siteguard.core.security_monitor import Severity
from src.siteguard.models import (
    ErrorResponse,
    RateLimitResetRequest,
    RateLimitResetResponse,
    RateLimitStatsResponse,
    RateLimitUsageResponse,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/v1/admin")

ADMIN_USER = "admin-api"

# Buffer fill ratio above which the monitoring snapshot raises an alert
BUFFER_ALERT_RATIO = 0.8


@router.post(
    "/rate-limits/reset",
    response_model=RateLimitResetResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Unknown category"},
        401: {"model": ErrorResponse, "description": "Unauthorized - admin token required"},
    },
    summary="Reset a rate limit counter",
)
async def reset_rate_limit(
    request_data: RateLimitResetRequest,
    request: Request,
    admin_token: str = Depends(authenticate_admin_token),
) -> RateLimitResetResponse:
    """Drop the counter for one identity and category so the client starts a fresh window."""
    services = request.app.state.services

    await services.limiter.reset_limit(request_data.identity, request_data.category)
    services.monitor.monitor_admin_action(
        "rate_limit_reset",
        ADMIN_USER,
        request=request,
        target_resource=f"{request_data.category.value}:{request_data.identity[:16]}",
    )

    return RateLimitResetResponse(
        identity=request_data.identity,
        category=request_data.category,
        message="Rate limit counter reset",
    )


@router.get(
    "/rate-limits/usage",
    response_model=RateLimitUsageResponse,
    responses={401: {"model": ErrorResponse}},
    summary="Current usage of one counter",
)
async def get_rate_limit_usage(
    request: Request,
    identity: str = Query(..., min_length=1, max_length=200),
    category: LimitCategory = Query(default=LimitCategory.DEFAULT),
    admin_token: str = Depends(authenticate_admin_token),
) -> RateLimitUsageResponse:
    usage = await request.app.state.services.limiter.get_usage(identity, category)
    return RateLimitUsageResponse(identity=identity, category=category, **usage)


@router.get(
    "/rate-limits/stats",
    response_model=RateLimitStatsResponse,
    responses={401: {"model": ErrorResponse}},
    summary="Rate limit counters overview",
)
async def get_rate_limit_stats(
    request: Request,
    top: int = Query(default=10, ge=1, le=100),
    admin_token: str = Depends(authenticate_admin_token),
) -> RateLimitStatsResponse:
    stats = await request.app.state.services.limiter.get_stats(top_n=top)
    return RateLimitStatsResponse(**stats)


@router.get("/store/status", summary="Key-value store backend status")
async def get_store_status(
    request: Request,
    admin_token: str = Depends(authenticate_admin_token),
) -> Dict[str, Any]:
    return request.app.state.services.store.get_connection_status()


@router.post("/store/reconnect", summary="Retry the distributed store connection")
async def reconnect_store(
    request: Request,
    admin_token: str = Depends(authenticate_admin_token),
) -> Dict[str, Any]:
    """
    Attempt to reconnect the distributed backend.

    A failed command never reconnects on its own; this is the manual
    way back from fallback mode without a restart.
    """
    services = request.app.state.services
    connected = await services.store.connect()
    services.monitor.monitor_admin_action("store_reconnect", ADMIN_USER, request=request)

    logger.info("Store reconnect requested", connected=connected)
    return {
        "connected": connected,
        **services.store.get_connection_status(),
    }


def derive_alerts(
    monitor_stats: Dict[str, Any],
    logger_stats: Dict[str, Any],
    store_status: Dict[str, Any],
    buffer_size: int,
) -> List[Dict[str, Any]]:
    """Turn the raw snapshots into a short list of operator-facing alerts."""
    alerts: List[Dict[str, Any]] = []

    critical = monitor_stats["events_by_severity"].get(Severity.CRITICAL.value, 0)
    if critical:
        alerts.append({
            "level": "critical",
            "message": f"{critical} critical security events in the last hour",
        })

    high = monitor_stats["events_by_severity"].get(Severity.HIGH.value, 0)
    if high:
        alerts.append({
            "level": "high",
            "message": f"{high} high severity security events in the last hour",
        })

    if monitor_stats["flagged_ips"] or monitor_stats["flagged_users"]:
        alerts.append({
            "level": "high",
            "message": (
                f"{len(monitor_stats['flagged_ips'])} IPs and "
                f"{len(monitor_stats['flagged_users'])} users flagged for review"
            ),
        })

    if store_status.get("using_fallback"):
        alerts.append({
            "level": "warning",
            "message": "Rate limit counters served from in-process fallback store",
        })

    if buffer_size and logger_stats["buffered_events"] >= buffer_size * BUFFER_ALERT_RATIO:
        alerts.append({
            "level": "warning",
            "message": f"Secure log buffer at {logger_stats['buffered_events']}/{buffer_size} events",
        })

    return alerts


@router.get("/monitoring", summary="Security monitoring snapshot")
@with_rate_limit(LimitCategory.API_READ)
async def get_monitoring_snapshot(
    request: Request,
    admin_token: str = Depends(authenticate_admin_token),
) -> Dict[str, Any]:
    """
    Combined read-only view of the security services.

    Includes monitor statistics, the most recent high severity events,
    secure logger statistics, rate limit counters, store status and
    derived alerts.
    """
    services = request.app.state.services

    monitor_stats = services.monitor.get_monitoring_stats()
    logger_stats = services.secure_logger.get_security_stats()
    store_status = services.store.get_connection_status()
    rate_limit_stats = await services.limiter.get_stats()

    return {
        "monitor": monitor_stats,
        "recent_suspicious_activity": [event.to_dict() for event in services.monitor.recent_events()],
        "logger": logger_stats,
        "rate_limits": rate_limit_stats,
        "store": store_status,
        "alerts": derive_alerts(
            monitor_stats,
            logger_stats,
            store_status,
            services.secure_logger.buffer_size,
        ),
    }
