"""
Health check endpoints.

- /healthz: Liveness probe (always 200 if service alive)
- /readyz: Readiness probe (200 once the security services are started)
"""

from datetime import datetime, timezone
from typing import Any, Dict

import structlog
from fastapi import APIRouter, Request, Response, status

from src.siteguard import __version__

logger = structlog.get_logger(__name__)

router = APIRouter()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get(
    "/healthz",
    status_code=200,
    summary="Liveness probe",
    description="""
    Liveness probe endpoint.

    Always returns 200 OK if the service is running.
    """,
)
async def liveness_check() -> Dict[str, Any]:
    return {
        "status": "alive",
        "timestamp": _now(),
        "service": "siteguard",
        "version": __version__,
    }


@router.get(
    "/readyz",
    summary="Readiness probe",
    description="""
    Readiness probe endpoint.

    Returns 200 once the services container is started. Running on the
    in-process fallback store is a supported degraded mode and does not
    make the instance unready; the store status is reported either way.

    Returns 503 Service Unavailable before startup or after shutdown.
    """,
)
async def readiness_check(request: Request, response: Response) -> Dict[str, Any]:
    services = getattr(request.app.state, "services", None)

    if services is None or not services.started:
        logger.warning("Readiness check before services started")
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {
            "status": "not_ready",
            "reason": "services_not_started",
            "timestamp": _now(),
        }

    store_status = services.store.get_connection_status()
    response.status_code = status.HTTP_200_OK
    return {
        "status": "ready",
        "degraded": store_status["using_fallback"],
        "timestamp": _now(),
        "checks": {
            "store": store_status,
            "scheduler": {"healthy": services.scheduler.is_healthy()},
            "logger": {
                "environment": services.secure_logger.environment,
                "buffered_events": services.secure_logger.buffered_count,
            },
        },
    }
