"""
Prometheus metrics endpoint.

Exposes metrics in Prometheus text format for scraping.
"""

import structlog
from fastapi import APIRouter, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="""
    Prometheus metrics endpoint in standard text format.

    **Key Metrics:**
    - rate_limit_decisions_total{category,decision} - Allow/deny decisions
    - security_events_total{type,severity} - Events recorded by the monitor
    - security_escalations_total{type} - Escalated events
    - secure_log_events_total{level} - Sanitized log events
    - secure_log_buffer_size - Events waiting for the next flush
    - store_fallback_active - 1 while counters live in process memory
    """,
)
async def get_metrics(request: Request) -> Response:
    services = getattr(request.app.state, "services", None)

    if services is None:
        logger.warning("Metrics collector not initialized")
        return Response(
            content="# Metrics collector not initialized\n",
            media_type=CONTENT_TYPE_LATEST,
        )

    services.metrics.update_system_metrics()
    metrics_data = generate_latest(services.metrics.registry)

    logger.debug("Metrics scraped successfully", size_bytes=len(metrics_data))

    return Response(
        content=metrics_data,
        media_type=CONTENT_TYPE_LATEST,
    )
