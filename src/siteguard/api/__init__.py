"""
API endpoints package.

Contains FastAPI routers for all service endpoints:
- /v1/admin/* - Rate limit, store and monitoring administration
- /v1/security/events - Security event intake
- /metrics - Prometheus metrics
- /healthz, /readyz - Health checks
"""
from .admin import router as admin_router
from .healthz import router as healthz_router
from .metrics import router as metrics_router
from .security import router as security_router

__all__ = ["admin_router", "healthz_router", "metrics_router", "security_router"]
