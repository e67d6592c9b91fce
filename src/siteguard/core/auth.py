"""
Admin token authentication.

The admin API uses one bearer token from settings. Every failed attempt
is reported to the security monitor as unauthorized access.
"""

import secrets
from typing import Optional

import structlog
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .exceptions import AuthenticationError

logger = structlog.get_logger(__name__)
security = HTTPBearer(auto_error=False)


def _reject(request: Request, reason: str, message: str) -> AuthenticationError:
    services = request.app.state.services
    services.monitor.monitor_unauthorized_access(request.url.path, request=request)
    logger.warning("Admin authentication failed", reason=reason, path=request.url.path)
    return AuthenticationError(message)


async def authenticate_admin_token(
    request: Request,
    token: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> str:
    """
    Authenticate the bearer token against the configured admin token.

    An empty admin token in settings closes the admin API entirely.
    """
    expected = request.app.state.services.settings.security.admin_token

    if not expected:
        raise _reject(request, "admin_api_disabled", "Admin API is disabled")

    if token is None or not token.credentials:
        raise _reject(request, "missing_token", "Missing authentication token")

    token_value = token.credentials.strip()
    if not secrets.compare_digest(token_value.encode(), expected.encode()):
        raise _reject(request, "invalid_token", "Invalid authentication token")

    logger.debug("Admin token authenticated", token=token_value[:8] + "...")
    return token_value
