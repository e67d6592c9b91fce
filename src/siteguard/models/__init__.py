"""
Pydantic data models package.

Contains request and response models for:
- Rate limit administration
- Security event intake
- Error responses
"""

from .errors import ErrorResponse, RateLimitErrorResponse
from .rate_limit import (
    RateLimitResetRequest,
    RateLimitResetResponse,
    RateLimitStatsResponse,
    RateLimitUsageResponse,
    TopIdentifier,
)
from .security import SecurityEventRequest, SecurityEventResponse

__all__ = [
    # Error models
    "ErrorResponse",
    "RateLimitErrorResponse",

    # Rate limit models
    "RateLimitResetRequest",
    "RateLimitResetResponse",
    "RateLimitStatsResponse",
    "RateLimitUsageResponse",
    "TopIdentifier",

    # Security models
    "SecurityEventRequest",
    "SecurityEventResponse",
]
