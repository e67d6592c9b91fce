"""
Error response models, used for OpenAPI documentation.
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str = Field(description="Error code")
    message: str = Field(description="Human-readable error message")
    details: Optional[Dict[str, Any]] = Field(default=None, description="Additional error details")


class RateLimitErrorResponse(BaseModel):
    """Body of a 429 response."""

    error: str = Field(description="Client-facing message")
    retryAfter: int = Field(description="Seconds until the window resets")
    type: str = Field(default="RATE_LIMIT_EXCEEDED")
