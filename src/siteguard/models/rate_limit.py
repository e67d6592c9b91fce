"""
Rate limit admin API models.
"""

from typing import Dict, List

from pydantic import BaseModel, Field

from ..core.rate_limiter import LimitCategory


class RateLimitResetRequest(BaseModel):
    """Request model for resetting one counter."""

    identity: str = Field(
        ...,
        description="Derived client identity ('<ip>:<user-agent prefix>')",
        min_length=1,
        max_length=200,
    )
    category: LimitCategory = Field(
        default=LimitCategory.DEFAULT,
        description="Limit category of the counter",
    )


class RateLimitResetResponse(BaseModel):
    identity: str
    category: LimitCategory
    message: str


class RateLimitUsageResponse(BaseModel):
    """Current usage of one counter."""

    identity: str = Field(..., description="Derived client identity")
    category: LimitCategory = Field(..., description="Limit category")
    current: int = Field(..., description="Requests counted in the current window")
    limit: int = Field(..., description="Maximum requests per window")
    remaining: int = Field(..., description="Requests left in the current window")
    reset_time: int = Field(..., description="Window end, epoch milliseconds")


class TopIdentifier(BaseModel):
    identifier: str
    requests: int


class RateLimitStatsResponse(BaseModel):
    """Active counters across all identities."""

    total_keys: int = Field(..., description="Number of live counters")
    type_breakdown: Dict[str, int] = Field(default_factory=dict, description="Live counters per category")
    top_identifiers: List[TopIdentifier] = Field(default_factory=list, description="Most active identities")
