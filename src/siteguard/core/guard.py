"""
HTTP integration of the rate limiter.

Three entry points over the same check. A category of None picks one from
the request method and path with classify_endpoint.
- RateLimitGuard.check(request, category) -> (429 response or None, result)
- rate_limit_middleware(category): callable returning the 429 response or None
- with_rate_limit(category): route decorator adding X-RateLimit-* headers

Routes find the guard on request.app.state.services.
"""

import functools
import math
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Union

import structlog
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from starlette.requests import Request
from starlette.responses import Response

from .rate_limiter import LimitCategory, RateLimiter, RateLimitResult, classify_endpoint
from .request_context import RequestDescriptor

logger = structlog.get_logger(__name__)

RATE_LIMIT_MESSAGE = "Trop de requêtes. Veuillez réessayer plus tard."
RATE_LIMIT_TYPE = "RATE_LIMIT_EXCEEDED"


def rate_limit_headers(result: RateLimitResult) -> Dict[str, str]:
    return {
        "X-RateLimit-Limit": str(result.total_requests),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(math.ceil(result.reset_time / 1000)),
    }


class RateLimitGuard:
    """Runs a rate limit check for a request and shapes the HTTP outcome."""

    def __init__(self, limiter: RateLimiter, monitor: Optional[Any] = None) -> None:
        self.limiter = limiter
        self.monitor = monitor

    async def check(
        self,
        request: Request,
        category: Optional[Union[str, LimitCategory]] = LimitCategory.DEFAULT,
    ) -> Tuple[Optional[JSONResponse], RateLimitResult]:
        if category is None:
            category = classify_endpoint(request.method, request.url.path)
        category = LimitCategory.parse(category)
        descriptor = RequestDescriptor.from_request(request)
        result = await self.limiter.check_limit(descriptor.identity, category)

        if result.allowed:
            return None, result

        if self.monitor is not None:
            self.monitor.monitor_rate_limit_exceeded(descriptor.identity, category.value, descriptor)

        return self.deny_response(result), result

    def deny_response(self, result: RateLimitResult) -> JSONResponse:
        retry_after = result.retry_after_seconds(self.limiter.now_ms())
        headers = rate_limit_headers(result)
        headers["X-RateLimit-Remaining"] = "0"
        headers["Retry-After"] = str(retry_after)
        return JSONResponse(
            status_code=429,
            content={
                "error": RATE_LIMIT_MESSAGE,
                "retryAfter": retry_after,
                "type": RATE_LIMIT_TYPE,
            },
            headers=headers,
        )


def get_guard(request: Request) -> RateLimitGuard:
    return request.app.state.services.guard


def rate_limit_middleware(
    category: Optional[Union[str, LimitCategory]] = LimitCategory.DEFAULT,
) -> Callable[[Request], Awaitable[Optional[JSONResponse]]]:
    """Build a check returning the 429 response to send, or None to continue."""
    if category is not None:
        category = LimitCategory.parse(category)

    async def middleware(request: Request) -> Optional[JSONResponse]:
        response, _ = await get_guard(request).check(request, category)
        return response

    return middleware


def _find_request(args: Tuple[Any, ...], kwargs: Dict[str, Any]) -> Request:
    for value in list(args) + list(kwargs.values()):
        if isinstance(value, Request):
            return value
    raise TypeError("Rate limited handlers must accept a Request parameter")


def with_rate_limit(category: Optional[Union[str, LimitCategory]] = LimitCategory.DEFAULT) -> Callable:
    """
    Rate limit a route handler.

    The handler must declare a `request: Request` parameter. Denied
    requests get the 429 response without running the handler; allowed
    requests get X-RateLimit-* headers on the handler's response, taken
    from the same check. Pass category=None to classify each request by
    method and path.
    """
    if category is not None:
        category = LimitCategory.parse(category)

    def decorator(handler: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Response]]:
        @functools.wraps(handler)
        async def wrapper(*args: Any, **kwargs: Any) -> Response:
            request = _find_request(args, kwargs)
            denied, result = await get_guard(request).check(request, category)
            if denied is not None:
                return denied

            outcome = await handler(*args, **kwargs)
            if not isinstance(outcome, Response):
                outcome = JSONResponse(content=jsonable_encoder(outcome))
            outcome.headers.update(rate_limit_headers(result))
            return outcome

        return wrapper

    return decorator
