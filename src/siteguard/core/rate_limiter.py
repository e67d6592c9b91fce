"""
Fixed-window rate limiter backed by the key-value store.

Each (identity, category) pair owns a hash with fields `count` and
`resetTime`; the key's own TTL marks the end of the window. Requests
denied after the limit is reached are not counted, so repeated retries
cannot extend a lockout into later windows.

Window creation is best-effort: two first requests racing on an empty
key can both start the window. Increments within a window use the
store's atomic HINCRBY.
"""

import math
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

import structlog

from .exceptions import InvalidCategoryError
from .metrics import MetricsCollector
from .store import KeyValueStore

logger = structlog.get_logger(__name__)

KEY_PREFIX = "ratelimit:"


class LimitCategory(str, Enum):
    """Endpoint families, each with its own quota."""

    AUTH = "AUTH"
    UPLOAD = "UPLOAD"
    API_READ = "API_READ"
    API_WRITE = "API_WRITE"
    FINANCIAL = "FINANCIAL"
    DEFAULT = "DEFAULT"

    @classmethod
    def parse(cls, value: Union[str, "LimitCategory"]) -> "LimitCategory":
        if isinstance(value, LimitCategory):
            return value
        try:
            return cls(str(value).upper())
        except ValueError:
            raise InvalidCategoryError(str(value)) from None


@dataclass(frozen=True)
class RateLimitConfig:
    max_requests: int
    window_ms: int

    @property
    def window_seconds(self) -> int:
        return math.ceil(self.window_ms / 1000)


RATE_LIMITS: Dict[LimitCategory, RateLimitConfig] = {
    LimitCategory.AUTH: RateLimitConfig(max_requests=3, window_ms=15 * 60 * 1000),
    LimitCategory.UPLOAD: RateLimitConfig(max_requests=10, window_ms=60 * 1000),
    LimitCategory.API_READ: RateLimitConfig(max_requests=100, window_ms=60 * 1000),
    LimitCategory.API_WRITE: RateLimitConfig(max_requests=20, window_ms=60 * 1000),
    LimitCategory.FINANCIAL: RateLimitConfig(max_requests=5, window_ms=60 * 1000),
    LimitCategory.DEFAULT: RateLimitConfig(max_requests=60, window_ms=60 * 1000),
}


def build_limits(overrides: Optional[Mapping[str, Mapping[str, int]]] = None) -> Dict[LimitCategory, RateLimitConfig]:
    """Default limits with start-up overrides applied ({max_requests, window_seconds})."""
    limits = dict(RATE_LIMITS)
    for name, override in (overrides or {}).items():
        category = LimitCategory.parse(name)
        current = limits[category]
        window_seconds = override.get("window_seconds")
        limits[category] = RateLimitConfig(
            max_requests=int(override.get("max_requests", current.max_requests)),
            window_ms=int(window_seconds) * 1000 if window_seconds else current.window_ms,
        )
    return limits


_AUTH_MARKERS = ("/auth", "/login", "/signin", "/register", "/callback/credentials")
_UPLOAD_MARKERS = ("/upload",)
_FINANCIAL_MARKERS = ("/devis", "/factures", "/invoices", "/quotes", "/payments", "/paiements")


def classify_endpoint(method: str, path: str) -> LimitCategory:
    """Pick the limit category for a route from its method and path."""
    lowered = path.lower()
    if any(marker in lowered for marker in _AUTH_MARKERS):
        return LimitCategory.AUTH
    if any(marker in lowered for marker in _UPLOAD_MARKERS):
        return LimitCategory.UPLOAD
    if method.upper() in ("GET", "HEAD"):
        return LimitCategory.API_READ
    if any(marker in lowered for marker in _FINANCIAL_MARKERS):
        return LimitCategory.FINANCIAL
    return LimitCategory.API_WRITE


@dataclass
class RateLimitResult:
    """Outcome of a rate limit check. reset_time is epoch milliseconds."""

    allowed: bool
    remaining: int
    reset_time: int
    total_requests: int

    def retry_after_seconds(self, now_ms: int) -> int:
        return max(1, math.ceil((self.reset_time - now_ms) / 1000))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class RateLimiter:
    """
    Fixed-window counters keyed by (identity, category).

    The store decides where counters live; the limiter behaves the same
    whether the store is Redis or the in-process fallback.
    """

    def __init__(
        self,
        store: KeyValueStore,
        limits: Optional[Dict[LimitCategory, RateLimitConfig]] = None,
        clock: Callable[[], float] = time.time,
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        self.store = store
        self.limits = dict(limits or RATE_LIMITS)
        self._clock = clock
        self.metrics = metrics

    def now_ms(self) -> int:
        return int(self._clock() * 1000)

    def config_for(self, category: Union[str, LimitCategory]) -> RateLimitConfig:
        return self.limits[LimitCategory.parse(category)]

    @staticmethod
    def make_key(identity: str, category: LimitCategory) -> str:
        return f"{KEY_PREFIX}{identity}:{category.value}"

    @staticmethod
    def split_key(key: str) -> Optional[tuple]:
        """Recover (identity, category name) from a counter key. Identities may contain ':'."""
        if not key.startswith(KEY_PREFIX):
            return None
        identity, sep, category = key[len(KEY_PREFIX):].rpartition(":")
        if not sep:
            return None
        return identity, category

    async def check_limit(
        self,
        identity: str,
        category: Union[str, LimitCategory] = LimitCategory.DEFAULT,
    ) -> RateLimitResult:
        """Count one request against the window and decide allow/deny."""
        category = LimitCategory.parse(category)
        config = self.limits[category]
        key = self.make_key(identity, category)
        now = self.now_ms()

        pipeline = self.store.pipeline()
        pipeline.hgetall(key)
        pipeline.pttl(key)
        results = await pipeline.execute()

        current = results[0][1] if results and results[0][0] is None else None
        ttl = results[1][1] if len(results) > 1 and results[1][0] is None else -1

        if not current or not current.get("count") or ttl is None or ttl <= 0:
            # First request in the window, or the previous window expired
            reset_time = now + config.window_ms
            pipeline = self.store.pipeline()
            pipeline.hset(key, {"count": "1", "resetTime": str(reset_time)})
            pipeline.expire(key, config.window_seconds)
            await pipeline.execute()

            return self._decide(category, RateLimitResult(
                allowed=True,
                remaining=config.max_requests - 1,
                reset_time=reset_time,
                total_requests=config.max_requests,
            ))

        count = int(current.get("count", "0"))
        reset_time = int(current.get("resetTime") or now + ttl)

        if count >= config.max_requests:
            return self._decide(category, RateLimitResult(
                allowed=False,
                remaining=0,
                reset_time=reset_time,
                total_requests=config.max_requests,
            ), identity=identity)

        new_count = await self.store.hincrby(key, "count", 1)

        return self._decide(category, RateLimitResult(
            allowed=True,
            remaining=max(0, config.max_requests - new_count),
            reset_time=reset_time,
            total_requests=config.max_requests,
        ))

    def _decide(
        self,
        category: LimitCategory,
        result: RateLimitResult,
        identity: Optional[str] = None,
    ) -> RateLimitResult:
        if self.metrics:
            self.metrics.record_rate_limit(category.value, result.allowed)
        if not result.allowed:
            logger.warning(
                "Rate limit exceeded",
                identity=(identity or "")[:16] + "...",
                category=category.value,
                reset_time=result.reset_time,
            )
        return result

    async def reset_limit(self, identity: str, category: Union[str, LimitCategory] = LimitCategory.DEFAULT) -> None:
        """Administrative override: drop the counter for identity+category."""
        category = LimitCategory.parse(category)
        await self.store.delete(self.make_key(identity, category))
        logger.info("Rate limit reset", identity=identity[:16] + "...", category=category.value)

    async def get_usage(
        self,
        identity: str,
        category: Union[str, LimitCategory] = LimitCategory.DEFAULT,
    ) -> Dict[str, int]:
        """Current usage of one counter, without counting a request."""
        category = LimitCategory.parse(category)
        config = self.limits[category]
        key = self.make_key(identity, category)

        data = await self.store.hgetall(key)
        ttl = await self.store.pttl(key)
        count = int(data.get("count", "0")) if data else 0
        now = self.now_ms()
        reset_time = int(data["resetTime"]) if data.get("resetTime") else now + max(ttl, 0)

        return {
            "current": count,
            "limit": config.max_requests,
            "remaining": max(0, config.max_requests - count),
            "reset_time": reset_time,
        }

    async def get_stats(self, top_n: int = 10) -> Dict[str, Any]:
        """Active counters per category and the most active identities."""
        stats: Dict[str, Any] = {
            "total_keys": 0,
            "type_breakdown": {},
            "top_identifiers": [],
        }

        keys = await self.store.keys(f"{KEY_PREFIX}*")
        identifier_counts: Dict[str, int] = {}

        for key in keys:
            parts = self.split_key(key)
            if parts is None:
                continue
            identity, category = parts
            stats["total_keys"] += 1
            stats["type_breakdown"][category] = stats["type_breakdown"].get(category, 0) + 1

            count = await self.store.hget(key, "count")
            try:
                requests = int(count or "0")
            except ValueError:
                requests = 0
            identifier_counts[identity] = identifier_counts.get(identity, 0) + requests

        top: List[Dict[str, Any]] = [
            {"identifier": identity, "requests": requests}
            for identity, requests in identifier_counts.items()
        ]
        top.sort(key=lambda item: item["requests"], reverse=True)
        stats["top_identifiers"] = top[:top_n]
        return stats
