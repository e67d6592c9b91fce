"""
Pytest configuration and shared fixtures.

Contains the fake clock, an in-memory stand-in for the async Redis
client, and fresh service instances for every test.
"""

from typing import Any, Dict, Generator, List, Optional, Tuple

import pytest
from fastapi.testclient import TestClient
from prometheus_client import CollectorRegistry
from redis.exceptions import ConnectionError as RedisConnectionError

from src.siteguard.config import LoggerSettings, SecuritySettings, Settings, StoreSettings
from src.siteguard.core.masking import Sanitizer
from src.siteguard.core.metrics import MetricsCollector
from src.siteguard.core.secure_logger import SecureLogger
from src.siteguard.core.security_monitor import SecurityMonitor
from src.siteguard.core.services import SecurityServices, build_services
from src.siteguard.core.sink import NullSink
from src.siteguard.core.store import MemoryStore
from src.siteguard.main import create_app

ADMIN_TOKEN = "test_admin_token_123456789abc"
START_TIME = 1_750_000_000.0


class FakeClock:
    """Manually advanced epoch-seconds clock."""

    def __init__(self, start: float = START_TIME) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class FakeRedisPipeline:
    """Records commands like redis.asyncio's pipeline and replays them on execute()."""

    def __init__(self, client: "FakeRedis") -> None:
        self._client = client
        self._commands: List[Tuple[str, Tuple[Any, ...], Dict[str, Any]]] = []

    def __getattr__(self, name: str) -> Any:
        def record(*args: Any, **kwargs: Any) -> "FakeRedisPipeline":
            self._commands.append((name, args, kwargs))
            return self
        return record

    async def execute(self, raise_on_error: bool = True) -> List[Any]:
        self._client.check_available("pipeline")
        results: List[Any] = []
        for name, args, kwargs in self._commands:
            try:
                results.append(await getattr(self._client, name)(*args, **kwargs))
            except Exception as e:
                if raise_on_error:
                    raise
                results.append(e)
        self._commands = []
        return results


class FakeRedis:
    """
    Subset of redis.asyncio.Redis backed by a MemoryStore.

    Set `available = False` to make every call raise a connection error.
    TTL queries follow Redis: -2 for a missing key, -1 for no expiry.
    """

    def __init__(self, clock: FakeClock) -> None:
        self._data = MemoryStore(clock)
        self.available = True
        self.calls: List[str] = []
        self.closed = False

    def check_available(self, name: str) -> None:
        self.calls.append(name)
        if not self.available:
            raise RedisConnectionError("Connection refused")

    async def ping(self) -> bool:
        self.check_available("ping")
        return True

    async def get(self, key: str) -> Optional[str]:
        self.check_available("get")
        return await self._data.get(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        self.check_available("set")
        await self._data.set(key, value, ex)
        return True

    async def incr(self, key: str) -> int:
        self.check_available("incr")
        return await self._data.incr(key)

    async def _missing(self, key: str) -> bool:
        return await self._data.get(key) is None

    async def ttl(self, key: str) -> int:
        self.check_available("ttl")
        if await self._missing(key):
            return -2
        return await self._data.ttl(key)

    async def pttl(self, key: str) -> int:
        self.check_available("pttl")
        if await self._missing(key):
            return -2
        return await self._data.pttl(key)

    async def expire(self, key: str, seconds: int) -> bool:
        self.check_available("expire")
        await self._data.expire(key, seconds)
        return True

    async def delete(self, key: str) -> int:
        self.check_available("delete")
        existed = not await self._missing(key)
        await self._data.delete(key)
        return int(existed)

    async def keys(self, pattern: str) -> List[str]:
        self.check_available("keys")
        return await self._data.keys(pattern)

    async def hget(self, key: str, field: str) -> Optional[str]:
        self.check_available("hget")
        return await self._data.hget(key, field)

    async def hset(self, key: str, mapping: Dict[str, str]) -> int:
        self.check_available("hset")
        await self._data.hset(key, mapping)
        return len(mapping)

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        self.check_available("hincrby")
        return await self._data.hincrby(key, field, amount)

    async def hgetall(self, key: str) -> Dict[str, str]:
        self.check_available("hgetall")
        return await self._data.hgetall(key)

    def pipeline(self, transaction: bool = True) -> FakeRedisPipeline:
        return FakeRedisPipeline(self)

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry() -> CollectorRegistry:
    """Isolated Prometheus registry per test."""
    return CollectorRegistry()


@pytest.fixture
def metrics(registry: CollectorRegistry) -> MetricsCollector:
    return MetricsCollector(registry)


@pytest.fixture
def memory_store(clock: FakeClock) -> MemoryStore:
    return MemoryStore(clock)


@pytest.fixture
def fake_redis(clock: FakeClock) -> FakeRedis:
    return FakeRedis(clock)


@pytest.fixture
def null_sink() -> NullSink:
    return NullSink()


@pytest.fixture
def secure_logger(clock: FakeClock, null_sink: NullSink, metrics: MetricsCollector) -> SecureLogger:
    """Development logger: events are emitted immediately."""
    return SecureLogger(Sanitizer(), environment="development", sink=null_sink, clock=clock, metrics=metrics)


@pytest.fixture
def production_logger(clock: FakeClock, null_sink: NullSink, metrics: MetricsCollector) -> SecureLogger:
    """Production logger with a small buffer."""
    return SecureLogger(
        Sanitizer(),
        environment="production",
        buffer_size=5,
        flush_interval_seconds=60,
        sink=null_sink,
        clock=clock,
        metrics=metrics,
    )


@pytest.fixture
def monitor(secure_logger: SecureLogger, clock: FakeClock, metrics: MetricsCollector) -> SecurityMonitor:
    return SecurityMonitor(secure_logger, clock=clock, metrics=metrics)


@pytest.fixture
def test_settings() -> Settings:
    """Settings with an admin token, no Redis and development logging."""
    return Settings(
        log_level="DEBUG",
        store=StoreSettings(redis_url=""),
        logger=LoggerSettings(environment="development"),
        security=SecuritySettings(admin_token=ADMIN_TOKEN),
    )


@pytest.fixture
def services(test_settings: Settings, clock: FakeClock, registry: CollectorRegistry) -> SecurityServices:
    return build_services(test_settings, clock=clock, registry=registry)


@pytest.fixture
def test_client(services: SecurityServices) -> Generator[TestClient, None, None]:
    """FastAPI test client over a fresh services container."""
    app = create_app(services=services)
    with TestClient(app) as client:
        yield client


@pytest.fixture
def admin_headers() -> Dict[str, str]:
    return {"Authorization": f"Bearer {ADMIN_TOKEN}"}
