"""
Key-value store abstraction.

A uniform async get/set/incr/ttl/hash/pipeline interface with two
implementations:
- RedisStore: Redis backend that degrades to an in-process map on any error
- MemoryStore: in-process map that mirrors the Redis contract (expiry,
  INCR on missing keys, hashes stored as JSON blobs)

No operation raises past this module. A backend error is logged once,
the store switches to the in-process map for the rest of the process
lifetime (or until connect() succeeds again), and the failing call is
served from that map.
"""

import asyncio
import json
import math
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import structlog
from redis.asyncio import Redis

from ..config import StoreSettings
from .metrics import MetricsCollector

logger = structlog.get_logger(__name__)

Clock = Callable[[], float]
Command = Tuple[str, Tuple[Any, ...]]
PipelineResult = List[Tuple[Optional[Exception], Any]]


def match_pattern(key: str, pattern: str) -> bool:
    """Exact match, '*' or trailing-wildcard prefix match. Not a full glob."""
    if pattern == "*":
        return True
    if pattern.endswith("*"):
        return key.startswith(pattern[:-1])
    return key == pattern


class StorePipeline:
    """
    Batched command builder.

    Commands are recorded and sent on execute(). The result is a list of
    (error, value) tuples in command order, whatever the backend.
    """

    def __init__(self, store: "KeyValueStore") -> None:
        self._store = store
        self._commands: List[Command] = []

    def hgetall(self, key: str) -> "StorePipeline":
        self._commands.append(("hgetall", (key,)))
        return self

    def pttl(self, key: str) -> "StorePipeline":
        self._commands.append(("pttl", (key,)))
        return self

    def hset(self, key: str, mapping: Dict[str, str]) -> "StorePipeline":
        self._commands.append(("hset", (key, dict(mapping))))
        return self

    def hincrby(self, key: str, field: str, amount: int = 1) -> "StorePipeline":
        self._commands.append(("hincrby", (key, field, amount)))
        return self

    def expire(self, key: str, seconds: int) -> "StorePipeline":
        self._commands.append(("expire", (key, seconds)))
        return self

    def delete(self, key: str) -> "StorePipeline":
        self._commands.append(("delete", (key,)))
        return self

    def __len__(self) -> int:
        return len(self._commands)

    async def execute(self) -> PipelineResult:
        commands, self._commands = self._commands, []
        if not commands:
            return []
        return await self._store._execute_pipeline(commands)


class KeyValueStore(ABC):
    """Async key-value store contract shared by every backend."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]: ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None: ...

    @abstractmethod
    async def incr(self, key: str) -> int: ...

    @abstractmethod
    async def ttl(self, key: str) -> int: ...

    @abstractmethod
    async def pttl(self, key: str) -> int: ...

    @abstractmethod
    async def expire(self, key: str, seconds: int) -> None: ...

    @abstractmethod
    async def delete(self, key: str) -> None: ...

    @abstractmethod
    async def keys(self, pattern: str) -> List[str]: ...

    @abstractmethod
    async def hget(self, key: str, field: str) -> Optional[str]: ...

    @abstractmethod
    async def hset(self, key: str, mapping: Dict[str, str]) -> None: ...

    @abstractmethod
    async def hincrby(self, key: str, field: str, amount: int = 1) -> int: ...

    @abstractmethod
    async def hgetall(self, key: str) -> Dict[str, str]: ...

    @property
    @abstractmethod
    def using_fallback(self) -> bool: ...

    @abstractmethod
    def get_connection_status(self) -> Dict[str, Any]: ...

    def pipeline(self) -> StorePipeline:
        return StorePipeline(self)

    async def connect(self) -> bool:
        """Attempt to (re)connect the distributed backend. Returns connected state."""
        return False

    async def close(self) -> None:
        return None

    async def _execute_pipeline(self, commands: List[Command]) -> PipelineResult:
        """Run recorded commands one by one, capturing per-command errors."""
        results: PipelineResult = []
        for name, args in commands:
            try:
                value = await getattr(self, name)(*args)
                results.append((None, value))
            except Exception as e:
                results.append((e, None))
        return results


@dataclass
class _Entry:
    value: str
    expires_at: Optional[float] = None  # absolute epoch seconds


class MemoryStore(KeyValueStore):
    """
    In-process store replicating the Redis contract.

    Expired entries are evicted lazily on access. The map is guarded by a
    lock so the store stays consistent under OS threads as well as the
    event loop.
    """

    def __init__(self, clock: Clock = time.time) -> None:
        self._clock = clock
        self._data: Dict[str, _Entry] = {}
        self._lock = threading.RLock()

    def _live_entry(self, key: str) -> Optional[_Entry]:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            if entry.expires_at is not None and entry.expires_at <= self._clock():
                del self._data[key]
                return None
            return entry

    def _purge_expired(self) -> None:
        now = self._clock()
        with self._lock:
            expired = [
                key for key, entry in self._data.items()
                if entry.expires_at is not None and entry.expires_at <= now
            ]
            for key in expired:
                del self._data[key]

    def _remaining_seconds(self, key: str) -> Optional[float]:
        entry = self._live_entry(key)
        if entry is None or entry.expires_at is None:
            return None
        return entry.expires_at - self._clock()

    async def get(self, key: str) -> Optional[str]:
        entry = self._live_entry(key)
        return entry.value if entry else None

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        with self._lock:
            self._data[key] = _Entry(value=str(value), expires_at=expires_at)

    async def incr(self, key: str) -> int:
        with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                self._data[key] = _Entry(value="1")
                return 1
            try:
                new_value = int(entry.value) + 1
            except ValueError:
                logger.warning("Non-integer value on incr, restarting at 1", key=key)
                new_value = 1
            entry.value = str(new_value)
            return new_value

    async def ttl(self, key: str) -> int:
        remaining = self._remaining_seconds(key)
        if remaining is None:
            return -1
        return max(0, math.ceil(remaining))

    async def pttl(self, key: str) -> int:
        remaining = self._remaining_seconds(key)
        if remaining is None:
            return -1
        return max(0, math.ceil(remaining * 1000))

    async def expire(self, key: str, seconds: int) -> None:
        with self._lock:
            entry = self._live_entry(key)
            if entry is not None:
                entry.expires_at = self._clock() + seconds

    async def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    async def keys(self, pattern: str) -> List[str]:
        self._purge_expired()
        with self._lock:
            return [key for key in self._data if match_pattern(key, pattern)]

    def _read_hash(self, key: str) -> Dict[str, str]:
        entry = self._live_entry(key)
        if entry is None:
            return {}
        try:
            data = json.loads(entry.value)
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    def _write_hash(self, key: str, data: Dict[str, str]) -> None:
        # Hash writes keep the key's expiry, as Redis does
        entry = self._live_entry(key)
        expires_at = entry.expires_at if entry else None
        self._data[key] = _Entry(value=json.dumps(data), expires_at=expires_at)

    async def hget(self, key: str, field: str) -> Optional[str]:
        return self._read_hash(key).get(field)

    async def hset(self, key: str, mapping: Dict[str, str]) -> None:
        with self._lock:
            data = self._read_hash(key)
            data.update({k: str(v) for k, v in mapping.items()})
            self._write_hash(key, data)

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        with self._lock:
            data = self._read_hash(key)
            try:
                current = int(data.get(field, "0"))
            except ValueError:
                current = 0
            new_value = current + amount
            data[field] = str(new_value)
            self._write_hash(key, data)
            return new_value

    async def hgetall(self, key: str) -> Dict[str, str]:
        return self._read_hash(key)

    @property
    def using_fallback(self) -> bool:
        return True

    def size(self) -> int:
        self._purge_expired()
        with self._lock:
            return len(self._data)

    def get_connection_status(self) -> Dict[str, Any]:
        return {
            "is_connected": False,
            "using_fallback": True,
            "fallback_keys": self.size(),
        }


class RedisStore(KeyValueStore):
    """
    Redis-backed store with an in-process fallback.

    The connected flag only goes back to True through a successful
    connect() call; a failed command never triggers a reconnect by itself.
    """

    def __init__(
        self,
        url: str = "",
        clock: Clock = time.time,
        connect_timeout: float = 5.0,
        command_timeout: float = 5.0,
        client: Optional[Redis] = None,
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        self.url = url
        self.connect_timeout = connect_timeout
        self.metrics = metrics
        self._fallback = MemoryStore(clock)
        self._connected = False
        self._client = client

        if self._client is None and url:
            self._client = Redis.from_url(
                url,
                socket_connect_timeout=connect_timeout,
                socket_timeout=command_timeout,
                decode_responses=True,
            )

        if self._client is None:
            logger.warning("Redis disabled, using in-memory fallback")

        self._report_fallback()

    @property
    def using_fallback(self) -> bool:
        return not self._connected

    @property
    def fallback(self) -> MemoryStore:
        return self._fallback

    async def connect(self) -> bool:
        if self._client is None:
            return False

        try:
            await asyncio.wait_for(self._client.ping(), timeout=self.connect_timeout)
        except Exception as e:
            self._connected = False
            logger.warning(
                "Redis not available, using in-memory fallback",
                error=str(e),
                error_type=type(e).__name__,
            )
        else:
            self._connected = True
            logger.info("Redis connected successfully")

        self._report_fallback()
        return self._connected

    async def close(self) -> None:
        if self._client is None:
            return
        try:
            await self._client.aclose()
        except Exception as e:
            logger.warning("Error closing Redis client", error=str(e))
        self._connected = False

    def _report_fallback(self) -> None:
        if self.metrics:
            self.metrics.set_store_fallback(self.using_fallback)

    def _mark_disconnected(self, operation: str, error: Exception) -> None:
        if self._connected:
            logger.warning(
                "Redis error, falling back to memory",
                operation=operation,
                error=str(error),
                error_type=type(error).__name__,
            )
        self._connected = False
        self._report_fallback()

    @staticmethod
    def _dispatch(target: Any, name: str, args: Tuple[Any, ...]) -> Any:
        """Translate a store command into the redis-py call on a client or pipeline."""
        if name == "set":
            key, value, ttl_seconds = (args + (None,))[:3]
            if ttl_seconds:
                return target.set(key, value, ex=ttl_seconds)
            return target.set(key, value)
        if name == "hset":
            key, mapping = args
            return target.hset(key, mapping=mapping)
        return getattr(target, name)(*args)

    @staticmethod
    def _normalize(name: str, value: Any) -> Any:
        if name in ("ttl", "pttl") and isinstance(value, int) and value < 0:
            return -1
        if name == "hgetall" and value is None:
            return {}
        return value

    async def _try_backend(self, name: str, *args: Any) -> Tuple[bool, Any]:
        if not self._connected or self._client is None:
            return False, None
        try:
            value = await self._dispatch(self._client, name, args)
        except Exception as e:
            self._mark_disconnected(name, e)
            return False, None
        return True, self._normalize(name, value)

    async def _run(self, name: str, fallback: Callable[[], Awaitable[Any]], *args: Any) -> Any:
        ok, value = await self._try_backend(name, *args)
        if ok:
            return value
        return await fallback()

    async def get(self, key: str) -> Optional[str]:
        return await self._run("get", lambda: self._fallback.get(key), key)

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        await self._run("set", lambda: self._fallback.set(key, value, ttl_seconds), key, value, ttl_seconds)

    async def incr(self, key: str) -> int:
        return int(await self._run("incr", lambda: self._fallback.incr(key), key))

    async def ttl(self, key: str) -> int:
        return int(await self._run("ttl", lambda: self._fallback.ttl(key), key))

    async def pttl(self, key: str) -> int:
        return int(await self._run("pttl", lambda: self._fallback.pttl(key), key))

    async def expire(self, key: str, seconds: int) -> None:
        await self._run("expire", lambda: self._fallback.expire(key, seconds), key, seconds)

    async def delete(self, key: str) -> None:
        await self._run("delete", lambda: self._fallback.delete(key), key)

    async def keys(self, pattern: str) -> List[str]:
        return list(await self._run("keys", lambda: self._fallback.keys(pattern), pattern))

    async def hget(self, key: str, field: str) -> Optional[str]:
        return await self._run("hget", lambda: self._fallback.hget(key, field), key, field)

    async def hset(self, key: str, mapping: Dict[str, str]) -> None:
        await self._run("hset", lambda: self._fallback.hset(key, mapping), key, mapping)

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        return int(await self._run(
            "hincrby", lambda: self._fallback.hincrby(key, field, amount), key, field, amount
        ))

    async def hgetall(self, key: str) -> Dict[str, str]:
        return dict(await self._run("hgetall", lambda: self._fallback.hgetall(key), key))

    async def _execute_pipeline(self, commands: List[Command]) -> PipelineResult:
        if self._connected and self._client is not None:
            try:
                pipe = self._client.pipeline(transaction=True)
                for name, args in commands:
                    self._dispatch(pipe, name, args)
                values = await pipe.execute(raise_on_error=False)
            except Exception as e:
                self._mark_disconnected("pipeline", e)
            else:
                return [
                    (value, None) if isinstance(value, Exception)
                    else (None, self._normalize(name, value))
                    for (name, _), value in zip(commands, values)
                ]

        return await self._fallback._execute_pipeline(commands)

    def get_connection_status(self) -> Dict[str, Any]:
        return {
            "is_connected": self._connected,
            "using_fallback": not self._connected,
            "fallback_keys": self._fallback.size(),
        }


def create_store(
    settings: StoreSettings,
    clock: Clock = time.time,
    client: Optional[Redis] = None,
    metrics: Optional[MetricsCollector] = None,
) -> KeyValueStore:
    """
    Build the store for this process.

    Without a connection string (and no injected client) the in-process
    store is used for the whole process lifetime.
    """
    if client is None and not settings.redis_url:
        logger.info("Redis disabled - using memory fallback")
        if metrics:
            metrics.set_store_fallback(True)
        return MemoryStore(clock)

    return RedisStore(
        url=settings.redis_url,
        clock=clock,
        connect_timeout=settings.connect_timeout_seconds,
        command_timeout=settings.command_timeout_seconds,
        client=client,
        metrics=metrics,
    )
