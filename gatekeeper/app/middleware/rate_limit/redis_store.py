"""Redis-backed sliding window store shared by every process.

Uses one sorted set per rate limit key (member = request id, score =
admission time in ms) driven by an atomic Lua script. Every command is
bounded by a timeout; any failure surfaces as a StoreError and never as a
decision.
"""

import asyncio
import uuid
from typing import Any, Awaitable, Optional, TypeVar

from redis import exceptions as redis_exceptions

from gatekeeper.app.exceptions import StoreConnectionError, StoreError, StoreTimeoutError
from gatekeeper.app.middleware.rate_limit import sliding_window
from gatekeeper.app.middleware.rate_limit.models import RateLimitDecision
from gatekeeper.app.middleware.rate_limit.redis_lua import PEEK_SCRIPT, SLIDING_WINDOW_SCRIPT

T = TypeVar("T")

_SERVER_CLOCK = -1


class RedisSlidingWindowStore:
    """Distributed sliding window store.

    The Redis client is owned by the caller (usually the application
    lifespan) and shared by all requests; this class never creates or closes
    connections.

    Usage:
        client = redis.asyncio.from_url(settings.redis_url)
        store = RedisSlidingWindowStore(client, timeout=0.1)
        decision = await store.increment("api:ip:ab12", 60000, 100)
    """

    SOURCE = "redis"

    def __init__(
        self,
        redis_client: Any,
        timeout: float = 0.1,
        key_prefix: str = "ratelimit:",
    ):
        """Initialize the Redis store.

        Args:
            redis_client: A ``redis.asyncio`` client (or compatible)
            timeout: Per-command timeout in seconds
            key_prefix: Namespace prepended to every key
        """
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self._redis = redis_client
        self._timeout = timeout
        self._key_prefix = key_prefix

    def _full_key(self, key: str) -> str:
        return f"{self._key_prefix}{key}"

    async def _call(self, operation: str, awaitable: Awaitable[T]) -> T:
        """Await a Redis command under the store timeout, mapping failures."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        except (asyncio.TimeoutError, redis_exceptions.TimeoutError) as e:
            raise StoreTimeoutError(
                f"Redis {operation} timed out after {self._timeout * 1000:.0f}ms",
                operation=operation,
            ) from e
        except (redis_exceptions.ConnectionError, OSError) as e:
            raise StoreConnectionError(
                f"Redis {operation} connection failed: {e}", operation=operation
            ) from e
        except redis_exceptions.RedisError as e:
            raise StoreError(f"Redis {operation} failed: {e}", operation=operation) from e

    async def increment(
        self,
        key: str,
        window_ms: int,
        max_requests: int,
        now_ms: Optional[int] = None,
    ) -> RateLimitDecision:
        """Atomically check and consume one slot for ``key``.

        Args:
            key: Rate limit key (without prefix)
            window_ms: Window length in milliseconds
            max_requests: Admissions allowed per window
            now_ms: Explicit timestamp; defaults to the Redis server clock

        Raises:
            StoreTimeoutError: Command exceeded the timeout
            StoreConnectionError: Redis unreachable
            StoreError: Any other Redis failure or malformed reply
        """
        if max_requests < 1:
            raise ValueError("max_requests must be >= 1")

        member = uuid.uuid4().hex
        result = await self._call(
            "increment",
            self._redis.eval(
                SLIDING_WINDOW_SCRIPT,
                1,  # Number of keys
                self._full_key(key),  # KEYS[1]
                window_ms,  # ARGV[1]
                max_requests,  # ARGV[2]
                member,  # ARGV[3]
                _SERVER_CLOCK if now_ms is None else now_ms,  # ARGV[4]
            ),
        )

        try:
            allowed, count, now, oldest, newest = (int(v) for v in result)
        except (TypeError, ValueError) as e:
            raise StoreError(f"Unexpected sliding window reply: {result!r}", operation="increment") from e

        if allowed:
            return sliding_window.allowed_decision(
                max_requests, count, now, window_ms, source=self.SOURCE, entry_id=member
            )
        return sliding_window.denied_decision(
            max_requests, oldest, newest, now, window_ms, source=self.SOURCE
        )

    async def peek(self, key: str, window_ms: int, now_ms: Optional[int] = None) -> int:
        """Count requests in the window without consuming a slot."""
        result = await self._call(
            "peek",
            self._redis.eval(
                PEEK_SCRIPT,
                1,
                self._full_key(key),
                window_ms,
                _SERVER_CLOCK if now_ms is None else now_ms,
            ),
        )
        return int(result)

    async def release(self, key: str, entry_id: str) -> bool:
        """Remove the admission ``entry_id`` from the window for ``key``."""
        removed = await self._call("release", self._redis.zrem(self._full_key(key), entry_id))
        return bool(removed)

    async def reset(self, key: str) -> None:
        """Drop the window for ``key``."""
        await self._call("reset", self._redis.delete(self._full_key(key)))

    async def health_check(self) -> bool:
        """Cheap liveness check used by the circuit breaker.

        Raises:
            StoreError: Redis did not answer PING in time
        """
        return bool(await self._call("health_check", self._redis.ping()))
