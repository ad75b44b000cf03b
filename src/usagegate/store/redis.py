"""Redis key/value store implementation."""

import asyncio
import logging
import re
import time
from collections.abc import Awaitable, Callable
from typing import Any

import redis.asyncio as redis
from redis.exceptions import RedisError

from usagegate.errors import StoreUnavailable
from usagegate.store.base import KeyValueStore

logger = logging.getLogger(__name__)

# Replace the value only if it still matches; KEEPTTL preserves the
# counter's period expiry.
_COMPARE_AND_SET = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  redis.call('SET', KEYS[1], ARGV[2], 'KEEPTTL')
  return 1
end
return 0
"""

_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")


class RedisStore(KeyValueStore):
    """
    Redis store client for the shared counters and cache entries.

    Features:
    - Automatic connection pooling
    - Socket, connect and per-operation timeouts
    - Native atomic INCR and a Lua compare-and-set
    - Key namespacing via prefix

    Every Redis or timeout fault surfaces as ``StoreUnavailable``. After a
    failed connect, operations fail fast for ``reconnect_interval``
    seconds instead of dialing Redis on every call.
    """

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        prefix: str = "usagegate:",
        max_connections: int = 20,
        socket_timeout: float = 0.5,
        socket_connect_timeout: float = 2.0,
        operation_timeout: float = 0.75,
        reconnect_interval: float = 1.0,
    ) -> None:
        """
        Initialize Redis store.

        Args:
            url: Redis connection URL
            prefix: Key prefix for namespacing
            max_connections: Maximum connections in pool
            socket_timeout: Socket timeout in seconds
            socket_connect_timeout: Connection timeout in seconds
            operation_timeout: Upper bound on a single round trip (and on a
                whole SCAN)
            reconnect_interval: Seconds to wait after a failed connect
                before operations try again
        """
        self._url = url
        self._prefix = prefix
        self._max_connections = max_connections
        self._socket_timeout = socket_timeout
        self._socket_connect_timeout = socket_connect_timeout
        self._operation_timeout = operation_timeout
        self._reconnect_interval = reconnect_interval
        self._client: Any = None
        self._connected = False
        self._retry_at = 0.0

    @property
    def name(self) -> str:
        return "redis"

    @property
    def is_connected(self) -> bool:
        return self._connected

    def _get_key(self, key: str) -> str:
        """Get prefixed key."""
        return f"{self._prefix}{key}"

    def _strip_key(self, key: str) -> str:
        return key[len(self._prefix):] if key.startswith(self._prefix) else key

    async def connect(self) -> bool:
        """
        Connect to Redis.

        Any client left over from an earlier attempt is closed first, so
        repeated reconnects never leak connection pools.

        Returns:
            True if connected successfully
        """
        if self._connected and self._client:
            return True

        await self._discard_client()
        try:
            self._client = redis.from_url(
                self._url,
                max_connections=self._max_connections,
                socket_timeout=self._socket_timeout,
                socket_connect_timeout=self._socket_connect_timeout,
                decode_responses=True,
            )

            # Test connection
            await asyncio.wait_for(self._client.ping(), timeout=self._operation_timeout)
            self._connected = True
            self._retry_at = 0.0
            logger.info(f"Connected to Redis at {self._url}")
            return True

        except Exception as e:
            logger.error(f"Failed to connect to Redis: {e}")
            await self._discard_client()
            self._retry_at = time.monotonic() + self._reconnect_interval
            return False

    async def _discard_client(self) -> None:
        self._connected = False
        if self._client is None:
            return
        client, self._client = self._client, None
        try:
            await client.aclose()
        except Exception as e:
            logger.warning(f"Error closing Redis connection: {e}")

    async def _ensure_connected(self, operation: str) -> None:
        """Ensure we're connected to Redis, without redialing during backoff."""
        if self._connected:
            return
        if time.monotonic() < self._retry_at:
            raise StoreUnavailable(operation, "Redis unreachable, waiting to reconnect")
        if not await self.connect():
            raise StoreUnavailable(operation, "not connected to Redis")

    async def _call(self, operation: str, factory: Callable[[], Awaitable[Any]]) -> Any:
        """Run one round trip with the operation timeout and error mapping."""
        await self._ensure_connected(operation)
        try:
            return await asyncio.wait_for(factory(), timeout=self._operation_timeout)
        except asyncio.TimeoutError:
            raise StoreUnavailable(
                operation, f"timed out after {self._operation_timeout}s"
            ) from None
        except (RedisError, OSError) as e:
            raise StoreUnavailable(operation, str(e)) from e

    async def get(self, key: str) -> str | None:
        return await self._call("GET", lambda: self._client.get(self._get_key(key)))

    async def get_many(self, keys: list[str]) -> list[str | None]:
        if not keys:
            return []
        prefixed_keys = [self._get_key(k) for k in keys]
        return await self._call("MGET", lambda: self._client.mget(prefixed_keys))

    async def set(
        self,
        key: str,
        value: str,
        ttl_seconds: int | None = None,
    ) -> None:
        if ttl_seconds is not None and ttl_seconds > 0:
            await self._call(
                "SET",
                lambda: self._client.set(self._get_key(key), value, ex=ttl_seconds),
            )
        else:
            await self._call("SET", lambda: self._client.set(self._get_key(key), value))

    async def incr(self, key: str, amount: int = 1) -> int:
        result = await self._call(
            "INCR", lambda: self._client.incrby(self._get_key(key), amount)
        )
        return int(result)

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        result = await self._call(
            "EXPIRE", lambda: self._client.expire(self._get_key(key), ttl_seconds)
        )
        return bool(result)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        prefixed_keys = [self._get_key(k) for k in keys]
        result = await self._call("DEL", lambda: self._client.delete(*prefixed_keys))
        return int(result)

    async def scan(self, prefix: str) -> list[str]:
        # Use SCAN to find keys (safe for large datasets)
        pattern = _GLOB_SPECIAL.sub(r"\\\1", self._get_key(prefix)) + "*"
        await self._ensure_connected("SCAN")

        async def collect() -> list[str]:
            keys = []
            async for key in self._client.scan_iter(match=pattern, count=500):
                keys.append(self._strip_key(key))
            return keys

        try:
            return await asyncio.wait_for(collect(), timeout=self._operation_timeout)
        except asyncio.TimeoutError:
            raise StoreUnavailable(
                "SCAN", f"timed out after {self._operation_timeout}s"
            ) from None
        except (RedisError, OSError) as e:
            raise StoreUnavailable("SCAN", str(e)) from e

    async def ttl(self, key: str) -> int | None:
        result = int(await self._call("TTL", lambda: self._client.ttl(self._get_key(key))))
        if result == -2:
            return None
        return result

    async def compare_and_set(self, key: str, expected: str, new: str) -> bool:
        result = await self._call(
            "CAS",
            lambda: self._client.eval(_COMPARE_AND_SET, 1, self._get_key(key), expected, new),
        )
        return int(result) == 1

    async def close(self) -> None:
        """Close the Redis connection."""
        await self._discard_client()
        self._retry_at = 0.0

    async def health_check(self) -> dict[str, Any]:
        """Return health status with Redis info."""
        try:
            await self._ensure_connected("INFO")
            info = await self._call("INFO", lambda: self._client.info("server"))
            keys_count = await self._call("DBSIZE", lambda: self._client.dbsize())
        except StoreUnavailable as e:
            return {
                "backend": self.name,
                "connected": False,
                "error": str(e),
            }

        return {
            "backend": self.name,
            "connected": True,
            "redis_version": info.get("redis_version"),
            "total_keys": keys_count,
            "uptime_seconds": info.get("uptime_in_seconds"),
        }
