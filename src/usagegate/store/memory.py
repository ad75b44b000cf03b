"""In-memory key/value store implementation."""

import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from usagegate.errors import StoreUnavailable
from usagegate.store.base import KeyValueStore

logger = logging.getLogger(__name__)


@dataclass
class _Item:
    value: str
    expires_at: float | None = None

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class InMemoryStore(KeyValueStore):
    """
    In-memory store using a simple dictionary.

    Best for:
    - Development and testing
    - Single-process deployments

    Limitations:
    - Not shared across processes
    - Lost on restart

    No method awaits while it touches the dictionary, so every operation
    runs to completion on the event loop without interleaving. Expiry is
    evaluated lazily against ``clock``, which tests replace to move time
    forward. Setting ``offline`` makes every call raise
    ``StoreUnavailable``, mimicking an unreachable server.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        """
        Initialize in-memory store.

        Args:
            clock: Source of the current time in epoch seconds
        """
        self._data: dict[str, _Item] = {}
        self._clock = clock
        self._connected = True
        self.offline = False

    @property
    def name(self) -> str:
        return "memory"

    @property
    def is_connected(self) -> bool:
        return self._connected and not self.offline

    async def connect(self) -> bool:
        self._connected = True
        return not self.offline

    async def close(self) -> None:
        self._connected = False
        self._data.clear()

    def _check(self, operation: str) -> None:
        if self.offline:
            raise StoreUnavailable(operation, "in-memory store is offline")

    def _live(self, key: str) -> _Item | None:
        item = self._data.get(key)
        if item is None:
            return None
        if item.is_expired(self._clock()):
            del self._data[key]
            return None
        return item

    async def get(self, key: str) -> str | None:
        self._check("GET")
        item = self._live(key)
        return item.value if item else None

    async def get_many(self, keys: list[str]) -> list[str | None]:
        self._check("MGET")
        result = []
        for key in keys:
            item = self._live(key)
            result.append(item.value if item else None)
        return result

    async def set(
        self,
        key: str,
        value: str,
        ttl_seconds: int | None = None,
    ) -> None:
        self._check("SET")
        expires_at = None
        if ttl_seconds is not None and ttl_seconds > 0:
            expires_at = self._clock() + ttl_seconds
        self._data[key] = _Item(value=str(value), expires_at=expires_at)

    async def incr(self, key: str, amount: int = 1) -> int:
        self._check("INCR")
        item = self._live(key)
        if item is None:
            item = _Item(value="0")
            self._data[key] = item
        try:
            new_value = int(item.value) + amount
        except ValueError:
            raise ValueError(f"value at {key} is not an integer") from None
        item.value = str(new_value)
        return new_value

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        self._check("EXPIRE")
        item = self._live(key)
        if item is None:
            return False
        if ttl_seconds <= 0:
            del self._data[key]
            return True
        item.expires_at = self._clock() + ttl_seconds
        return True

    async def delete(self, *keys: str) -> int:
        self._check("DEL")
        count = 0
        for key in keys:
            if self._live(key) is not None:
                del self._data[key]
                count += 1
        return count

    async def scan(self, prefix: str) -> list[str]:
        self._check("SCAN")
        return [k for k in list(self._data) if k.startswith(prefix) and self._live(k)]

    async def ttl(self, key: str) -> int | None:
        self._check("TTL")
        item = self._live(key)
        if item is None:
            return None
        if item.expires_at is None:
            return -1
        return max(0, math.ceil(item.expires_at - self._clock()))

    async def compare_and_set(self, key: str, expected: str, new: str) -> bool:
        self._check("CAS")
        item = self._live(key)
        if item is None or item.value != expected:
            return False
        item.value = str(new)
        return True

    async def health_check(self) -> dict[str, Any]:
        """Return health status with store statistics."""
        now = self._clock()
        return {
            "backend": self.name,
            "connected": self.is_connected,
            "total_keys": sum(1 for v in self._data.values() if not v.is_expired(now)),
        }

    def size(self) -> int:
        """Get current number of keys, expired ones included (sync, for tests)."""
        return len(self._data)
