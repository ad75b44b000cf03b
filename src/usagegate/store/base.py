"""Abstract base class for key/value store clients."""

from abc import ABC, abstractmethod
from typing import Any


class KeyValueStore(ABC):
    """
    Typed client over a shared key/value store.

    Every counter and cache entry lives in the store; callers keep no
    copy of store state beyond a single request. Implementations must
    make ``incr`` and ``compare_and_set`` atomic, and must raise
    ``StoreUnavailable`` for timeouts and connection faults rather than
    returning a fabricated value.

    Values are strings. Counters are stored as decimal strings, so a key
    written by ``incr`` reads back through ``get`` as e.g. ``"3"``.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """
        Unique identifier for this backend.

        Returns:
            Backend name (e.g., 'memory', 'redis')
        """
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """
        Check if the backend is connected and healthy.

        Returns:
            True if connected, False otherwise
        """
        ...

    @abstractmethod
    async def connect(self) -> bool:
        """
        Establish the connection.

        Returns:
            True if connected successfully
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close the store connection."""
        ...

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """
        Get a value.

        Args:
            key: Store key

        Returns:
            Stored value, or None if absent/expired
        """
        ...

    @abstractmethod
    async def get_many(self, keys: list[str]) -> list[str | None]:
        """
        Get several values in one round trip.

        Args:
            keys: Store keys

        Returns:
            Values in the same order as ``keys`` (None for absent keys)
        """
        ...

    @abstractmethod
    async def set(
        self,
        key: str,
        value: str,
        ttl_seconds: int | None = None,
    ) -> None:
        """
        Set a value, replacing any previous value and TTL.

        Args:
            key: Store key
            value: Value to store
            ttl_seconds: Time-to-live in seconds (None = no expiry)
        """
        ...

    @abstractmethod
    async def incr(self, key: str, amount: int = 1) -> int:
        """
        Atomically increment a counter.

        An absent key is created at 0 before incrementing. The key's
        TTL is left untouched.

        Args:
            key: Counter key
            amount: Increment

        Returns:
            Value after the increment
        """
        ...

    @abstractmethod
    async def expire(self, key: str, ttl_seconds: int) -> bool:
        """
        Set a key's time-to-live.

        Returns:
            True if the key exists and the TTL was set
        """
        ...

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        """
        Delete keys.

        Returns:
            Number of keys removed
        """
        ...

    @abstractmethod
    async def scan(self, prefix: str) -> list[str]:
        """
        List keys starting with ``prefix``.

        Walks the whole keyspace; for administrative use only.
        """
        ...

    @abstractmethod
    async def ttl(self, key: str) -> int | None:
        """
        Get a key's remaining time-to-live.

        Returns:
            Seconds remaining, -1 if the key has no expiry, None if absent
        """
        ...

    @abstractmethod
    async def compare_and_set(self, key: str, expected: str, new: str) -> bool:
        """
        Atomically replace a value if it still equals ``expected``.

        The key's TTL is preserved. An absent key never matches.

        Returns:
            True if the value was replaced
        """
        ...

    async def health_check(self) -> dict[str, Any]:
        """
        Perform a health check on the store.

        Returns:
            Dict with health status info
        """
        return {
            "backend": self.name,
            "connected": self.is_connected,
        }
