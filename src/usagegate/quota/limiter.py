"""
Fixed-window rate limiting.

Each ``(identifier, action)`` pair gets a counter that is created by the
first request of a window and disappears when the window's TTL runs
out. A burst straddling two windows can reach twice the limit; in return
a check is a single atomic increment with no timestamp bookkeeping.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from usagegate.errors import StoreUnavailable
from usagegate.store.base import KeyValueStore

logger = logging.getLogger(__name__)


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""

    allowed: bool
    """Whether the request is allowed."""

    remaining: int
    """Remaining requests in the current window."""

    limit: int
    """Maximum requests allowed in the window."""

    reset_at: datetime
    """When the rate limit window resets."""

    retry_after: float | None = None
    """Seconds to wait before retrying (if not allowed)."""

    degraded: bool = False
    """True when the store failed and the request was let through."""

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "remaining": self.remaining,
            "limit": self.limit,
            "reset_at": self.reset_at.isoformat(),
            "retry_after": self.retry_after,
            "degraded": self.degraded,
        }


class FixedWindowRateLimiter:
    """
    Fixed-window rate limiter on shared store counters.

    Independent of quotas: it counts every request it sees, allowed or
    not, and never touches quota counters.
    """

    def __init__(
        self,
        store: KeyValueStore,
        clock: Callable[[], float] = time.time,
        key_prefix: str = "ratelimit:",
    ) -> None:
        """
        Initialize fixed-window limiter.

        Args:
            store: Shared key/value store
            clock: Source of the current time in epoch seconds
            key_prefix: Prefix for counter keys
        """
        self._store = store
        self._clock = clock
        self._key_prefix = key_prefix

    @property
    def name(self) -> str:
        return "fixed_window"

    def _get_key(self, identifier: str, action: str) -> str:
        return f"{self._key_prefix}{action}:{identifier}"

    async def check_and_consume(
        self,
        identifier: str,
        action: str,
        limit: int,
        window_seconds: int,
    ) -> RateLimitResult:
        """
        Count a request and decide whether it is within the limit.

        Args:
            identifier: Who is making the request (user id, API key, IP)
            action: What is being requested
            limit: Requests allowed per window
            window_seconds: Window length

        Returns:
            RateLimitResult; allowed with ``degraded=True`` if the store
            is unavailable
        """
        now = self._clock()
        key = self._get_key(identifier, action)

        try:
            count = await self._store.incr(key)
            if count == 1:
                await self._store.expire(key, window_seconds)
                ttl = window_seconds
            else:
                ttl = await self._store.ttl(key)
                if ttl is None or ttl < 0:
                    # Counter outlived a writer that died between INCR and EXPIRE
                    logger.warning(f"Rate counter {key} had no expiry, restoring window")
                    await self._store.expire(key, window_seconds)
                    ttl = window_seconds
        except StoreUnavailable as e:
            logger.warning(f"Rate limit for {identifier}/{action} failed open: {e}")
            return RateLimitResult(
                allowed=True,
                remaining=limit,
                limit=limit,
                reset_at=datetime.fromtimestamp(now, tz=timezone.utc),
                degraded=True,
            )

        reset_at = datetime.fromtimestamp(now, tz=timezone.utc) + timedelta(seconds=ttl)
        allowed = count <= limit
        if not allowed:
            logger.info(f"Rate limit exceeded: {identifier} {action} {count}/{limit}")

        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, limit - count),
            limit=limit,
            reset_at=reset_at,
            retry_after=None if allowed else float(ttl),
        )

    async def reset(self, identifier: str, action: str) -> bool:
        """
        Drop the current window for a key (administrative).

        Returns:
            True if a counter was removed
        """
        try:
            deleted = await self._store.delete(self._get_key(identifier, action))
        except StoreUnavailable as e:
            logger.warning(f"Rate limit reset for {identifier}/{action} failed: {e}")
            return False

        logger.info(f"Reset rate limit for {identifier} on {action}")
        return deleted > 0

    async def snapshot(self, action: str | None = None) -> dict[str, dict[str, int]]:
        """
        Current window counts grouped by action (administrative).

        Walks the keyspace.

        Raises:
            StoreUnavailable: If the store cannot be read
        """
        prefix = self._key_prefix + (f"{action}:" if action else "")
        keys = await self._store.scan(prefix)
        values = await self._store.get_many(keys) if keys else []

        stats: dict[str, dict[str, int]] = {}
        for key, value in zip(keys, values):
            if value is None:
                continue
            key_action, _, identifier = key[len(self._key_prefix):].partition(":")
            stats.setdefault(key_action, {})[identifier] = int(value)
        return stats
