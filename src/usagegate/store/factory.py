"""Store factory for creating store clients from configuration."""

import logging
import time
from collections.abc import Callable

from usagegate.config import Settings
from usagegate.store.base import KeyValueStore
from usagegate.store.memory import InMemoryStore
from usagegate.store.redis import RedisStore

logger = logging.getLogger(__name__)


def create_store(
    settings: Settings,
    backend: str | None = None,
    clock: Callable[[], float] = time.time,
) -> KeyValueStore:
    """
    Create a store client.

    The caller owns the returned instance and passes it to the cache,
    quota ledger and rate limiter it builds.

    Args:
        settings: Application settings
        backend: Backend type ("memory" or "redis"), defaults to config
        clock: Time source for the in-memory backend

    Returns:
        KeyValueStore instance

    Raises:
        ValueError: If backend type is unknown or Redis is not configured
    """
    backend_type = backend or settings.store_backend

    if backend_type == "memory":
        logger.warning(
            "Using in-memory store: counters and cache entries are not shared "
            "across processes. Set STORE_BACKEND=redis for production."
        )
        return InMemoryStore(clock=clock)

    elif backend_type == "redis":
        if not settings.redis_url:
            raise ValueError(
                "STORE_BACKEND=redis requires REDIS_URL to be set"
            )

        return RedisStore(
            url=settings.redis_url,
            prefix=settings.redis_prefix,
            max_connections=settings.redis_max_connections,
            socket_timeout=settings.redis_socket_timeout,
            socket_connect_timeout=settings.redis_connect_timeout,
            operation_timeout=settings.store_operation_timeout,
            reconnect_interval=settings.redis_reconnect_interval,
        )

    else:
        raise ValueError(f"Unknown store backend: {backend_type}")


async def initialize_store(store: KeyValueStore) -> KeyValueStore:
    """
    Establish the store connection during startup.

    A store that cannot be reached is kept rather than replaced: every
    component fails open on ``StoreUnavailable`` and the client retries
    the connection on the next operation.
    """
    if not await store.connect():
        logger.warning(
            f"{store.name} store unreachable at startup; "
            "caching and enforcement will fail open until it recovers"
        )
    return store
