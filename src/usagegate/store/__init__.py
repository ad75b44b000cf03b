"""
Key/value store clients.

Provides the atomic GET/SET/INCR/EXPIRE/DEL/SCAN/TTL primitives the
cache, quota ledger and rate limiter run on, backed by Redis or by an
in-memory dictionary.
"""

from usagegate.store.base import KeyValueStore
from usagegate.store.memory import InMemoryStore
from usagegate.store.redis import RedisStore
from usagegate.store.factory import create_store, initialize_store

__all__ = [
    "KeyValueStore",
    "InMemoryStore",
    "RedisStore",
    "create_store",
    "initialize_store",
]
