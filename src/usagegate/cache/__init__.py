"""
Content-addressable analysis cache.

Derives deterministic keys from a product's stable identity and stores
analysis results under them with an absolute TTL.
"""

from usagegate.cache.keys import (
    CacheKeyBuilder,
    EssentialFieldSelector,
    IdentityStrategy,
    VolatileFieldFilter,
    canonicalize,
)
from usagegate.cache.analysis import AnalysisCache, CacheEntry, CacheLookup

__all__ = [
    "AnalysisCache",
    "CacheEntry",
    "CacheKeyBuilder",
    "CacheLookup",
    "EssentialFieldSelector",
    "IdentityStrategy",
    "VolatileFieldFilter",
    "canonicalize",
]
