"""
multirpc - Caching

TTL response cache for RPC results.
"""

from .response_cache import CacheEntry, CacheKeyError, ResponseCache, make_cache_key

__all__ = [
    "CacheEntry",
    "CacheKeyError",
    "ResponseCache",
    "make_cache_key",
]
