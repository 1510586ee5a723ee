"""
Caching layer: fail-open Redis backend, hot tick cache, tiered
get-or-compute cache and the sliding-window rate limiter.
"""

from .backend import CacheBackend, MemoryStore
from .rate_limit import RateLimiter, RateLimitResult
from .tiered import HotCache, TieredCache

__all__ = [
    "CacheBackend",
    "HotCache",
    "MemoryStore",
    "RateLimiter",
    "RateLimitResult",
    "TieredCache",
]
