"""Template source cache."""

from .lock import CacheLock
from .manager import CacheEntry, CacheManager, compute_cache_key

__all__ = ["CacheEntry", "CacheLock", "CacheManager", "compute_cache_key"]
