"""Caching layer."""

from .lru import LRUCache, CacheEntry

__all__ = ["LRUCache", "CacheEntry"]
