"""
Eviction policies for the generation cache.

- LRUPolicy: Least-Recently-Updated eviction (default)
"""

from .lru import LRUPolicy

__all__ = ["LRUPolicy"]
