"""
genrec extensibility interfaces.

These abstract base classes define the contract for pluggable components:
- DeviceProbe: Driver access (device counts, memory, streams)
- RankingBackend: Model compute (embedding lookup, attention state, ranking head)
- EvictionPolicy: Policy for selecting which cache entries to evict
"""

from .device_probe import DeviceProbe
from .eviction_policy import EvictionPolicy, EvictionCandidate
from .ranking_backend import RankingBackend

__all__ = [
    "DeviceProbe",
    "EvictionPolicy",
    "EvictionCandidate",
    "RankingBackend",
]
