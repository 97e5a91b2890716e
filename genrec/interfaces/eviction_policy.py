"""
EvictionPolicy: Pluggable policy for choosing which generation cache entries to evict.

The generation cache asks the policy for victims when it exceeds its entry
capacity or when the device pool signals memory pressure. Entries that are
in use by an in-flight request are handed to the policy but must never be
selected.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Tuple

CacheKey = Tuple[str, str]


@dataclass
class EvictionCandidate:
    """Information about a cache entry that could be evicted."""
    key: CacheKey
    last_update: float          # time.monotonic() of the last committed turn
    size_bytes: int             # Device bytes held by the attention state
    in_use: bool = False        # Whether a request currently owns the entry


class EvictionPolicy(ABC):
    """
    Pluggable policy for selecting which cache entries to evict.
    """

    @abstractmethod
    def select_victims(
        self,
        candidates: List[EvictionCandidate],
        bytes_needed: int,
        entries_needed: int = 0
    ) -> List[CacheKey]:
        """
        Select entries to evict to free at least bytes_needed bytes and
        at least entries_needed entries.

        Args:
            candidates: Every entry currently in the cache
            bytes_needed: Target bytes to free
            entries_needed: Target number of entries to free

        Returns:
            Keys to evict, in eviction order

        Constraints:
            - MUST NOT return entries with in_use=True
            - May return fewer than needed when nothing else is evictable
            - Should not return the same key twice
        """
        pass
