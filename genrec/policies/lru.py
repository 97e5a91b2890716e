"""
LRU Eviction Policy: evict the least-recently-updated cache entries first.

An entry's recency is the time of its last committed turn, so a session
that keeps talking stays resident while abandoned conversations age out.
Entries owned by an in-flight request are never selected.
"""

import logging
from typing import List

from genrec.interfaces import EvictionPolicy, EvictionCandidate
from genrec.interfaces.eviction_policy import CacheKey

logger = logging.getLogger(__name__)


class LRUPolicy(EvictionPolicy):
    """
    Least-Recently-Updated eviction policy.

    Selects entries in order of last_update until both the byte target and
    the entry-count target are met.
    """

    def __init__(self):
        logger.debug("LRUPolicy initialized")

    def select_victims(
        self,
        candidates: List[EvictionCandidate],
        bytes_needed: int,
        entries_needed: int = 0
    ) -> List[CacheKey]:
        """
        Select least-recently-updated entries for eviction.

        Args:
            candidates: Potential entries to evict
            bytes_needed: Target bytes to free
            entries_needed: Target number of entries to free

        Returns:
            Cache keys in LRU order
        """
        evictable = [c for c in candidates if not c.in_use]

        if not evictable:
            if bytes_needed > 0 or entries_needed > 0:
                logger.warning("No evictable cache entries (all in use)")
            return []

        sorted_victims = sorted(evictable, key=lambda c: c.last_update)

        victims = []
        freed_bytes = 0
        for candidate in sorted_victims:
            if freed_bytes >= bytes_needed and len(victims) >= entries_needed:
                break
            victims.append(candidate.key)
            freed_bytes += candidate.size_bytes
            logger.debug(f"Selected for LRU eviction: {candidate.key} "
                         f"({candidate.size_bytes / 1024:.1f}KB)")

        if freed_bytes < bytes_needed or len(victims) < entries_needed:
            logger.warning(f"LRU: Selected {len(victims)} entries but only freed "
                           f"{freed_bytes} bytes (needed {bytes_needed} bytes, "
                           f"{entries_needed} entries)")

        return victims
