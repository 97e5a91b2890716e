"""
Generation cache: per-handle conversational state for multi-turn recommendation.

Each entry is keyed by (model_id, session_key) and holds the user behavior
sequence, the candidate pool of the last turn and the attention state the
ranking backend folds new items into.

Concurrency model:
- One writer per key. A request takes the key's writer lock for its whole
  lifetime (writer() context manager); a second request on the same key
  queues behind it. Requests on different keys never contend beyond the
  short structural lock.
- Entries owned by a writer are marked in_use and are never evicted.
- update() is the only mutation of an entry's contents and is append-only
  for the behavior sequence. A request that fails or times out simply
  never calls it, so the entry keeps its pre-request state.

Capacity: above max_entries, or when the device memory account reports
pressure, entries are evicted by the EvictionPolicy (LRU by default).
"""

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Sequence, Set, Tuple

import torch

from genrec.errors import RequestTimeoutError
from genrec.interfaces import EvictionCandidate, EvictionPolicy
from genrec.interfaces.eviction_policy import CacheKey
from genrec.policies import LRUPolicy
from genrec.runtime.devices import CacheMemoryAccount

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    """Conversational state of one session."""
    key: CacheKey
    behavior_sequence: List[int] = field(default_factory=list)
    candidate_pool: Set[int] = field(default_factory=set)
    attention_state: Optional[torch.Tensor] = None
    messages_absorbed: int = 0
    turns: int = 0
    version: int = 0
    size_bytes: int = 0
    last_update: float = field(default_factory=time.monotonic)
    in_use: bool = False


@dataclass
class TurnUpdate:
    """Result of one successful request, committed atomically by update()."""
    new_items: Sequence[int]
    candidate_pool: Set[int]
    attention_state: Optional[torch.Tensor]
    messages_absorbed: int


@dataclass
class _KeyLock:
    """Writer lock for one key plus the number of writers holding or waiting on it."""
    lock: threading.Lock = field(default_factory=threading.Lock)
    holders: int = 0


class GenerationCache:
    """
    Store of CacheEntry objects for one handle.

    Args:
        max_entries: Entry capacity
        memory: Device memory account charged for attention state
        policy: Victim selection policy
        min_entry_bytes: Bytes charged for an entry with no attention state
    """

    def __init__(
        self,
        max_entries: int = 1024,
        memory: Optional[CacheMemoryAccount] = None,
        policy: Optional[EvictionPolicy] = None,
        min_entry_bytes: int = 0,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be positive")
        self.max_entries = max_entries
        self.memory = memory
        self.policy = policy or LRUPolicy()
        self.min_entry_bytes = min_entry_bytes

        self._entries: Dict[CacheKey, CacheEntry] = {}
        self._key_locks: Dict[CacheKey, _KeyLock] = {}
        self._lock = threading.RLock()
        self.stats = {
            "entries_created": 0,
            "updates_committed": 0,
            "evictions": 0,
            "pressure_evictions": 0,
            "hits": 0,
            "misses": 0,
        }
        logger.debug(f"GenerationCache initialized (max_entries={max_entries})")

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: CacheKey) -> bool:
        with self._lock:
            return key in self._entries

    def keys(self) -> List[CacheKey]:
        with self._lock:
            return list(self._entries.keys())

    @property
    def total_bytes(self) -> int:
        with self._lock:
            return sum(e.size_bytes for e in self._entries.values())

    def _claim_key_lock(self, key: CacheKey) -> _KeyLock:
        with self._lock:
            slot = self._key_locks.get(key)
            if slot is None:
                slot = _KeyLock()
                self._key_locks[key] = slot
            slot.holders += 1
            return slot

    def _return_key_lock(self, key: CacheKey, slot: _KeyLock) -> None:
        # The lock lives only while a writer holds or waits on it
        with self._lock:
            slot.holders -= 1
            if slot.holders == 0 and self._key_locks.get(key) is slot:
                del self._key_locks[key]

    @contextmanager
    def writer(self, key: CacheKey, timeout: Optional[float] = None) -> Iterator[CacheEntry]:
        """
        Hold exclusive write access to `key` for the duration of a request.

        Args:
            key: Cache key
            timeout: Seconds to wait behind another writer (None = forever)

        Yields:
            The (possibly new) entry, marked in_use

        Raises:
            RequestTimeoutError: If the key stays busy past `timeout`
        """
        slot = self._claim_key_lock(key)
        lock = slot.lock
        try:
            acquired = lock.acquire(timeout=timeout) if timeout is not None else lock.acquire()
            if not acquired:
                raise RequestTimeoutError(int(timeout * 1000))
            try:
                with self._lock:
                    entry = self.lookup_or_create(key)
                    entry.in_use = True
                try:
                    yield entry
                finally:
                    entry.in_use = False
            finally:
                lock.release()
        finally:
            self._return_key_lock(key, slot)

    def lookup_or_create(self, key: CacheKey) -> CacheEntry:
        """Return the entry for `key`, creating an empty one if absent."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                self.stats["hits"] += 1
                return entry

            self.stats["misses"] += 1
            overflow = len(self._entries) + 1 - self.max_entries
            if overflow > 0:
                self._evict(bytes_needed=0, entries_needed=overflow, reason="capacity")

            entry = CacheEntry(key=key, size_bytes=self.min_entry_bytes)
            if self.memory is not None and entry.size_bytes:
                self._make_room(entry.size_bytes, exclude=key)
                self.memory.charge(key, entry.size_bytes)
            self._entries[key] = entry
            self.stats["entries_created"] += 1
            logger.debug(f"Cache entry created: {key}")
            return entry

    def get(self, key: CacheKey) -> Optional[CacheEntry]:
        with self._lock:
            return self._entries.get(key)

    def update(self, key: CacheKey, turn: TurnUpdate) -> CacheEntry:
        """
        Commit a turn: append its items, refresh the candidate pool and
        replace the attention state with the advanced one.

        Memory is charged before any field changes, so a failed charge
        leaves the entry as it was.

        Raises:
            KeyError: If the entry was never created
            DeviceOutOfMemoryError: If the new state cannot be held even
                                    after evicting every idle entry
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                raise KeyError(f"Cache entry {key} not found")

            new_bytes = self._state_bytes(turn.attention_state)
            if self.memory is not None:
                growth = new_bytes - entry.size_bytes
                if growth > 0:
                    self._make_room(growth, exclude=key)
                self.memory.charge(key, new_bytes)

            entry.behavior_sequence.extend(int(i) for i in turn.new_items)
            entry.candidate_pool = set(turn.candidate_pool)
            entry.attention_state = turn.attention_state
            entry.messages_absorbed = turn.messages_absorbed
            entry.size_bytes = new_bytes
            entry.turns += 1
            entry.version += 1
            entry.last_update = time.monotonic()
            self.stats["updates_committed"] += 1

            logger.debug(
                f"Cache entry updated: {key}, turn={entry.turns}, "
                f"seq_len={len(entry.behavior_sequence)}, bytes={new_bytes}"
            )
            return entry

    def _state_bytes(self, state: Optional[torch.Tensor]) -> int:
        if state is None:
            return self.min_entry_bytes
        return max(self.min_entry_bytes, state.element_size() * state.numel())

    def _make_room(self, incoming_bytes: int, exclude: CacheKey) -> None:
        needed = self.memory.pressure(incoming_bytes)
        if needed > 0:
            logger.info(f"Generation cache memory pressure: need {needed} bytes")
            freed = self._evict(bytes_needed=needed, entries_needed=0, reason="pressure", exclude=exclude)
            self.stats["pressure_evictions"] += freed

    def _evict(
        self,
        bytes_needed: int,
        entries_needed: int,
        reason: str,
        exclude: Optional[CacheKey] = None,
    ) -> int:
        candidates = [
            EvictionCandidate(
                key=e.key,
                last_update=e.last_update,
                size_bytes=e.size_bytes,
                in_use=e.in_use or e.key == exclude,
            )
            for e in self._entries.values()
        ]
        victims = self.policy.select_victims(candidates, bytes_needed, entries_needed)
        evicted = 0
        for key in victims:
            entry = self._entries.get(key)
            if entry is None or entry.in_use or key == exclude:
                continue
            self._drop(key)
            evicted += 1
            logger.info(f"Evicted cache entry {key} ({reason}, {entry.size_bytes} bytes)")
        self.stats["evictions"] += evicted
        return evicted

    def _drop(self, key: CacheKey) -> None:
        entry = self._entries.pop(key)
        entry.attention_state = None
        if self.memory is not None:
            self.memory.free(key)

    def evict(self, key: CacheKey) -> bool:
        """Evict one idle entry. Returns False if absent or in use."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.in_use:
                return False
            self._drop(key)
            self.stats["evictions"] += 1
            return True

    def clear(self) -> int:
        """
        Drop every entry and return its memory.

        Callers guarantee no request is in flight (the handle's exclusive
        lock is held during destroy/re-initialize).

        Returns:
            Number of entries dropped
        """
        with self._lock:
            keys = list(self._entries.keys())
            for key in keys:
                self._drop(key)
            self._key_locks.clear()
            if keys:
                logger.info(f"Generation cache cleared ({len(keys)} entries)")
            return len(keys)

    def get_stats(self) -> Dict:
        with self._lock:
            return {
                **self.stats,
                "entries": len(self._entries),
                "bytes": sum(e.size_bytes for e in self._entries.values()),
            }


def snapshot_entry(entry: CacheEntry) -> Tuple[List[int], Set[int], Optional[torch.Tensor], int]:
    """Copy the mutable fields a request reads before computing its turn."""
    return (
        list(entry.behavior_sequence),
        set(entry.candidate_pool),
        entry.attention_state,
        entry.messages_absorbed,
    )
