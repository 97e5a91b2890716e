"""
Tests for the generation cache: commits, eviction and writer exclusion.
"""

import threading

import pytest
import torch

from genrec.errors import RequestTimeoutError
from genrec.runtime.devices import CacheMemoryAccount, MemoryPool
from genrec.runtime.generation_cache import GenerationCache, TurnUpdate, snapshot_entry


def _turn(items, state_size=4, absorbed=1):
    return TurnUpdate(
        new_items=items,
        candidate_pool={100, 101},
        attention_state=torch.zeros(state_size),
        messages_absorbed=absorbed,
    )


def test_update_appends_behavior():
    cache = GenerationCache()
    key = ("rec", "session-a")
    cache.lookup_or_create(key)
    cache.update(key, _turn([1, 2]))
    entry = cache.update(key, _turn([3], absorbed=2))

    assert entry.behavior_sequence == [1, 2, 3]
    assert entry.turns == 2
    assert entry.messages_absorbed == 2
    assert entry.candidate_pool == {100, 101}
    assert cache.get_stats()["updates_committed"] == 2


def test_update_unknown_key():
    cache = GenerationCache()
    with pytest.raises(KeyError):
        cache.update(("rec", "missing"), _turn([1]))


def test_snapshot_is_detached():
    cache = GenerationCache()
    key = ("rec", "s")
    entry = cache.lookup_or_create(key)
    cache.update(key, _turn([5]))
    behavior, pool, _, absorbed = snapshot_entry(entry)
    behavior.append(99)
    pool.add(99)
    assert entry.behavior_sequence == [5]
    assert 99 not in entry.candidate_pool
    assert absorbed == 1


def test_capacity_evicts_least_recently_updated():
    cache = GenerationCache(max_entries=2)
    for name in ("a", "b"):
        cache.lookup_or_create(("rec", name))
        cache.update(("rec", name), _turn([1]))
    # Touch "a" so "b" becomes least recent
    cache.update(("rec", "a"), _turn([2]))

    cache.lookup_or_create(("rec", "c"))
    assert ("rec", "b") not in cache
    assert ("rec", "a") in cache
    assert len(cache) == 2
    assert cache.get_stats()["evictions"] == 1


def test_in_use_entries_are_not_evicted():
    cache = GenerationCache(max_entries=1)
    with cache.writer(("rec", "busy")):
        cache.lookup_or_create(("rec", "other"))
        assert ("rec", "busy") in cache
    assert ("rec", "other") in cache


def test_memory_pressure_evicts():
    pool = MemoryPool("cuda:0", 100_000)
    account = CacheMemoryAccount(pool, budget_bytes=1000, watermark=1.0)
    cache = GenerationCache(memory=account)

    for name in ("a", "b", "c"):
        cache.lookup_or_create(("rec", name))
        cache.update(("rec", name), _turn([1], state_size=64))  # 256 bytes each
    assert account.used_bytes == 768

    cache.lookup_or_create(("rec", "d"))
    cache.update(("rec", "d"), _turn([1], state_size=64))

    assert ("rec", "a") not in cache
    assert ("rec", "d") in cache
    assert account.used_bytes == 768
    assert cache.get_stats()["pressure_evictions"] == 1


def test_clear_returns_memory():
    pool = MemoryPool("cuda:0", 100_000)
    cache = GenerationCache(memory=CacheMemoryAccount(pool, 10_000, 1.0), min_entry_bytes=32)
    for name in ("a", "b"):
        cache.lookup_or_create(("rec", name))
    assert pool.used_bytes == 64
    assert cache.clear() == 2
    assert pool.used_bytes == 0
    assert len(cache) == 0


def test_evict_single_entry():
    cache = GenerationCache()
    cache.lookup_or_create(("rec", "a"))
    assert cache.evict(("rec", "a"))
    assert not cache.evict(("rec", "a"))


def test_writer_times_out_behind_another_writer():
    cache = GenerationCache()
    key = ("rec", "shared")
    held = threading.Event()
    done = threading.Event()

    def hold():
        with cache.writer(key):
            held.set()
            done.wait(timeout=5)

    thread = threading.Thread(target=hold)
    thread.start()
    try:
        assert held.wait(timeout=5)
        with pytest.raises(RequestTimeoutError):
            with cache.writer(key, timeout=0.05):
                pass
    finally:
        done.set()
        thread.join()

    with cache.writer(key, timeout=1.0) as entry:
        assert entry.in_use
    assert not cache.get(key).in_use


def test_writers_on_one_key_are_serialized():
    cache = GenerationCache()
    key = ("rec", "serial")
    inside = []
    overlap = []
    lock = threading.Lock()

    def work(items):
        with cache.writer(key):
            with lock:
                inside.append(1)
                if len(inside) > 1:
                    overlap.append(True)
            cache.update(key, _turn(items))
            with lock:
                inside.pop()

    threads = [threading.Thread(target=work, args=([i],)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert not overlap
    assert sorted(cache.get(key).behavior_sequence) == list(range(8))
    assert cache._key_locks == {}


def test_writer_locks_do_not_outlive_their_sessions():
    cache = GenerationCache(max_entries=2)
    for i in range(100):
        with cache.writer(("rec", f"session-{i}")):
            pass
    assert len(cache) == 2
    assert cache._key_locks == {}


def test_timed_out_writer_releases_its_claim():
    cache = GenerationCache()
    key = ("rec", "busy")
    held = threading.Event()
    done = threading.Event()

    def hold():
        with cache.writer(key):
            held.set()
            done.wait(timeout=5)

    thread = threading.Thread(target=hold)
    thread.start()
    try:
        assert held.wait(timeout=5)
        with pytest.raises(RequestTimeoutError):
            with cache.writer(key, timeout=0.05):
                pass
        assert cache._key_locks[key].holders == 1
    finally:
        done.set()
        thread.join()
    assert cache._key_locks == {}
