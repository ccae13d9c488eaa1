"""Tests for MemoryCache size limiting and LRU eviction."""

from __future__ import annotations

import random
import string

import pytest

from conftest import TEST_DIMENSIONS, make_memory
from hybrid_recall.cache import TARGET_USAGE, MemoryCache
from hybrid_recall.types import MemorySession, MemoryType
from hybrid_recall.vectorizer import vectorize

# Large, uniform bodies: every record is the same size.
BULKY = "lorem ipsum " * 1500


def _add(store, index, **kwargs):
    memory = make_memory(**kwargs)
    store.save(memory)
    index.add(memory.id, vectorize(memory.search_text, TEST_DIMENSIONS))
    return memory


class TestCheckAndEvict:
    def test_noop_under_limit(self, store, index):
        _add(store, index, id="a")
        cache = MemoryCache(store, index, max_size_bytes=10 * store.size_bytes())
        result = cache.check_and_evict()
        assert result.evicted_count == 0
        assert result.freed_bytes == 0
        assert store.get("a") is not None

    def test_size_limit_keeps_most_recently_accessed(self, store, index):
        n = 20
        for i in range(n):
            _add(store, index, id=f"m{i}", content=f"{i} {BULKY}", ts=i + 1)
        # An old record that was read recently must outlive newer, unread ones.
        store.touch_accessed("m0", 10_000)
        store.flush()

        max_size = store.size_bytes() + 1
        for i in range(n, n + 5):
            _add(store, index, id=f"m{i}", content=f"{i} {BULKY}", ts=i + 1)
        store.flush()

        cache = MemoryCache(store, index, max_size_bytes=max_size)
        assert cache.is_over_limit()
        result = cache.check_and_evict()

        assert result.evicted_count > 0
        assert result.freed_bytes > 0
        assert store.size_bytes() <= max_size * TARGET_USAGE

        access = {f"m{i}": i + 1 for i in range(n + 5)}
        access["m0"] = 10_000
        survivors = {m.id for m in store.all_memories()}
        by_recency = sorted(access, key=access.__getitem__)
        assert survivors == set(by_recency[-len(survivors):])
        assert "m0" in survivors
        assert set(index.labels()) == survivors


class TestOrdinaryRecords:
    def test_evicts_about_what_the_target_needs(self, store, index):
        rng = random.Random(11)
        vocab = [
            "".join(rng.choice(string.ascii_lowercase) for _ in range(rng.randint(3, 9)))
            for _ in range(5000)
        ]

        def add(i):
            content = " ".join(rng.choice(vocab) for _ in range(60))
            store.save(make_memory(id=f"r{i}", title=f"Record {i}", content=content, ts=i + 1))

        n = 2000
        for i in range(n):
            add(i)
        store.touch_accessed("r0", 1_000_000)
        store.flush()

        cache = MemoryCache(store, index, max_size_bytes=store.size_bytes())
        total = n
        while total < n + 5 or not cache.is_over_limit():
            add(total)
            total += 1
        store.flush()

        result = cache.check_and_evict()

        assert store.size_bytes() <= cache.target_size
        needed = (1 - TARGET_USAGE) * n + (total - n)
        assert 0 < result.evicted_count < 1.5 * needed
        assert store.count() == total - result.evicted_count

        access = {f"r{i}": i + 1 for i in range(total)}
        access["r0"] = 1_000_000
        survivors = {m.id for m in store.all_memories()}
        by_recency = sorted(access, key=access.__getitem__)
        assert survivors == set(by_recency[-len(survivors):])
        assert "r0" in survivors


class TestPinnedMemories:
    def test_force_evict_never_touches_decisions_or_active_session(self, store, index):
        store.create_session(MemorySession(id="live", project="p", started_at=1))
        _add(store, index, id="decision", type=MemoryType.DECISION, ts=1)
        _add(store, index, id="session", session_id="live", ts=2)
        _add(store, index, id="ordinary", ts=3)

        cache = MemoryCache(store, index)
        for _ in range(3):
            cache.force_evict()

        assert store.get("decision") is not None
        assert store.get("session") is not None
        assert store.get("ordinary") is None
        assert "ordinary" not in index
        assert {"decision", "session"} <= set(index.labels())

    def test_force_evict_runs_under_limit(self, store, index):
        _add(store, index, id="a", ts=1)
        _add(store, index, id="b", ts=2)
        cache = MemoryCache(store, index, max_size_bytes=10**9)
        result = cache.force_evict()
        assert result.evicted_count == 2
        assert store.count() == 0

    def test_everything_pinned_stops(self, store, index):
        for i in range(5):
            _add(store, index, type=MemoryType.DECISION, content=f"{i} {BULKY}", ts=i)
        cache = MemoryCache(store, index, max_size_bytes=1)
        result = cache.check_and_evict()
        assert result.evicted_count == 0
        assert store.count() == 5

    def test_ended_session_is_no_longer_pinned(self, store, index):
        store.create_session(MemorySession(id="done", project="p", started_at=1))
        _add(store, index, id="was-pinned", session_id="done", ts=1)
        store.end_session("done")
        MemoryCache(store, index).force_evict()
        assert store.get("was-pinned") is None


class TestUsage:
    def test_usage_percent_and_target(self, store, index):
        size = store.size_bytes()
        cache = MemoryCache(store, index, max_size_bytes=size * 4)
        assert cache.usage_percent() == pytest.approx(25.0)
        assert cache.target_size == pytest.approx(size * 4 * TARGET_USAGE)
        assert not cache.is_over_limit()
