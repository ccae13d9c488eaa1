"""Tests for the SQLite MemoryStore."""

from __future__ import annotations

import random
import sqlite3

import pytest

from conftest import make_memory
from hybrid_recall.errors import StoreNotInitializedError
from hybrid_recall.store import MemoryStore
from hybrid_recall.types import MemorySession, MemoryType, SessionStatus


def _external_count(db_path) -> int:
    conn = sqlite3.connect(db_path)
    try:
        return conn.execute("SELECT COUNT(*) FROM memories").fetchone()[0]
    finally:
        conn.close()


class TestLifecycle:
    def test_methods_require_open(self, tmp_path):
        s = MemoryStore(tmp_path / "x.db")
        with pytest.raises(StoreNotInitializedError):
            s.count()

    def test_closed_store_raises(self, tmp_path):
        s = MemoryStore(tmp_path / "x.db")
        s.open()
        s.close()
        with pytest.raises(StoreNotInitializedError):
            s.get("anything")

    def test_open_creates_parent_directory(self, tmp_path):
        path = tmp_path / "nested" / "dir" / "memory.db"
        with MemoryStore(path) as s:
            assert s.is_open
        assert path.exists()

    def test_open_is_idempotent(self, store):
        store.open()
        assert store.count() == 0

    def test_reopen_sees_flushed_data(self, tmp_path):
        path = tmp_path / "memory.db"
        with MemoryStore(path) as s:
            s.save(make_memory(id="keep"))
        with MemoryStore(path) as s:
            assert s.get("keep") is not None


class TestDurability:
    def test_writes_are_buffered_until_flush(self, store):
        store.save(make_memory(id="a"))
        store.save(make_memory(id="b"))
        assert store.pending_writes == 2
        assert _external_count(store.db_path) == 0

        store.flush()
        assert store.pending_writes == 0
        assert _external_count(store.db_path) == 2

    def test_auto_flush_at_threshold(self, tmp_path):
        s = MemoryStore(tmp_path / "memory.db", flush_threshold=3)
        s.open()
        try:
            for i in range(3):
                s.save(make_memory(id=f"m{i}"))
            assert s.pending_writes == 0
            assert _external_count(s.db_path) == 3
        finally:
            s.close()

    def test_close_commits(self, tmp_path):
        path = tmp_path / "memory.db"
        s = MemoryStore(path)
        s.open()
        s.save(make_memory(id="a"))
        s.close()
        assert _external_count(path) == 1


class TestMemoryCrud:
    def test_save_and_get(self, store):
        m = make_memory(
            title="Add dark mode",
            content="Implement theme toggle",
            type=MemoryType.FEATURE,
            tags=["ui", "theme"],
            project="app",
            summary="toggle",
            session_id="s1",
        )
        store.save(m)
        got = store.get(m.id)
        assert got == m

    def test_get_missing(self, store):
        assert store.get("nope") is None

    def test_save_same_id_overwrites(self, store):
        m = make_memory(id="x", title="Old title")
        store.save(m)
        m.title = "New title"
        store.save(m)
        assert store.count() == 1
        assert store.get("x").title == "New title"

    def test_delete(self, store):
        store.save(make_memory(id="x"))
        assert store.delete("x") is True
        assert store.get("x") is None
        assert store.delete("x") is False

    def test_touch_accessed_only_moves_forward(self, store):
        store.save(make_memory(id="x", ts=1_000))
        assert store.touch_accessed("x", 5_000) is True
        assert store.get("x").accessed_at == 5_000
        store.touch_accessed("x", 2_000)
        got = store.get("x")
        assert got.accessed_at == 5_000
        assert got.updated_at == 1_000

    def test_touch_missing(self, store):
        assert store.touch_accessed("missing", 1) is False

    def test_list_newest_first_with_filters(self, store):
        store.save(make_memory(id="old", ts=1, type=MemoryType.BUGFIX, project="p"))
        store.save(make_memory(id="mid", ts=2, type=MemoryType.FEATURE, project="p"))
        store.save(make_memory(id="new", ts=3, type=MemoryType.BUGFIX, project="q"))

        assert [m.id for m in store.list_memories()] == ["new", "mid", "old"]
        assert [m.id for m in store.list_memories(type="bugfix")] == ["new", "old"]
        assert [m.id for m in store.list_memories(project="p")] == ["mid", "old"]
        assert [m.id for m in store.list_memories(limit=1, offset=1)] == ["mid"]

    def test_all_memories_in_creation_order(self, store):
        for i in (3, 1, 2):
            store.save(make_memory(id=f"m{i}", ts=i))
        assert [m.id for m in store.all_memories()] == ["m1", "m2", "m3"]

    def test_unknown_type_rejected(self, store):
        with pytest.raises(ValueError):
            store.list_memories(type="nonsense")


class TestLexicalSearch:
    @pytest.fixture(autouse=True)
    def _seed(self, store):
        store.save(make_memory(id="dark", title="Add dark mode", content="Implement theme toggle and persist to storage", type=MemoryType.FEATURE, project="app", ts=1))
        store.save(make_memory(id="race", title="Fix race condition", content="Mutex guards the queue", type=MemoryType.BUGFIX, project="app", ts=2))
        store.save(make_memory(id="rrf", title="Use RRF for fusion", content="Chose rank fusion over score blending", type=MemoryType.DECISION, project="lib", ts=3))

    def test_fts5_ranks_matches(self, store):
        if not store.fts_available:
            pytest.skip("SQLite built without FTS5")
        hits = store.search_lexical("race")
        assert [h.id for h in hits] == ["race"]
        assert hits[0].score > 0

    def test_searches_summary(self, store):
        if not store.fts_available:
            pytest.skip("SQLite built without FTS5")
        store.save(make_memory(id="sum", title="Plain", content="Plain body", summary="kubernetes rollout"))
        assert [h.id for h in store.search_lexical("kubernetes")] == ["sum"]

    def test_filters(self, store):
        assert store.search_lexical("fusion", type="bugfix") == []
        assert [h.id for h in store.search_lexical("fusion", project="lib")] == ["rrf"]

    def test_punctuation_only_query(self, store):
        assert store.search_lexical("!!! ???") == []

    def test_special_characters_do_not_break_fts(self, store):
        assert [h.id for h in store.search_lexical('race" (*')] == ["race"]

    def test_index_follows_updates_and_deletes(self, store):
        if not store.fts_available:
            pytest.skip("SQLite built without FTS5")
        m = store.get("race")
        m.content = "Semaphore guards the pool"
        store.save(m)
        assert store.search_lexical("mutex") == []
        assert [h.id for h in store.search_lexical("semaphore")] == ["race"]

        store.delete("race")
        assert store.search_lexical("semaphore") == []

    def test_like_fallback_without_fts(self, store, monkeypatch):
        monkeypatch.setattr(store, "_fts_available", False)
        hits = store.search_lexical("theme toggle")
        assert [h.id for h in hits] == ["dark"]
        assert hits[0].score == pytest.approx(1.0)

    def test_like_fallback_on_fts_error(self, store, monkeypatch):
        def boom(*args, **kwargs):
            raise sqlite3.OperationalError("fts5: syntax error")

        monkeypatch.setattr(MemoryStore, "_search_fts5", staticmethod(boom))
        monkeypatch.setattr(store, "_fts_available", True)
        assert [h.id for h in store.search_lexical("mutex")] == ["race"]

    def test_like_escapes_wildcards(self, store, monkeypatch):
        monkeypatch.setattr(store, "_fts_available", False)
        store.save(make_memory(id="pct", title="100% coverage", content="all_tests pass"))
        assert [h.id for h in store.search_lexical("all_tests")] == ["pct"]


class TestTimeline:
    def test_window_around_anchor(self, store):
        for i in range(10):
            store.save(make_memory(id=f"m{i}", ts=i * 10))
        rows = store.timeline_around("m5", 2)
        assert [m.id for m in rows] == ["m3", "m4", "m5", "m6", "m7"]

    def test_window_clipped_at_edges(self, store):
        for i in range(3):
            store.save(make_memory(id=f"m{i}", ts=i))
        assert [m.id for m in store.timeline_around("m0", 5)] == ["m0", "m1", "m2"]

    def test_equal_timestamps_ordered_by_insertion(self, store):
        for i in range(5):
            store.save(make_memory(id=f"m{i}", ts=100))
        assert [m.id for m in store.timeline_around("m2", 1)] == ["m1", "m2", "m3"]

    def test_missing_anchor(self, store):
        assert store.timeline_around("nope", 3) == []


class TestSessions:
    def test_create_get_end(self, store):
        store.create_session(MemorySession(id="s1", project="app", started_at=10))
        assert store.get_active_session().id == "s1"

        assert store.end_session("s1", summary="done", now=20) is True
        s = store.get_session("s1")
        assert s.status is SessionStatus.COMPLETED
        assert s.ended_at == 20
        assert s.summary == "done"
        assert store.get_active_session() is None

    def test_end_unknown_session(self, store):
        assert store.end_session("ghost") is False

    def test_active_session_is_most_recent(self, store):
        store.create_session(MemorySession(id="a", project="p", started_at=1))
        store.create_session(MemorySession(id="b", project="p", started_at=2))
        assert store.get_active_session().id == "b"
        assert store.session_count() == 2

    def test_tool_calls_increment(self, store):
        store.create_session(MemorySession(id="s", project="p", started_at=1))
        store.increment_tool_calls("s")
        store.increment_tool_calls("s")
        assert store.get_session("s").tool_calls == 2


class TestAggregates:
    def test_size_grows_with_content(self, store):
        before = store.size_bytes()
        for i in range(20):
            store.save(make_memory(content=f"{i} " + "lorem ipsum " * 500))
        assert store.size_bytes() > before

    def test_timestamps(self, store):
        assert store.oldest_timestamp() is None
        store.save(make_memory(ts=5))
        store.save(make_memory(ts=9))
        assert store.oldest_timestamp() == 5
        assert store.newest_timestamp() == 9

    def test_eviction_candidates_order_and_pins(self, store):
        store.save(make_memory(id="recent", ts=1, accessed_at=100))
        store.save(make_memory(id="stale", ts=2, accessed_at=10))
        store.save(make_memory(id="decision", ts=3, accessed_at=1, type=MemoryType.DECISION))
        store.save(make_memory(id="pinned", ts=4, accessed_at=2, session_id="live"))
        store.save(make_memory(id="other-session", ts=5, accessed_at=50, session_id="old"))

        assert store.eviction_candidates(10, active_session_id="live") == ["stale", "other-session", "recent"]
        assert store.eviction_candidates(1) == ["pinned"]

    def test_compact_fts_reclaims_deleted_entries(self, store):
        if not store.fts_available:
            pytest.skip("SQLite built without FTS5")
        rng = random.Random(3)
        vocab = [f"term{i}" for i in range(2000)]
        for i in range(300):
            store.save(make_memory(id=f"r{i}", content=" ".join(rng.choice(vocab) for _ in range(40))))
        store.save(make_memory(id="keep", content="zebracorn"))
        store.flush()

        for i in range(150):
            store.delete(f"r{i}")
        store.flush()
        after_delete = store.size_bytes()

        store.compact_fts()
        store.flush()
        assert store.size_bytes() < after_delete
        assert [h.id for h in store.search_lexical("zebracorn")] == ["keep"]

    def test_compact_fts_without_fts_is_noop(self, store, monkeypatch):
        monkeypatch.setattr(store, "_fts_available", False)
        store.compact_fts()
        assert store.pending_writes == 0
