"""
MemoryManager: high-level API for saving and retrieving memories.

This is the main entry-point for applications (CLI, MCP server, agent
hooks) that want to persist context across sessions.

Usage example::

    from hybrid_recall import MemoryManager

    with MemoryManager(db_path="./.hybrid-recall/memory.db") as memory:
        memory.save(type="decision", title="Use RRF", content="Rank fusion over score blending")
        for hit in memory.search("rank fusion"):
            print(hit.title, hit.score, hit.match_type)
"""

from __future__ import annotations

import csv
import io
import json
import logging
import uuid
from pathlib import Path
from typing import Any

from .cache import MemoryCache
from .capture import RecentTitles, capture_from_tool_call, redact_private
from .config import Settings, get_settings
from .errors import IndexFormatError
from .hnsw import HNSWIndex
from .search import DEFAULT_LIMIT, DEFAULT_TIMELINE_WINDOW, HybridSearch
from .store import MemoryStore
from .types import (
    EvictionResult,
    Memory,
    MemorySession,
    MemoryStats,
    MemoryType,
    SearchMode,
    SearchResult,
    SessionStatus,
    TimelineEntry,
    now_ms,
)
from .vectorizer import vectorize

logger = logging.getLogger(__name__)

#: The index snapshot is rewritten after this many inserts (and on close).
INDEX_SAVE_THRESHOLD = 100

EXPORT_FORMATS = ("json", "csv")
_CSV_HEADER = ["id", "type", "title", "content", "project", "tags", "created_at", "updated_at"]


class MemoryManager:
    """
    Orchestrates store, index, search and eviction.

    Responsibilities
    ----------------
    * **Write path** – Redacts private spans, persists the record, vectorizes
      ``title + content`` into the HNSW index, snapshots the index every
      :data:`INDEX_SAVE_THRESHOLD` inserts, then enforces the size ceiling.
    * **Read path** – Lexical, vector or hybrid (RRF) search, timelines and
      full-record fetches that keep LRU access times current.
    * **Lifecycle** – Nothing is built in ``__init__``.  :meth:`open` loads
      the store and the index; every public method calls it first, so the
      manager opens lazily on first use.  :meth:`close` flushes the store and
      writes the index snapshot.

    Parameters
    ----------
    settings:
        Source of defaults; the process-wide settings when omitted.
    db_path:
        SQLite database file.  Overrides ``settings``.
    index_path:
        HNSW snapshot file.  Defaults to *db_path* with a ``.hnsw`` suffix.
    max_size_bytes:
        Size ceiling enforced after every write.
    dimensions:
        Vector length used by the vectorizer and the index.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        db_path: str | Path | None = None,
        index_path: str | Path | None = None,
        max_size_bytes: int | None = None,
        dimensions: int | None = None,
    ) -> None:
        settings = settings or get_settings()

        self.db_path = Path(db_path) if db_path is not None else settings.get_db_path()
        if index_path is not None:
            self.index_path = Path(index_path)
        elif db_path is not None:
            self.index_path = self.db_path.with_suffix(".hnsw")
        else:
            self.index_path = settings.get_index_path()
        self.max_size_bytes = max_size_bytes or settings.max_size_bytes
        self.dimensions = dimensions or settings.vector_dimensions

        self._store: MemoryStore | None = None
        self._index: HNSWIndex | None = None
        self._search: HybridSearch | None = None
        self._cache: MemoryCache | None = None
        self._inserts_since_save = 0
        self._recent_titles = RecentTitles()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> None:
        """Open the store and load (or create) the index.  Idempotent."""
        if self._store is not None:
            return

        store = MemoryStore(self.db_path)
        store.open()
        self._store = store
        self._wire(self._load_index())
        logger.info(
            "MemoryManager ready: %d memories, %d indexed vectors", store.count(), len(self._index)
        )

    @property
    def is_open(self) -> bool:
        return self._store is not None

    def close(self) -> None:
        """Flush the store and write the index snapshot."""
        if self._store is None:
            return
        try:
            self._store.close()
            self._save_index()
        finally:
            self._store = None
            self._index = None
            self._search = None
            self._cache = None

    def __enter__(self) -> MemoryManager:
        self.open()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Memories
    # ------------------------------------------------------------------

    def save(
        self,
        type: MemoryType | str,
        title: str,
        content: str,
        tags: list[str] | None = None,
        project: str | None = None,
        session_id: str | None = None,
        summary: str | None = None,
    ) -> Memory:
        """
        Persist a new memory and index it.

        ``<private>…</private>`` spans in the title, summary and content are
        replaced with ``[REDACTED]`` before anything is written.

        Raises
        ------
        ValueError
            If *type* is not a known memory type.
        """
        self.open()
        memory_type = MemoryType(type)
        now = now_ms()
        memory = Memory(
            id=str(uuid.uuid4()),
            type=memory_type,
            title=redact_private(title),
            content=redact_private(content),
            summary=redact_private(summary) if summary else None,
            project=project or "",
            tags=list(tags or []),
            session_id=session_id,
            created_at=now,
            updated_at=now,
            accessed_at=now,
        )

        self._store.save(memory)
        self._index.add(memory.id, vectorize(memory.search_text, self.dimensions))
        self._inserts_since_save += 1
        if self._inserts_since_save >= INDEX_SAVE_THRESHOLD:
            self._save_index()

        self._cache.check_and_evict()
        return memory

    def get(self, memory_id: str) -> Memory | None:
        """Fetch one memory and mark it as accessed."""
        self.open()
        memory = self._store.get(memory_id)
        if memory is not None:
            now = now_ms()
            self._store.touch_accessed(memory_id, now)
            memory.accessed_at = max(memory.accessed_at, now)
        return memory

    def delete(self, memory_id: str) -> bool:
        """Delete a memory from the store and the index."""
        self.open()
        removed = self._store.delete(memory_id)
        self._index.remove(memory_id)
        return removed

    def list_memories(
        self,
        type: MemoryType | str | None = None,
        project: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Memory]:
        self.open()
        return self._store.list_memories(type=type, project=project, limit=limit, offset=offset)

    def count(self) -> int:
        self.open()
        return self._store.count()

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search(
        self,
        query: str,
        mode: SearchMode | str = SearchMode.HYBRID,
        type: MemoryType | str | None = None,
        limit: int = DEFAULT_LIMIT,
        project: str | None = None,
    ) -> list[SearchResult]:
        self.open()
        return self._search.search(query, mode=mode, type=type, limit=limit, project=project)

    def get_timeline(self, memory_id: str, window: int = DEFAULT_TIMELINE_WINDOW) -> list[TimelineEntry]:
        self.open()
        return self._search.timeline(memory_id, window)

    def get_full_details(self, ids: list[str]) -> list[Memory]:
        self.open()
        return self._search.full_details(ids)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def start_session(self, project: str) -> MemorySession:
        self.open()
        session = MemorySession(
            id=str(uuid.uuid4()),
            project=project,
            status=SessionStatus.ACTIVE,
            started_at=now_ms(),
        )
        self._store.create_session(session)
        return session

    def end_session(self, session_id: str, summary: str | None = None) -> bool:
        self.open()
        return self._store.end_session(session_id, summary)

    def get_active_session(self) -> MemorySession | None:
        self.open()
        return self._store.get_active_session()

    def record_tool_call(self, tool_name: str, args: dict[str, Any], result: str) -> Memory | None:
        """
        Count a tool call against the active session and capture it as a
        memory when it is worth remembering.
        """
        self.open()
        active = self._store.get_active_session()
        if active is not None:
            self._store.increment_tool_calls(active.id)

        captured = capture_from_tool_call(tool_name, args, result, self._recent_titles)
        if captured is None:
            return None
        return self.save(
            type=captured.type,
            title=captured.title,
            content=captured.content,
            tags=captured.tags,
            summary=captured.summary,
            project=active.project if active is not None else None,
            session_id=active.id if active is not None else None,
        )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def get_stats(self) -> MemoryStats:
        self.open()
        db_size = self._store.size_bytes()
        memory_count = self._store.count()
        index_size = len(self._index)

        if index_size == memory_count:
            health = "good"
        elif abs(index_size - memory_count) < memory_count * 0.1:
            health = "degraded"
        else:
            health = "needs-rebuild"

        return MemoryStats(
            db_size_bytes=db_size,
            memory_count=memory_count,
            session_count=self._store.session_count(),
            oldest_memory=self._store.oldest_timestamp(),
            newest_memory=self._store.newest_timestamp(),
            max_size_bytes=self.max_size_bytes,
            usage_percent=db_size / self.max_size_bytes * 100.0,
            index_size=index_size,
            index_health=health,
        )

    def cleanup(self, force: bool = False) -> EvictionResult:
        """Run eviction: only when over the ceiling, or unconditionally with *force*."""
        self.open()
        if force:
            return self._cache.force_evict()
        return self._cache.check_and_evict()

    def rebuild_index(self) -> int:
        """Re-vectorize every stored memory into a fresh index.  Returns its size."""
        self.open()
        index = HNSWIndex(self.dimensions)
        for memory in self._store.all_memories():
            index.add(memory.id, vectorize(memory.search_text, self.dimensions))
        self._wire(index)
        self._save_index()
        logger.info("Rebuilt HNSW index with %d vectors", len(index))
        return len(index)

    def export(self, format: str = "json") -> str:
        """Serialize every memory, newest first, as ``json`` or ``csv``."""
        if format not in EXPORT_FORMATS:
            raise ValueError(f"Unsupported export format {format!r}; expected one of {EXPORT_FORMATS}")
        self.open()
        memories = self._store.list_memories(limit=-1)

        if format == "json":
            return json.dumps([m.to_dict() for m in memories], indent=2)

        buf = io.StringIO()
        writer = csv.writer(buf, lineterminator="\n")
        writer.writerow(_CSV_HEADER)
        for m in memories:
            writer.writerow(
                [m.id, m.type.value, m.title, m.content, m.project, ";".join(m.tags), m.created_at, m.updated_at]
            )
        return buf.getvalue()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _wire(self, index: HNSWIndex) -> None:
        self._index = index
        self._search = HybridSearch(self._store, index, self.dimensions)
        self._cache = MemoryCache(self._store, index, self.max_size_bytes)

    def _load_index(self) -> HNSWIndex:
        """Load the snapshot; a missing, corrupt or mis-shaped file yields an empty index."""
        if not self.index_path.exists():
            return HNSWIndex(self.dimensions)

        try:
            index = HNSWIndex.load(self.index_path)
        except (IndexFormatError, OSError) as exc:
            logger.warning("Ignoring unreadable HNSW index %s: %s", self.index_path, exc)
            return HNSWIndex(self.dimensions)

        if index.dimensions != self.dimensions:
            logger.warning(
                "HNSW index %s has %d dimensions, expected %d; starting empty",
                self.index_path,
                index.dimensions,
                self.dimensions,
            )
            return HNSWIndex(self.dimensions)
        return index

    def _save_index(self) -> None:
        self._index.save(self.index_path)
        self._inserts_since_save = 0
