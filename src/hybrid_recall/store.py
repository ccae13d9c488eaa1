"""
SQLite storage layer for memories and sessions.

Records live in a plain ``memories`` table; an external-content FTS5 table
mirrors title, summary and content through triggers and provides BM25
ranking.  When the SQLite build lacks FTS5 (or a query trips it up), lexical
search degrades to a LIKE scan instead of failing.

Writes are buffered in an open transaction and committed every
``flush_threshold`` mutations, on :meth:`MemoryStore.flush` and on
:meth:`MemoryStore.close`.  A crash loses at most the uncommitted tail.
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
from pathlib import Path
from typing import NamedTuple

from .errors import StoreNotInitializedError
from .types import Memory, MemorySession, MemoryType, SessionStatus, now_ms

logger = logging.getLogger(__name__)

AUTO_FLUSH_THRESHOLD = 50

_TERM_RE = re.compile(r"\w+")

_MEMORY_COLUMNS = (
    "id, type, title, summary, content, project, tags, session_id, "
    "created_at, updated_at, accessed_at"
)
_SESSION_COLUMNS = "id, project, status, started_at, ended_at, summary, tool_calls"

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS memories (
    id          TEXT PRIMARY KEY,
    type        TEXT NOT NULL,
    title       TEXT NOT NULL,
    summary     TEXT,
    content     TEXT NOT NULL,
    project     TEXT NOT NULL DEFAULT '',
    tags        TEXT NOT NULL DEFAULT '[]',
    session_id  TEXT,
    created_at  INTEGER NOT NULL,
    updated_at  INTEGER NOT NULL,
    accessed_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS sessions (
    id          TEXT PRIMARY KEY,
    project     TEXT NOT NULL DEFAULT '',
    status      TEXT NOT NULL DEFAULT 'active',
    started_at  INTEGER NOT NULL,
    ended_at    INTEGER,
    summary     TEXT,
    tool_calls  INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_memories_type ON memories(type);
CREATE INDEX IF NOT EXISTS idx_memories_created ON memories(created_at);
CREATE INDEX IF NOT EXISTS idx_memories_accessed ON memories(accessed_at);
CREATE INDEX IF NOT EXISTS idx_memories_session ON memories(session_id);
"""

_FTS5_SCHEMA_SQL = """
CREATE VIRTUAL TABLE IF NOT EXISTS memory_fts USING fts5(
    title, summary, content,
    content='memories',
    content_rowid='rowid'
);

CREATE TRIGGER IF NOT EXISTS memory_fts_ai AFTER INSERT ON memories BEGIN
    INSERT INTO memory_fts(rowid, title, summary, content)
        VALUES (new.rowid, new.title, new.summary, new.content);
END;

CREATE TRIGGER IF NOT EXISTS memory_fts_ad AFTER DELETE ON memories BEGIN
    INSERT INTO memory_fts(memory_fts, rowid, title, summary, content)
        VALUES ('delete', old.rowid, old.title, old.summary, old.content);
END;

CREATE TRIGGER IF NOT EXISTS memory_fts_au AFTER UPDATE ON memories BEGIN
    INSERT INTO memory_fts(memory_fts, rowid, title, summary, content)
        VALUES ('delete', old.rowid, old.title, old.summary, old.content);
    INSERT INTO memory_fts(rowid, title, summary, content)
        VALUES (new.rowid, new.title, new.summary, new.content);
END;
"""


class LexicalHit(NamedTuple):
    id: str
    score: float


class MemoryStore:
    """
    Durable CRUD for :class:`Memory` and :class:`MemorySession` records.

    The store has an explicit two-phase lifecycle: construct it, then call
    :meth:`open`.  Every other method raises :class:`StoreNotInitializedError`
    until then (and again after :meth:`close`).

    Parameters
    ----------
    db_path:
        SQLite database file, or ``":memory:"``.
    flush_threshold:
        Number of mutating operations buffered before an automatic commit.
    """

    def __init__(self, db_path: str | Path, flush_threshold: int = AUTO_FLUSH_THRESHOLD) -> None:
        self.db_path = str(db_path)
        self.flush_threshold = max(1, flush_threshold)
        self._conn: sqlite3.Connection | None = None
        self._fts_available = False
        self._pending_writes = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> None:
        """Create or load the database.  Safe to call more than once."""
        if self._conn is not None:
            return

        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.executescript(_SCHEMA_SQL)
        self._fts_available = self._init_fts5(conn)
        conn.commit()

        self._conn = conn
        self._pending_writes = 0
        logger.info(
            "MemoryStore opened: %s (fts5=%s)", self.db_path, "yes" if self._fts_available else "no"
        )

    @staticmethod
    def _init_fts5(conn: sqlite3.Connection) -> bool:
        try:
            conn.executescript(_FTS5_SCHEMA_SQL)
        except sqlite3.OperationalError as exc:
            # Typically "no such module: fts5".
            logger.info("FTS5 not available, lexical search falls back to LIKE: %s", exc)
            return False
        return True

    def flush(self) -> None:
        """Commit buffered writes to the database file."""
        conn = self._require()
        conn.commit()
        self._pending_writes = 0

    def close(self) -> None:
        if self._conn is None:
            return
        self._conn.commit()
        self._conn.close()
        self._conn = None
        self._pending_writes = 0

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    @property
    def fts_available(self) -> bool:
        return self._fts_available

    @property
    def pending_writes(self) -> int:
        return self._pending_writes

    def __enter__(self) -> MemoryStore:
        self.open()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Memory write operations
    # ------------------------------------------------------------------

    def save(self, memory: Memory) -> None:
        """Insert *memory*, or overwrite every field of the record with its id."""
        conn = self._require()
        conn.execute(
            f"""
            INSERT INTO memories ({_MEMORY_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                type = excluded.type,
                title = excluded.title,
                summary = excluded.summary,
                content = excluded.content,
                project = excluded.project,
                tags = excluded.tags,
                session_id = excluded.session_id,
                created_at = excluded.created_at,
                updated_at = excluded.updated_at,
                accessed_at = excluded.accessed_at
            """,
            (
                memory.id,
                MemoryType(memory.type).value,
                memory.title,
                memory.summary,
                memory.content,
                memory.project,
                json.dumps(list(memory.tags)),
                memory.session_id,
                memory.created_at,
                memory.updated_at,
                memory.accessed_at,
            ),
        )
        self._track_write()

    def delete(self, memory_id: str) -> bool:
        """Delete a memory.  Returns ``True`` when a record was removed."""
        conn = self._require()
        cur = conn.execute("DELETE FROM memories WHERE id = ?", (memory_id,))
        self._track_write()
        return cur.rowcount > 0

    def touch_accessed(self, memory_id: str, now: int | None = None) -> bool:
        """Bump ``accessed_at`` only; it never moves backwards."""
        conn = self._require()
        cur = conn.execute(
            "UPDATE memories SET accessed_at = MAX(accessed_at, ?) WHERE id = ?",
            (now if now is not None else now_ms(), memory_id),
        )
        self._track_write()
        return cur.rowcount > 0

    # ------------------------------------------------------------------
    # Memory read operations
    # ------------------------------------------------------------------

    def get(self, memory_id: str) -> Memory | None:
        row = self._require().execute(
            f"SELECT {_MEMORY_COLUMNS} FROM memories WHERE id = ?", (memory_id,)
        ).fetchone()
        return _row_to_memory(row) if row is not None else None

    def list_memories(
        self,
        type: MemoryType | str | None = None,
        project: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Memory]:
        """Return memories newest first, optionally filtered by type and project."""
        where, params = _filters(type, project)
        rows = self._require().execute(
            f"SELECT {_MEMORY_COLUMNS} FROM memories {where} "
            "ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
            (*params, limit, max(0, offset)),
        ).fetchall()
        return [_row_to_memory(r) for r in rows]

    def all_memories(self) -> list[Memory]:
        """Every stored memory in creation order."""
        rows = self._require().execute(
            f"SELECT {_MEMORY_COLUMNS} FROM memories ORDER BY created_at ASC, rowid ASC"
        ).fetchall()
        return [_row_to_memory(r) for r in rows]

    def count(self) -> int:
        return int(self._require().execute("SELECT COUNT(*) FROM memories").fetchone()[0])

    # ------------------------------------------------------------------
    # Lexical search
    # ------------------------------------------------------------------

    def search_lexical(
        self,
        query: str,
        limit: int = 20,
        type: MemoryType | str | None = None,
        project: str | None = None,
    ) -> list[LexicalHit]:
        """
        Rank memories against *query* by BM25 over title, summary and content.

        Scores are non-negative, higher is better.  Falls back to a
        substring match ranked ``1 / position`` when FTS5 is missing or the
        query cannot be run through it.
        """
        conn = self._require()
        terms = _query_terms(query)
        if not terms or limit <= 0:
            return []

        if self._fts_available:
            try:
                return self._search_fts5(conn, terms, limit, type, project)
            except sqlite3.OperationalError as exc:
                logger.warning("FTS5 query failed, falling back to LIKE: %s", exc)

        return self._search_like(conn, terms, limit, type, project)

    @staticmethod
    def _search_fts5(
        conn: sqlite3.Connection,
        terms: list[str],
        limit: int,
        type: MemoryType | str | None,
        project: str | None,
    ) -> list[LexicalHit]:
        match = " ".join('"' + t.replace('"', '""') + '"' for t in terms)
        sql = (
            "SELECT m.id AS id, bm25(memory_fts) AS score "
            "FROM memory_fts JOIN memories m ON m.rowid = memory_fts.rowid "
            "WHERE memory_fts MATCH ?"
        )
        params: list[object] = [match]
        if type is not None:
            sql += " AND m.type = ?"
            params.append(MemoryType(type).value)
        if project is not None:
            sql += " AND m.project = ?"
            params.append(project)
        sql += " ORDER BY score LIMIT ?"
        params.append(limit)

        # bm25() is negative, more negative meaning more relevant.
        return [
            LexicalHit(row["id"], max(0.0, -float(row["score"])))
            for row in conn.execute(sql, params).fetchall()
        ]

    @staticmethod
    def _search_like(
        conn: sqlite3.Connection,
        terms: list[str],
        limit: int,
        type: MemoryType | str | None,
        project: str | None,
    ) -> list[LexicalHit]:
        terms = [t for t in terms if len(t) > 1]
        if not terms:
            return []

        clauses = []
        params: list[object] = []
        for term in terms:
            pattern = "%" + term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_") + "%"
            clauses.append(
                "(LOWER(title) LIKE ? ESCAPE '\\' OR LOWER(content) LIKE ? ESCAPE '\\')"
            )
            params.extend([pattern, pattern])

        sql = f"SELECT id FROM memories WHERE ({' OR '.join(clauses)})"
        if type is not None:
            sql += " AND type = ?"
            params.append(MemoryType(type).value)
        if project is not None:
            sql += " AND project = ?"
            params.append(project)
        sql += " ORDER BY rowid LIMIT ?"
        params.append(limit)

        rows = conn.execute(sql, params).fetchall()
        return [LexicalHit(row["id"], 1.0 / (i + 1)) for i, row in enumerate(rows)]

    # ------------------------------------------------------------------
    # Timeline
    # ------------------------------------------------------------------

    def timeline_around(self, memory_id: str, window: int) -> list[Memory]:
        """
        Up to ``2 * window + 1`` memories in creation order centred on
        *memory_id*: the anchor, ``window`` older and ``window`` newer records.
        Equal timestamps are ordered by insertion.
        """
        conn = self._require()
        anchor = conn.execute(
            "SELECT rowid, created_at FROM memories WHERE id = ?", (memory_id,)
        ).fetchone()
        if anchor is None:
            return []

        window = max(0, window)
        anchor_rowid, anchor_ts = anchor[0], anchor[1]

        older = conn.execute(
            f"SELECT {_MEMORY_COLUMNS} FROM memories "
            "WHERE created_at < ? OR (created_at = ? AND rowid <= ?) "
            "ORDER BY created_at DESC, rowid DESC LIMIT ?",
            (anchor_ts, anchor_ts, anchor_rowid, window + 1),
        ).fetchall()
        newer = conn.execute(
            f"SELECT {_MEMORY_COLUMNS} FROM memories "
            "WHERE created_at > ? OR (created_at = ? AND rowid > ?) "
            "ORDER BY created_at ASC, rowid ASC LIMIT ?",
            (anchor_ts, anchor_ts, anchor_rowid, window),
        ).fetchall()

        return [_row_to_memory(r) for r in reversed(older)] + [_row_to_memory(r) for r in newer]

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, session: MemorySession) -> None:
        conn = self._require()
        conn.execute(
            f"INSERT INTO sessions ({_SESSION_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                session.id,
                session.project,
                SessionStatus(session.status).value,
                session.started_at,
                session.ended_at,
                session.summary,
                session.tool_calls,
            ),
        )
        self._track_write()

    def end_session(self, session_id: str, summary: str | None = None, now: int | None = None) -> bool:
        conn = self._require()
        cur = conn.execute(
            "UPDATE sessions SET status = ?, ended_at = ?, summary = ? WHERE id = ?",
            (SessionStatus.COMPLETED.value, now if now is not None else now_ms(), summary, session_id),
        )
        self._track_write()
        return cur.rowcount > 0

    def get_session(self, session_id: str) -> MemorySession | None:
        row = self._require().execute(
            f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE id = ?", (session_id,)
        ).fetchone()
        return _row_to_session(row) if row is not None else None

    def get_active_session(self) -> MemorySession | None:
        """The most recently started session still marked active."""
        row = self._require().execute(
            f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE status = ? "
            "ORDER BY started_at DESC, rowid DESC LIMIT 1",
            (SessionStatus.ACTIVE.value,),
        ).fetchone()
        return _row_to_session(row) if row is not None else None

    def increment_tool_calls(self, session_id: str) -> None:
        conn = self._require()
        conn.execute("UPDATE sessions SET tool_calls = tool_calls + 1 WHERE id = ?", (session_id,))
        self._track_write()

    def session_count(self) -> int:
        return int(self._require().execute("SELECT COUNT(*) FROM sessions").fetchone()[0])

    # ------------------------------------------------------------------
    # Aggregates for stats and eviction
    # ------------------------------------------------------------------

    def size_bytes(self) -> int:
        """Bytes occupied by live database pages (free-list pages excluded)."""
        conn = self._require()
        page_size = conn.execute("PRAGMA page_size").fetchone()[0]
        page_count = conn.execute("PRAGMA page_count").fetchone()[0]
        free_pages = conn.execute("PRAGMA freelist_count").fetchone()[0]
        return int((page_count - free_pages) * page_size)

    def compact_fts(self) -> None:
        """
        Merge the full-text index into a single segment.

        Deletes from an external-content FTS5 table only append delete
        markers, so the index keeps its pages until it is merged.  No-op
        without FTS5.
        """
        conn = self._require()
        if not self._fts_available:
            return
        conn.execute("INSERT INTO memory_fts(memory_fts) VALUES('optimize')")
        self._track_write()

    def oldest_timestamp(self) -> int | None:
        value = self._require().execute("SELECT MIN(created_at) FROM memories").fetchone()[0]
        return None if value is None else int(value)

    def newest_timestamp(self) -> int | None:
        value = self._require().execute("SELECT MAX(created_at) FROM memories").fetchone()[0]
        return None if value is None else int(value)

    def eviction_candidates(self, batch_size: int, active_session_id: str | None = None) -> list[str]:
        """
        Ids of evictable memories, least recently accessed first.

        ``decision`` memories and memories of the active session are never
        returned.
        """
        sql = "SELECT id FROM memories WHERE type != ?"
        params: list[object] = [MemoryType.DECISION.value]
        if active_session_id:
            sql += " AND (session_id IS NULL OR session_id != ?)"
            params.append(active_session_id)
        sql += " ORDER BY accessed_at ASC, created_at ASC, rowid ASC LIMIT ?"
        params.append(batch_size)
        return [row["id"] for row in self._require().execute(sql, params).fetchall()]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StoreNotInitializedError()
        return self._conn

    def _track_write(self) -> None:
        self._pending_writes += 1
        if self._pending_writes >= self.flush_threshold:
            self.flush()


def _query_terms(query: str) -> list[str]:
    return _TERM_RE.findall(query.lower())


def _filters(type: MemoryType | str | None, project: str | None) -> tuple[str, list[object]]:
    clauses: list[str] = []
    params: list[object] = []
    if type is not None:
        clauses.append("type = ?")
        params.append(MemoryType(type).value)
    if project is not None:
        clauses.append("project = ?")
        params.append(project)
    return ("WHERE " + " AND ".join(clauses) if clauses else ""), params


def _row_to_memory(row: sqlite3.Row) -> Memory:
    return Memory(
        id=row["id"],
        type=MemoryType(row["type"]),
        title=row["title"],
        summary=row["summary"],
        content=row["content"],
        project=row["project"] or "",
        tags=json.loads(row["tags"] or "[]"),
        session_id=row["session_id"] or None,
        created_at=int(row["created_at"]),
        updated_at=int(row["updated_at"]),
        accessed_at=int(row["accessed_at"]),
    )


def _row_to_session(row: sqlite3.Row) -> MemorySession:
    return MemorySession(
        id=row["id"],
        project=row["project"] or "",
        status=SessionStatus(row["status"]),
        started_at=int(row["started_at"]),
        ended_at=None if row["ended_at"] is None else int(row["ended_at"]),
        summary=row["summary"],
        tool_calls=int(row["tool_calls"]),
    )
