"""
MCP (Model Context Protocol) server for hybrid-recall.

Exposes the MemoryManager as a set of tools so that an agent can persist
and retrieve memories across sessions and compactions.  Retrieval is
progressive: ``memory_search`` returns compact hits, ``memory_timeline``
shows what happened around one of them and ``memory_get`` fetches full
records.

Run as a stdio server:
    python -m hybrid_recall.mcp_server

Or via the installed entry-point:
    hybrid-recall-mcp

Configuration comes from ``HYBRID_RECALL_*`` environment variables (see
:class:`hybrid_recall.config.Settings`).
"""

from __future__ import annotations

import json

from mcp.server.fastmcp import FastMCP

from .config import get_settings
from .log import setup_logging
from .memory import MemoryManager

# Lazy-initialised singleton so the database and index are only loaded once.
_manager: MemoryManager | None = None


def _get_manager() -> MemoryManager:
    global _manager
    if _manager is None:
        _manager = MemoryManager(get_settings())
    return _manager


# ---------------------------------------------------------------------------
# FastMCP server
# ---------------------------------------------------------------------------

mcp = FastMCP(
    "hybrid-recall",
    instructions=(
        "Long-term local memory combining keyword (BM25) and vector search. "
        "Use `memory_save` to record bugfixes, features, decisions and discoveries. "
        "Use `memory_search` first, then `memory_timeline` for context around a hit "
        "and `memory_get` only for the records you actually need. "
        "Call `memory_session_start` at the beginning of work on a project and "
        "`memory_session_end` when done; memories of the active session are never evicted."
    ),
)


@mcp.tool()
def memory_save(
    type: str,
    title: str,
    content: str,
    tags: list[str] | None = None,
    project: str | None = None,
    summary: str | None = None,
) -> str:
    """
    Save a memory.

    ``<private>...</private>`` spans are redacted before storage.

    Args:
        type:    One of bugfix, feature, refactor, decision, discovery,
                 change, observation.  Decisions are never evicted.
        title:   Short title shown in search results.
        content: Full text of the memory.
        tags:    Optional labels.
        project: Project name; defaults to the active session's project.
        summary: Optional short summary (also searchable).

    Returns:
        JSON object with the new memory's id.
    """
    manager = _get_manager()
    active = manager.get_active_session()
    memory = manager.save(
        type=type,
        title=title,
        content=content,
        tags=tags,
        project=project if project is not None else (active.project if active else None),
        session_id=active.id if active else None,
        summary=summary,
    )
    return json.dumps({"id": memory.id, "title": memory.title, "type": memory.type.value})


@mcp.tool()
def memory_search(
    query: str,
    mode: str = "hybrid",
    type: str | None = None,
    limit: int = 20,
    project: str | None = None,
) -> str:
    """
    Search memories and return compact hits (id, title, type, score, match_type).

    Args:
        query:   Free-text query.
        mode:    "hybrid" (default, rank fusion of both), "lexical" or "vector".
        type:    Optional memory type filter.
        limit:   Maximum number of hits (default 20).
        project: Optional project filter.

    Returns:
        JSON array of hits, best first.
    """
    results = _get_manager().search(query, mode=mode, type=type, limit=limit, project=project)
    if not results:
        return "No memories found."
    return json.dumps([r.to_dict() for r in results], indent=2)


@mcp.tool()
def memory_timeline(memory_id: str, window: int = 5) -> str:
    """
    Show memories saved just before and after *memory_id*.

    Args:
        memory_id: Anchor memory.
        window:    Number of memories on each side (default 5).

    Returns:
        JSON array in chronological order; the anchor has position "anchor".
    """
    entries = _get_manager().get_timeline(memory_id, window=window)
    if not entries:
        return f"Memory {memory_id} not found."
    return json.dumps([e.to_dict() for e in entries], indent=2)


@mcp.tool()
def memory_get(ids: list[str]) -> str:
    """
    Fetch the full records for the given memory IDs.

    Returns:
        JSON array of memories; unknown IDs are skipped.
    """
    memories = _get_manager().get_full_details(ids)
    if not memories:
        return "No memories found."
    return json.dumps([m.to_dict() for m in memories], indent=2)


@mcp.tool()
def memory_delete(memory_id: str) -> str:
    """Delete a stored memory by its ID."""
    if _get_manager().delete(memory_id):
        return f"Deleted memory {memory_id}."
    return f"Memory {memory_id} not found."


@mcp.tool()
def memory_stats() -> str:
    """Return storage size, memory and session counts and index health as JSON."""
    return json.dumps(_get_manager().get_stats().to_dict(), indent=2)


@mcp.tool()
def memory_cleanup(force: bool = False) -> str:
    """
    Run LRU eviction.

    Args:
        force: Evict at least one batch even when under the size limit.
    """
    result = _get_manager().cleanup(force=force)
    return json.dumps(result.to_dict())


@mcp.tool()
def memory_session_start(project: str) -> str:
    """Start a session for *project*; returns the session as JSON."""
    session = _get_manager().start_session(project)
    return json.dumps(session.to_dict())


@mcp.tool()
def memory_session_end(session_id: str, summary: str | None = None) -> str:
    """Mark a session completed, optionally recording a summary."""
    if _get_manager().end_session(session_id, summary=summary):
        return f"Ended session {session_id}."
    return f"Session {session_id} not found."


# ---------------------------------------------------------------------------
# Entry-point
# ---------------------------------------------------------------------------


def main() -> None:
    """Run the MCP server over stdio."""
    setup_logging(get_settings().log_level)
    try:
        mcp.run(transport="stdio")
    finally:
        if _manager is not None:
            _manager.close()


if __name__ == "__main__":
    main()
