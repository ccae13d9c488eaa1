"""
Command-line interface for hybrid-recall.

Sub-commands
------------
save          – Save a memory (content read from stdin if omitted).
search        – Lexical, vector or hybrid search.
get           – Print full records by ID.
delete        – Delete a memory by its ID.
timeline      – Show the memories saved around one memory.
list          – List memories, newest first.
stats         – Storage and index statistics.
cleanup       – Run LRU eviction.
export        – Dump every memory as JSON or CSV.
rebuild-index – Re-vectorize every memory into a fresh index.
session-start – Open a session for a project.
session-end   – Complete a session.
"""

from __future__ import annotations

import argparse
import json
import sys
from datetime import datetime

from .config import get_settings
from .log import setup_logging
from .memory import EXPORT_FORMATS, MemoryManager
from .types import MemoryType, SearchMode

_TYPE_CHOICES = [t.value for t in MemoryType]
_MODE_CHOICES = [m.value for m in SearchMode]


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hybrid-recall",
        description="Local hybrid (BM25 + HNSW) memory for LLM sessions.",
    )
    parser.add_argument(
        "--db",
        default=None,
        metavar="PATH",
        help="SQLite database file (default: $HYBRID_RECALL_DB_PATH or ./.hybrid-recall/memory.db).",
    )
    parser.add_argument(
        "--index",
        default=None,
        metavar="PATH",
        help="HNSW index snapshot (default: the database path with a .hnsw suffix).",
    )
    parser.add_argument(
        "--max-size",
        type=int,
        default=None,
        metavar="BYTES",
        help="Size ceiling enforced by eviction (default: 500 MiB).",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        metavar="LEVEL",
        help="Logging level for stderr diagnostics (default: WARNING).",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    # save
    p_save = sub.add_parser("save", help="Save a memory.")
    p_save.add_argument("title", help="Short title.")
    p_save.add_argument("content", nargs="?", help="Memory body (reads stdin if omitted).")
    p_save.add_argument("--type", default=MemoryType.OBSERVATION.value, choices=_TYPE_CHOICES)
    p_save.add_argument("--tags", default="", help="Comma-separated tags.")
    p_save.add_argument("--project", default=None)
    p_save.add_argument("--summary", default=None)
    p_save.add_argument("--session", default=None, help="Session ID to attach the memory to.")
    p_save.add_argument("--json", action="store_true", dest="as_json", help="Output as JSON.")

    # search
    p_search = sub.add_parser("search", help="Search memories.")
    p_search.add_argument("query", help="Free-text query.")
    p_search.add_argument("--mode", default=SearchMode.HYBRID.value, choices=_MODE_CHOICES + ["bm25"])
    p_search.add_argument("--type", default=None, choices=_TYPE_CHOICES)
    p_search.add_argument("--project", default=None)
    p_search.add_argument(
        "-n",
        "--limit",
        type=int,
        default=20,
        metavar="N",
        help="Number of results to return (default: 20).",
    )
    p_search.add_argument("--json", action="store_true", dest="as_json", help="Output as JSON.")

    # get
    p_get = sub.add_parser("get", help="Print full memories by ID.")
    p_get.add_argument("ids", nargs="+", help="Memory IDs.")
    p_get.add_argument("--json", action="store_true", dest="as_json", help="Output as JSON.")

    # delete
    p_delete = sub.add_parser("delete", help="Delete a memory by ID.")
    p_delete.add_argument("id", help="Memory ID to delete.")

    # timeline
    p_timeline = sub.add_parser("timeline", help="Show memories saved around one memory.")
    p_timeline.add_argument("id", help="Anchor memory ID.")
    p_timeline.add_argument("--window", type=int, default=5, metavar="N")
    p_timeline.add_argument("--json", action="store_true", dest="as_json", help="Output as JSON.")

    # list
    p_list = sub.add_parser("list", help="List stored memories.")
    p_list.add_argument("--type", default=None, choices=_TYPE_CHOICES)
    p_list.add_argument("--project", default=None)
    p_list.add_argument(
        "--limit",
        type=int,
        default=100,
        metavar="N",
        help="Maximum number of memories to show (default: 100).",
    )
    p_list.add_argument("--json", action="store_true", dest="as_json", help="Output as JSON.")

    # stats
    p_stats = sub.add_parser("stats", help="Storage and index statistics.")
    p_stats.add_argument("--json", action="store_true", dest="as_json", help="Output as JSON.")

    # cleanup
    p_cleanup = sub.add_parser("cleanup", help="Run LRU eviction.")
    p_cleanup.add_argument(
        "--force",
        action="store_true",
        help="Evict at least one batch even when under the size limit.",
    )

    # export
    p_export = sub.add_parser("export", help="Export every memory.")
    p_export.add_argument("--format", default="json", choices=list(EXPORT_FORMATS))

    # rebuild-index
    sub.add_parser("rebuild-index", help="Rebuild the vector index from stored memories.")

    # session-start / session-end
    p_start = sub.add_parser("session-start", help="Start a session.")
    p_start.add_argument("project", help="Project the session belongs to.")

    p_end = sub.add_parser("session-end", help="Complete a session.")
    p_end.add_argument("id", help="Session ID.")
    p_end.add_argument("--summary", default=None)

    return parser


def _fmt_ts(ms: int | None) -> str:
    if ms is None:
        return "-"
    return datetime.fromtimestamp(ms / 1000).strftime("%Y-%m-%d %H:%M:%S")


def _run(manager: MemoryManager, args: argparse.Namespace) -> int:
    if args.command == "save":
        content = args.content
        if content is None:
            content = sys.stdin.read()
        if not content.strip():
            print("Error: no content provided.", file=sys.stderr)
            return 1
        tags = [t.strip() for t in args.tags.split(",") if t.strip()]
        memory = manager.save(
            type=args.type,
            title=args.title,
            content=content,
            tags=tags,
            project=args.project,
            session_id=args.session,
            summary=args.summary,
        )
        if args.as_json:
            print(json.dumps(memory.to_dict(), indent=2))
        else:
            print(f"Saved memory {memory.id}.")

    elif args.command == "search":
        results = manager.search(
            args.query, mode=args.mode, type=args.type, limit=args.limit, project=args.project
        )
        if args.as_json:
            print(json.dumps([r.to_dict() for r in results], indent=2))
            return 0
        if not results:
            print("No memories found.")
            return 0
        for i, r in enumerate(results, 1):
            print(f"[{i}] {r.title}")
            print(f"    type={r.type.value} score={r.score:.4f} match={r.match_type.value}")
            print(f"    id={r.id}")
            print()

    elif args.command == "get":
        memories = manager.get_full_details(args.ids)
        if not memories:
            print("No memories found.", file=sys.stderr)
            return 1
        if args.as_json:
            print(json.dumps([m.to_dict() for m in memories], indent=2))
        else:
            for m in memories:
                print(f"id={m.id} type={m.type.value} created={_fmt_ts(m.created_at)}")
                print(f"    {m.title}")
                print(f"    {m.content}")
                print()

    elif args.command == "delete":
        if not manager.delete(args.id):
            print(f"Error: memory {args.id} not found.", file=sys.stderr)
            return 1
        print(f"Deleted memory {args.id}.")

    elif args.command == "timeline":
        entries = manager.get_timeline(args.id, window=args.window)
        if not entries:
            print(f"Error: memory {args.id} not found.", file=sys.stderr)
            return 1
        if args.as_json:
            print(json.dumps([e.to_dict() for e in entries], indent=2))
        else:
            for e in entries:
                marker = ">>" if e.position == "anchor" else "  "
                print(f"{marker} {_fmt_ts(e.created_at)} [{e.type.value}] {e.title} ({e.id})")

    elif args.command == "list":
        memories = manager.list_memories(type=args.type, project=args.project, limit=args.limit)
        if args.as_json:
            print(json.dumps([m.to_dict() for m in memories], indent=2))
            return 0
        if not memories:
            print("No memories stored.")
            return 0
        for m in memories:
            print(f"id={m.id} type={m.type.value} created={_fmt_ts(m.created_at)}")
            print(f"    {m.title}")
            print()

    elif args.command == "stats":
        stats = manager.get_stats()
        if args.as_json:
            print(json.dumps(stats.to_dict(), indent=2))
        else:
            print(f"Memories:      {stats.memory_count}")
            print(f"Sessions:      {stats.session_count}")
            print(f"Database size: {stats.db_size_bytes} bytes ({stats.usage_percent:.1f}% of limit)")
            print(f"Index size:    {stats.index_size} ({stats.index_health})")
            print(f"Oldest:        {_fmt_ts(stats.oldest_memory)}")
            print(f"Newest:        {_fmt_ts(stats.newest_memory)}")

    elif args.command == "cleanup":
        result = manager.cleanup(force=args.force)
        print(f"Evicted {result.evicted_count} memories, freed {result.freed_bytes} bytes.")

    elif args.command == "export":
        sys.stdout.write(manager.export(args.format))
        if args.format == "json":
            sys.stdout.write("\n")

    elif args.command == "rebuild-index":
        n = manager.rebuild_index()
        print(f"Rebuilt index with {n} vectors.")

    elif args.command == "session-start":
        session = manager.start_session(args.project)
        print(session.id)

    elif args.command == "session-end":
        if not manager.end_session(args.id, summary=args.summary):
            print(f"Error: session {args.id} not found.", file=sys.stderr)
            return 1
        print(f"Ended session {args.id}.")

    return 0


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    settings = get_settings()
    setup_logging(args.log_level or settings.log_level)

    try:
        with MemoryManager(
            settings,
            db_path=args.db,
            index_path=args.index,
            max_size_bytes=args.max_size,
        ) as manager:
            return _run(manager, args)
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
