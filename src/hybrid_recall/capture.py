"""
Capture layer: turns raw agent output into memory records.

These utilities sit in front of the memory manager's write path to provide:
  - Keyword classification of text into a :class:`MemoryType`
  - Title and summary extraction
  - Splitting of long agent transcripts into capturable chunks
  - Redaction of ``<private>…</private>`` spans
  - Write-side de-duplication of tool-call captures
"""

from __future__ import annotations

import json
import re
from collections import deque
from dataclasses import dataclass, field
from typing import Any

from .types import MemoryType

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

#: Placeholder written in place of every private span.
REDACTED_PLACEHOLDER = "[REDACTED]"

#: Chunks shorter than this many characters are not worth remembering.
MIN_CHUNK_LENGTH = 50

#: Content shorter than this is used verbatim as its own summary.
SUMMARY_FULL_TEXT_LIMIT = 500

#: Number of recent titles remembered for de-duplication.
DEDUP_BUFFER_SIZE = 50

_PRIVATE_RE = re.compile(r"<private>.*?</private>", re.DOTALL)
_CHUNK_SPLIT_RE = re.compile(r"(?:\n---\n|\n\n\n+|\n#{1,3}\s)")

_CLASSIFICATION_RULES: list[tuple[re.Pattern[str], MemoryType]] = [
    (re.compile(r"\b(fix|bug|error|crash|failure|broken|patch)\b", re.I), MemoryType.BUGFIX),
    (re.compile(r"\b(add|new|feature|create|implement|introduce)\b", re.I), MemoryType.FEATURE),
    (re.compile(r"\b(refactor|restructure|reorganize|cleanup|simplify)\b", re.I), MemoryType.REFACTOR),
    (re.compile(r"\b(decide|chose|decision|pick|select|prefer)\b", re.I), MemoryType.DECISION),
    (re.compile(r"\b(found|discover|learn|realize|notice|insight)\b", re.I), MemoryType.DISCOVERY),
    (re.compile(r"\b(change|update|modify|adjust|tweak|alter)\b", re.I), MemoryType.CHANGE),
]

_SUMMARY_CLUES: list[tuple[str, re.Pattern[str]]] = [
    ("decision", re.compile(r"\b(decide|chose|decision|recommend|should)\b", re.I)),
    ("pattern", re.compile(r"\b(pattern|approach|technique|method|solution)\b", re.I)),
    ("gotcha", re.compile(r"\b(gotcha|caveat|watch out|be careful|note that|important)\b", re.I)),
    ("error", re.compile(r"\b(error|fail|bug|issue|problem|crash)\b", re.I)),
]

#: Read-only or meta tools whose calls are never captured.  The save tool is
#: here too, otherwise saving would capture itself.
SKIP_CAPTURE_TOOLS: frozenset[str] = frozenset(
    {
        "memory_search",
        "memory_timeline",
        "memory_get",
        "memory_save",
        "memory_stats",
        "memory_cleanup",
    }
)


@dataclass
class CapturedMemory:
    type: MemoryType
    title: str
    content: str
    summary: str | None = None
    tags: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Privacy
# ---------------------------------------------------------------------------


def redact_private(text: str) -> str:
    """Replace every ``<private>…</private>`` span (across lines) with the placeholder."""
    return _PRIVATE_RE.sub(REDACTED_PLACEHOLDER, text)


# ---------------------------------------------------------------------------
# Classification and extraction
# ---------------------------------------------------------------------------


def classify_memory(text: str) -> MemoryType:
    """First matching keyword rule wins; ``observation`` otherwise."""
    for pattern, memory_type in _CLASSIFICATION_RULES:
        if pattern.search(text):
            return memory_type
    return MemoryType.OBSERVATION


def extract_title(text: str, max_length: int = 80) -> str:
    """
    First non-blank line of *text* with markdown markers stripped, truncated
    to *max_length* characters (with a trailing ``...``).
    """
    lines = [line for line in text.split("\n") if line.strip()]
    first = lines[0] if lines else "Untitled"
    cleaned = re.sub(r"^[#*\->\s]+", "", first).replace("`", "").strip()
    if len(cleaned) <= max_length:
        return cleaned
    return cleaned[: max_length - 3] + "..."


def extract_summary(text: str) -> str:
    """
    Short summary for search relevance.

    Short texts are their own summary.  Longer texts are condensed to their
    first three lines, their last line and a bracketed list of context clues
    (decision, pattern, gotcha, error), capped at 500 characters.
    """
    if len(text) < SUMMARY_FULL_TEXT_LIMIT:
        return text.strip() or text[:SUMMARY_FULL_TEXT_LIMIT]

    lines = [line for line in text.split("\n") if line.strip()]
    head = " ".join(lines[:3]).strip()
    last = lines[-1].strip() if lines else ""

    clues = [name for name, pattern in _SUMMARY_CLUES if pattern.search(text)]
    parts = [head]
    if last and last != head:
        parts.append(f"... {last}")
    if clues:
        parts.append(f"[{', '.join(clues)}]")

    summary = " ".join(p for p in parts if p)[:SUMMARY_FULL_TEXT_LIMIT]
    return summary or text[:SUMMARY_FULL_TEXT_LIMIT]


# ---------------------------------------------------------------------------
# Chunking
# ---------------------------------------------------------------------------


def split_into_chunks(output: str) -> list[str]:
    """
    Split agent output on ``---`` rules, runs of blank lines and markdown
    headings, dropping fragments of :data:`MIN_CHUNK_LENGTH` characters or
    fewer.
    """
    chunks = [c.strip() for c in _CHUNK_SPLIT_RE.split(output)]
    chunks = [c for c in chunks if len(c) > MIN_CHUNK_LENGTH]
    if not chunks and len(output.strip()) > MIN_CHUNK_LENGTH:
        return [output.strip()]
    return chunks


def capture_from_output(output: str) -> list[CapturedMemory]:
    """Turn an agent transcript into classified, titled memory candidates."""
    captured: list[CapturedMemory] = []
    for chunk in split_into_chunks(output):
        memory_type = classify_memory(chunk)
        captured.append(
            CapturedMemory(
                type=memory_type,
                title=extract_title(chunk),
                summary=extract_summary(chunk),
                content=chunk,
            )
        )
    return captured


# ---------------------------------------------------------------------------
# Tool-call capture and de-duplication
# ---------------------------------------------------------------------------


class RecentTitles:
    """
    Bounded buffer of recently captured titles.

    Owned by whoever performs capture (the memory manager keeps one) so no
    de-duplication state lives at module level.
    """

    def __init__(self, capacity: int = DEDUP_BUFFER_SIZE) -> None:
        self._titles: deque[str] = deque(maxlen=capacity)

    def __len__(self) -> int:
        return len(self._titles)

    def seen(self, title: str) -> bool:
        """Return ``True`` if *title* was recorded recently; otherwise record it."""
        normalized = title.lower().strip()
        if normalized in self._titles:
            return True
        self._titles.append(normalized)
        return False


def capture_from_tool_call(
    tool_name: str,
    args: dict[str, Any],
    result: str,
    recent: RecentTitles,
) -> CapturedMemory | None:
    """
    Build a memory from a tool call and its result.

    Returns ``None`` for read-only tools, results reporting
    ``"success": false``, and titles already captured recently.
    """
    if tool_name in SKIP_CAPTURE_TOOLS:
        return None

    try:
        parsed = json.loads(result)
    except ValueError:
        parsed = None
    if isinstance(parsed, dict) and parsed.get("success") is False:
        return None

    arg_summary = ", ".join(
        f"{key}: {value if isinstance(value, str) else json.dumps(value)}"
        for key, value in args.items()
        if value is not None
    )
    title = _tool_call_title(tool_name, args)
    if recent.seen(title):
        return None

    content = f"Tool: {tool_name}\nArgs: {arg_summary}\nResult: {_truncate(result, 500)}"
    return CapturedMemory(
        type=classify_memory(f"{tool_name} {arg_summary}"),
        title=title,
        content=content,
        tags=[tool_name],
    )


def _tool_call_title(tool_name: str, args: dict[str, Any]) -> str:
    if "title" in args and args["title"]:
        return f"{tool_name}: {args['title']}"
    return f"{tool_name}: {extract_title(json.dumps(args, default=str), 60)}"


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."
