"""
Record types shared by the store, the search layer and the manager.

All timestamps are integer epoch milliseconds.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


def now_ms() -> int:
    """Return the current time as integer epoch milliseconds."""
    return int(time.time() * 1000)


class MemoryType(str, Enum):
    BUGFIX = "bugfix"
    FEATURE = "feature"
    REFACTOR = "refactor"
    DECISION = "decision"
    DISCOVERY = "discovery"
    CHANGE = "change"
    OBSERVATION = "observation"


class SearchMode(str, Enum):
    LEXICAL = "lexical"
    VECTOR = "vector"
    HYBRID = "hybrid"

    @classmethod
    def _missing_(cls, value: object) -> SearchMode | None:
        # "bm25" is what the lexical mode was called in older callers.
        if isinstance(value, str) and value.lower() == "bm25":
            return cls.LEXICAL
        return None


class MatchType(str, Enum):
    LEXICAL = "lexical"
    VECTOR = "vector"
    BOTH = "both"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"


@dataclass
class Memory:
    """A single persisted memory record."""

    id: str
    type: MemoryType
    title: str
    content: str
    project: str = ""
    tags: list[str] = field(default_factory=list)
    summary: str | None = None
    session_id: str | None = None
    created_at: int = 0
    updated_at: int = 0
    accessed_at: int = 0

    @property
    def search_text(self) -> str:
        """Text fed to the vectorizer for this record."""
        return f"{self.title} {self.content}"

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        return data


@dataclass
class MemorySession:
    id: str
    project: str
    status: SessionStatus = SessionStatus.ACTIVE
    started_at: int = 0
    ended_at: int | None = None
    summary: str | None = None
    tool_calls: int = 0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass
class SearchResult:
    id: str
    title: str
    type: MemoryType
    score: float
    match_type: MatchType
    created_at: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "type": self.type.value,
            "score": self.score,
            "match_type": self.match_type.value,
            "created_at": self.created_at,
        }


@dataclass
class TimelineEntry:
    id: str
    title: str
    type: MemoryType
    created_at: int
    position: str  # "before" | "anchor" | "after"
    distance_from_anchor: int

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        return data


@dataclass
class MemoryStats:
    db_size_bytes: int
    memory_count: int
    session_count: int
    oldest_memory: int | None
    newest_memory: int | None
    max_size_bytes: int
    usage_percent: float
    index_size: int
    index_health: str  # "good" | "degraded" | "needs-rebuild"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class EvictionResult:
    evicted_count: int = 0
    freed_bytes: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
