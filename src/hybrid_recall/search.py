"""
Hybrid search: BM25 (via the store) + HNSW (via the index), merged with
Reciprocal Rank Fusion.

RRF scores each id by ``sum(1 / (K + rank))`` over the lists it appears in.
Only ranks enter the formula, so the incomparable scales of BM25 scores and
cosine similarities never meet.
"""

from __future__ import annotations

from .hnsw import HNSWIndex
from .store import MemoryStore
from .types import Memory, MatchType, MemoryType, SearchMode, SearchResult, TimelineEntry, now_ms
from .vectorizer import DEFAULT_DIMENSIONS, vectorize

RRF_K = 60
DEFAULT_LIMIT = 20
DEFAULT_TIMELINE_WINDOW = 5


def rrf_score(rank: int, k: int = RRF_K) -> float:
    """Contribution of a 1-based *rank* to a fused score."""
    return 1.0 / (k + rank)


class HybridSearch:
    """Read path over a :class:`MemoryStore` and an :class:`HNSWIndex`."""

    def __init__(self, store: MemoryStore, index: HNSWIndex, dimensions: int = DEFAULT_DIMENSIONS) -> None:
        self._store = store
        self._index = index
        self.dimensions = dimensions

    def search(
        self,
        query: str,
        mode: SearchMode | str = SearchMode.HYBRID,
        type: MemoryType | str | None = None,
        limit: int = DEFAULT_LIMIT,
        project: str | None = None,
    ) -> list[SearchResult]:
        """
        Search memories.

        Parameters
        ----------
        query:
            Free text.
        mode:
            ``lexical``, ``vector`` or ``hybrid`` (default).
        type:
            Only return memories of this type.
        limit:
            Maximum number of results.
        project:
            Only return memories of this project.
        """
        mode = SearchMode(mode)
        mem_type = MemoryType(type) if type is not None else None
        if limit <= 0:
            return []

        if mode is SearchMode.LEXICAL:
            return self._search_lexical(query, limit, mem_type, project)
        if mode is SearchMode.VECTOR:
            return self._search_vector(query, limit, mem_type, project)
        return self._search_hybrid(query, limit, mem_type, project)

    # ------------------------------------------------------------------
    # Modes
    # ------------------------------------------------------------------

    def _search_lexical(
        self, query: str, limit: int, type: MemoryType | None, project: str | None
    ) -> list[SearchResult]:
        results: list[SearchResult] = []
        for hit in self._store.search_lexical(query, limit, type=type, project=project):
            memory = self._store.get(hit.id)
            if memory is None:
                continue
            results.append(_result(memory, hit.score, MatchType.LEXICAL))
        return results

    def _search_vector(
        self, query: str, limit: int, type: MemoryType | None, project: str | None
    ) -> list[SearchResult]:
        if len(self._index) == 0:
            return []

        # Over-fetch so post-filtering by type/project still fills the page.
        candidates = self._index.search(vectorize(query, self.dimensions), limit * 2)

        results: list[SearchResult] = []
        for candidate in candidates:
            memory = self._store.get(candidate.label)
            if memory is None:
                continue
            if type is not None and memory.type is not type:
                continue
            if project is not None and memory.project != project:
                continue
            results.append(_result(memory, 1.0 - candidate.distance, MatchType.VECTOR))
            if len(results) >= limit:
                break
        return results

    def _search_hybrid(
        self, query: str, limit: int, type: MemoryType | None, project: str | None
    ) -> list[SearchResult]:
        lexical = self._search_lexical(query, limit * 2, type, project)
        vector = self._search_vector(query, limit * 2, type, project)

        lexical_rank = {r.id: i for i, r in enumerate(lexical, 1)}
        vector_rank = {r.id: i for i, r in enumerate(vector, 1)}

        by_id: dict[str, SearchResult] = {}
        for r in lexical + vector:
            by_id.setdefault(r.id, r)

        fused: list[SearchResult] = []
        for memory_id, base in by_id.items():
            l_rank = lexical_rank.get(memory_id)
            v_rank = vector_rank.get(memory_id)

            score = 0.0
            if l_rank is not None:
                score += rrf_score(l_rank)
            if v_rank is not None:
                score += rrf_score(v_rank)

            if l_rank is not None and v_rank is not None:
                match = MatchType.BOTH
            elif l_rank is not None:
                match = MatchType.LEXICAL
            else:
                match = MatchType.VECTOR

            fused.append(
                SearchResult(
                    id=base.id,
                    title=base.title,
                    type=base.type,
                    score=score,
                    match_type=match,
                    created_at=base.created_at,
                )
            )

        fused.sort(key=lambda r: r.score, reverse=True)
        return fused[:limit]

    # ------------------------------------------------------------------
    # Progressive disclosure
    # ------------------------------------------------------------------

    def timeline(self, memory_id: str, window: int = DEFAULT_TIMELINE_WINDOW) -> list[TimelineEntry]:
        """Chronological neighbours of *memory_id*, with the anchor marked."""
        rows = self._store.timeline_around(memory_id, window)
        anchor_pos = next((i for i, m in enumerate(rows) if m.id == memory_id), None)
        if anchor_pos is None:
            return []

        anchor_ts = rows[anchor_pos].created_at
        entries: list[TimelineEntry] = []
        for i, memory in enumerate(rows):
            if i == anchor_pos:
                position = "anchor"
            elif i < anchor_pos:
                position = "before"
            else:
                position = "after"
            entries.append(
                TimelineEntry(
                    id=memory.id,
                    title=memory.title,
                    type=memory.type,
                    created_at=memory.created_at,
                    position=position,
                    distance_from_anchor=abs(memory.created_at - anchor_ts),
                )
            )
        return entries

    def full_details(self, ids: list[str]) -> list[Memory]:
        """Complete records for *ids* (unknown ids skipped); bumps their access time."""
        memories: list[Memory] = []
        for memory_id in ids:
            memory = self._store.get(memory_id)
            if memory is None:
                continue
            now = now_ms()
            self._store.touch_accessed(memory_id, now)
            memory.accessed_at = max(memory.accessed_at, now)
            memories.append(memory)
        return memories


def _result(memory: Memory, score: float, match: MatchType) -> SearchResult:
    return SearchResult(
        id=memory.id,
        title=memory.title,
        type=memory.type,
        score=score,
        match_type=match,
        created_at=memory.created_at,
    )
