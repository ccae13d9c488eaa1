"""
Size limiter with LRU eviction.

Keeps the database under a configured ceiling by deleting the least
recently accessed memories from the store and the index together.
``decision`` memories and memories of the active session are pinned: they
are never evicted, even if that means the ceiling cannot be reached.
"""

from __future__ import annotations

import logging
import math

from .hnsw import HNSWIndex
from .store import MemoryStore
from .types import EvictionResult

logger = logging.getLogger(__name__)

DEFAULT_MAX_SIZE_BYTES = 524_288_000  # 500 MiB
EVICTION_BATCH_SIZE = 100
#: Eviction stops once usage falls to this fraction of the ceiling.
TARGET_USAGE = 0.85


class MemoryCache:
    """
    Enforces ``max_size_bytes`` on a :class:`MemoryStore` / :class:`HNSWIndex` pair.

    Parameters
    ----------
    store:
        The open memory store.  Its live size is the quantity being bounded.
    index:
        The vector index; every evicted id is removed from it as well.
    max_size_bytes:
        Ceiling in bytes (default 500 MiB).
    """

    def __init__(
        self,
        store: MemoryStore,
        index: HNSWIndex,
        max_size_bytes: int = DEFAULT_MAX_SIZE_BYTES,
    ) -> None:
        self._store = store
        self._index = index
        self.max_size_bytes = max_size_bytes

    @property
    def target_size(self) -> float:
        return self.max_size_bytes * TARGET_USAGE

    def current_size(self) -> int:
        return self._store.size_bytes()

    def usage_percent(self) -> float:
        return self.current_size() / self.max_size_bytes * 100.0

    def is_over_limit(self) -> bool:
        return self.current_size() > self.max_size_bytes

    def check_and_evict(self) -> EvictionResult:
        """Evict down to the target only when the ceiling is exceeded."""
        if not self.is_over_limit():
            return EvictionResult()
        return self._evict(force=False)

    def force_evict(self) -> EvictionResult:
        """Evict at least one batch regardless of size, then continue to the target."""
        return self._evict(force=True)

    def _evict(self, force: bool) -> EvictionResult:
        size_before = self.current_size()
        active = self._store.get_active_session()
        active_id = active.id if active is not None else None

        evicted = 0
        if force:
            evicted += self._delete(self._store.eviction_candidates(EVICTION_BATCH_SIZE, active_id))
        # Deleted rows only leave FTS delete markers until the index is merged.
        self._store.compact_fts()

        while True:
            size = self.current_size()
            if size <= self.target_size:
                break
            removed = self._evict_round(self._records_over_target(size), active_id)
            if not removed:
                break
            evicted += removed
            self._store.compact_fts()

        freed = max(0, size_before - self.current_size())
        if evicted:
            logger.info(
                "Evicted %d memories (%d bytes freed, usage now %.1f%%)",
                evicted,
                freed,
                self.usage_percent(),
            )
        elif self.current_size() > self.target_size:
            logger.warning("Over size target but every remaining memory is pinned")
        return EvictionResult(evicted_count=evicted, freed_bytes=freed)

    def _records_over_target(self, size: int) -> int:
        """Estimate how many records must go, assuming each holds an average share of *size*."""
        count = self._store.count()
        if count == 0:
            return 0
        return max(1, math.ceil((size - self.target_size) * count / size))

    def _evict_round(self, wanted: int, active_id: str | None) -> int:
        """Delete up to *wanted* LRU candidates, fetched in batches."""
        removed = 0
        while removed < wanted:
            batch = min(EVICTION_BATCH_SIZE, wanted - removed)
            deleted = self._delete(self._store.eviction_candidates(batch, active_id))
            if not deleted:
                break
            removed += deleted
        return removed

    def _delete(self, memory_ids: list[str]) -> int:
        for memory_id in memory_ids:
            self._store.delete(memory_id)
            self._index.remove(memory_id)
        return len(memory_ids)
