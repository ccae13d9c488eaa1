"""
hybrid-recall: a local, embedded memory engine for LLM agents.

Memories are stored in SQLite with BM25 full-text search, indexed by a
hand-built HNSW graph over hashed TF-IDF vectors, and retrieved with
Reciprocal Rank Fusion of the two.  An LRU policy keeps the database under
a size ceiling.
"""

from .capture import capture_from_output, classify_memory, redact_private
from .config import Settings, get_settings, set_settings
from .errors import DimensionMismatchError, HybridRecallError, IndexFormatError, StoreNotInitializedError
from .hnsw import HNSWIndex
from .memory import MemoryManager
from .search import HybridSearch
from .store import MemoryStore
from .types import Memory, MemorySession, MemoryType, SearchMode, SearchResult
from .vectorizer import vectorize

__all__ = [
    "DimensionMismatchError",
    "HNSWIndex",
    "HybridRecallError",
    "HybridSearch",
    "IndexFormatError",
    "Memory",
    "MemoryManager",
    "MemorySession",
    "MemoryStore",
    "MemoryType",
    "SearchMode",
    "SearchResult",
    "Settings",
    "StoreNotInitializedError",
    "capture_from_output",
    "classify_memory",
    "get_settings",
    "redact_private",
    "set_settings",
    "vectorize",
]
