"""
Exception hierarchy for hybrid-recall.

Structural problems (bad vector shapes, corrupt index snapshots, using a
store before it is open) are raised to the caller.  Degraded modes such as
a missing FTS5 module are handled where they occur and never show up here.
"""

from __future__ import annotations


class HybridRecallError(Exception):
    """Base exception for all hybrid-recall errors."""


class DimensionMismatchError(HybridRecallError, ValueError):
    """A vector's length does not match the index dimensionality."""

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(f"Vector dimensions mismatch: expected {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


class IndexFormatError(HybridRecallError, ValueError):
    """A serialized HNSW index is corrupt, truncated or of an unknown version."""


class StoreNotInitializedError(HybridRecallError, RuntimeError):
    """The memory store was used before ``open()`` or after ``close()``."""

    def __init__(self, message: str = "Memory store is not initialized; call open() first") -> None:
        super().__init__(message)
