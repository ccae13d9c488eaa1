"""
Shared pytest fixtures for hybrid-recall tests.

Everything is backed by real SQLite files and HNSW snapshots under
``tmp_path``, and uses small vectors so tests run fast.
"""

from __future__ import annotations

import logging
import uuid

import pytest

from hybrid_recall.config import set_settings
from hybrid_recall.hnsw import HNSWIndex
from hybrid_recall.log import LOGGER_NAME
from hybrid_recall.memory import MemoryManager
from hybrid_recall.store import MemoryStore
from hybrid_recall.types import Memory, MemoryType

TEST_DIMENSIONS = 64


def make_memory(
    title: str = "A memory",
    content: str = "Some content worth remembering",
    type: MemoryType = MemoryType.OBSERVATION,
    ts: int = 1_000,
    **kwargs,
) -> Memory:
    """Build a Memory with all three timestamps set to *ts* unless overridden."""
    kwargs.setdefault("created_at", ts)
    kwargs.setdefault("updated_at", ts)
    kwargs.setdefault("accessed_at", ts)
    return Memory(
        id=kwargs.pop("id", str(uuid.uuid4())),
        type=type,
        title=title,
        content=content,
        **kwargs,
    )


@pytest.fixture(autouse=True)
def _reset_settings():
    """Never let one test's settings leak into another."""
    set_settings(None)
    yield
    set_settings(None)


@pytest.fixture(autouse=True)
def _reset_logging():
    """Drop handlers added by setup_logging; they hold the captured stderr of one test."""
    yield
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)


@pytest.fixture()
def store(tmp_path) -> MemoryStore:
    """An open MemoryStore on a fresh database file."""
    s = MemoryStore(tmp_path / "memory.db")
    s.open()
    yield s
    s.close()


@pytest.fixture()
def index() -> HNSWIndex:
    return HNSWIndex(TEST_DIMENSIONS, seed=42)


@pytest.fixture()
def memory_manager(tmp_path) -> MemoryManager:
    """MemoryManager on a fresh data directory."""
    manager = MemoryManager(db_path=tmp_path / "memory.db", dimensions=TEST_DIMENSIONS)
    yield manager
    manager.close()
