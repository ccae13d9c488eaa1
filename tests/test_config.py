"""Tests for environment-driven settings and logging setup."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest
from pydantic import ValidationError

from hybrid_recall.config import Settings, get_settings, set_settings
from hybrid_recall.log import LOGGER_NAME, setup_logging


class TestSettings:
    def test_defaults(self, monkeypatch):
        for var in ("DATA_DIR", "DB_PATH", "INDEX_PATH", "MAX_SIZE_BYTES", "VECTOR_DIMENSIONS", "LOG_LEVEL"):
            monkeypatch.delenv(f"HYBRID_RECALL_{var}", raising=False)
        s = Settings()
        assert s.get_db_path() == Path(".hybrid-recall") / "memory.db"
        assert s.get_index_path() == Path(".hybrid-recall") / "memory.hnsw"
        assert s.max_size_bytes == 524_288_000
        assert s.vector_dimensions == 256

    def test_env_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("HYBRID_RECALL_DB_PATH", str(tmp_path / "x.db"))
        monkeypatch.setenv("HYBRID_RECALL_MAX_SIZE_BYTES", "1000")
        monkeypatch.setenv("HYBRID_RECALL_LOG_LEVEL", "debug")
        s = Settings()
        assert s.get_db_path() == tmp_path / "x.db"
        assert s.get_index_path() == tmp_path / "x.hnsw"
        assert s.max_size_bytes == 1000
        assert s.log_level == "DEBUG"

    def test_explicit_index_path(self, tmp_path):
        s = Settings(index_path=tmp_path / "custom.idx")
        assert s.get_index_path() == tmp_path / "custom.idx"

    @pytest.mark.parametrize("field", ["max_size_bytes", "vector_dimensions"])
    def test_must_be_positive(self, field):
        with pytest.raises(ValidationError):
            Settings(**{field: 0})

    def test_get_and_set_settings(self, tmp_path):
        custom = Settings(data_dir=tmp_path)
        set_settings(custom)
        assert get_settings() is custom
        set_settings(None)
        assert get_settings() is not custom


class TestLogging:
    def test_setup_is_idempotent(self):
        logger = setup_logging("INFO")
        handlers = list(logger.handlers)
        assert setup_logging("DEBUG") is logger
        assert logger.handlers == handlers
        assert logger.level == logging.DEBUG
        assert logger.name == LOGGER_NAME
