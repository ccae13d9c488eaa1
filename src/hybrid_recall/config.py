"""
Configuration for hybrid-recall, resolved from environment variables.

Precedence: explicit constructor argument > environment variable
(``HYBRID_RECALL_*``) > ``.env`` file > defaults.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_MAX_SIZE_BYTES = 524_288_000  # 500 MiB
DEFAULT_DIMENSIONS = 256


class Settings(BaseSettings):
    """Storage locations, size ceiling and vector shape for a memory engine."""

    model_config = SettingsConfigDict(
        env_prefix="HYBRID_RECALL_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    data_dir: Path = Field(
        default=Path(".hybrid-recall"),
        description="Directory holding the database and index snapshot",
    )
    db_path: Path | None = Field(
        default=None,
        description="SQLite database file (defaults to <data_dir>/memory.db)",
    )
    index_path: Path | None = Field(
        default=None,
        description="HNSW snapshot file (defaults to the db path with a .hnsw suffix)",
    )
    max_size_bytes: int = Field(
        default=DEFAULT_MAX_SIZE_BYTES,
        gt=0,
        description="On-disk ceiling enforced by LRU eviction",
    )
    vector_dimensions: int = Field(
        default=DEFAULT_DIMENSIONS,
        gt=0,
        description="Length of every vector stored in the index",
    )
    log_level: str = Field(default="WARNING", description="Logging level for the CLI and MCP server")

    @field_validator("log_level")
    @classmethod
    def _normalize_level(cls, value: str) -> str:
        return value.upper()

    def get_db_path(self) -> Path:
        return Path(self.db_path) if self.db_path else Path(self.data_dir) / "memory.db"

    def get_index_path(self) -> Path:
        if self.index_path:
            return Path(self.index_path)
        return self.get_db_path().with_suffix(".hnsw")


_settings: Settings | None = None


def get_settings() -> Settings:
    """Return the process-wide settings, creating them on first use."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def set_settings(settings: Settings | None) -> None:
    """Override (or with ``None`` reset) the process-wide settings."""
    global _settings
    _settings = settings
