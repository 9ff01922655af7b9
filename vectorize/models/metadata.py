"""Index metadata — the committed, per-project state persisted as metadata.json."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field

from vectorize.models.base import utcnow

SCHEMA_VERSION = "1.0.0"


class IndexState(StrEnum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    REFRESHING = "refreshing"


class CodebaseStats(BaseModel):
    files: int = 0
    chunks: int = 0
    languages: list[str] = Field(default_factory=list)


class DatabaseStats(BaseModel):
    tables: int = 0
    chunks: int = 0
    config_tables: list[str] = Field(default_factory=list)


class IndexConfigSnapshot(BaseModel):
    """The configuration an index was built with."""
    embedding_model: str
    embedding_dimensions: int
    chunk_strategy: str
    contextual_retrieval: str


class IndexMetadata(BaseModel):
    schema_version: str = SCHEMA_VERSION
    generation: str
    created_at: datetime = Field(default_factory=utcnow)
    last_updated: datetime = Field(default_factory=utcnow)
    git_head: str | None = None
    codebase: CodebaseStats = Field(default_factory=CodebaseStats)
    database: DatabaseStats | None = None
    config: IndexConfigSnapshot


class StatusReport(BaseModel):
    """What ``status`` reports: counts, staleness and storage size."""
    status: str
    state: IndexState
    index_dir: str
    generation: str | None = None
    last_updated: datetime | None = None
    index_age: str | None = None
    max_age: str
    git_head: str | None = None
    codebase: CodebaseStats | None = None
    database: DatabaseStats | None = None
    config: IndexConfigSnapshot | None = None
    storage_bytes: int = 0
