"""Pydantic models for chunks, index metadata and the search tool."""

from vectorize.models.chunk import (
    MIN_CHUNK_CHARS,
    Chunk,
    ChunkKind,
    EmbeddingResult,
    make_chunk_id,
)
from vectorize.models.metadata import (
    CodebaseStats,
    DatabaseStats,
    IndexConfigSnapshot,
    IndexMetadata,
    IndexState,
    StatusReport,
)
from vectorize.models.search import (
    IndexStatus,
    SearchFilters,
    SemanticSearchInput,
    SemanticSearchOutput,
    SemanticSearchResult,
)

__all__ = [
    "MIN_CHUNK_CHARS",
    "Chunk",
    "ChunkKind",
    "CodebaseStats",
    "DatabaseStats",
    "EmbeddingResult",
    "IndexConfigSnapshot",
    "IndexMetadata",
    "IndexState",
    "IndexStatus",
    "SearchFilters",
    "SemanticSearchInput",
    "SemanticSearchOutput",
    "SemanticSearchResult",
    "StatusReport",
    "make_chunk_id",
]
