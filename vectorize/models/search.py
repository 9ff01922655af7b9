"""Query tool contract — request and response schemas for agent callers."""

from __future__ import annotations

from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, Field


class IndexStatus(StrEnum):
    FRESH = "fresh"
    STALE = "stale"
    MISSING = "missing"


class SearchFilters(BaseModel):
    file_patterns: list[str] | None = None
    languages: list[str] | None = None
    content_type: Literal["code", "schema", "config", "docs"] | None = None


class SemanticSearchInput(BaseModel):
    query: str = Field(min_length=1)
    filters: SearchFilters | None = None
    top_k: int | None = Field(default=None, ge=1, le=100)


class SemanticSearchResult(BaseModel):
    content: str
    file_path: str
    line_range: tuple[int, int]
    language: str
    score: float
    type: str
    context: str | None = None


class SemanticSearchOutput(BaseModel):
    results: list[SemanticSearchResult] = Field(default_factory=list)
    index_status: IndexStatus
    query_time_ms: int
    index_age: str | None = None
