"""Chunk model — a retrievable unit of source text stored in both indices."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict

# Fragments shorter than this (after trimming) are never indexed
MIN_CHUNK_CHARS = 20


class ChunkKind(StrEnum):
    CODE = "code"
    SCHEMA = "schema"
    CONFIG = "config"
    DOCS = "docs"


def make_chunk_id(file_path: str, start_line: int, end_line: int) -> str:
    """Stable key: re-chunking an unchanged file reproduces the same ids."""
    return f"{file_path}:{start_line}-{end_line}"


class Chunk(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    content: str
    file_path: str
    line_range: tuple[int, int]
    language: str
    kind: ChunkKind
    context: str | None = None

    @classmethod
    def create(
        cls,
        content: str,
        file_path: str,
        start_line: int,
        end_line: int,
        language: str,
        kind: ChunkKind,
        context: str | None = None,
    ) -> Chunk:
        return cls(
            id=make_chunk_id(file_path, start_line, end_line),
            content=content,
            file_path=file_path,
            line_range=(start_line, end_line),
            language=language,
            kind=kind,
            context=context,
        )

    @property
    def start_line(self) -> int:
        return self.line_range[0]

    @property
    def end_line(self) -> int:
        return self.line_range[1]

    @property
    def embedding_text(self) -> str:
        """Text submitted to the embedding model (context first, when present)."""
        if self.context:
            return f"{self.context}\n\n{self.content}"
        return self.content

    def with_context(self, context: str | None) -> Chunk:
        return self.model_copy(update={"context": context or None})

    def to_payload(self) -> dict[str, Any]:
        return {
            "chunk_id": self.id,
            "content": self.content,
            "file_path": self.file_path,
            "line_start": self.line_range[0],
            "line_end": self.line_range[1],
            "language": self.language,
            "kind": self.kind.value,
            "context": self.context,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> Chunk:
        return cls(
            id=payload["chunk_id"],
            content=payload["content"],
            file_path=payload["file_path"],
            line_range=(payload["line_start"], payload["line_end"]),
            language=payload["language"],
            kind=ChunkKind(payload["kind"]),
            context=payload.get("context"),
        )


@dataclass
class EmbeddingResult:
    """A chunk id paired with its embedding vector."""
    chunk_id: str
    vector: list[float]
