"""semantic_search — the query tool exposed to agents, plus its text rendering."""

from __future__ import annotations

import logging
import time
from pathlib import Path

from vectorize.core.config import (
    Settings,
    VectorizationConfig,
    get_settings,
    load_vectorization_config,
)
from vectorize.core.index import open_index
from vectorize.models.search import (
    IndexStatus,
    SemanticSearchInput,
    SemanticSearchOutput,
    SemanticSearchResult,
)
from vectorize.services.embedding import EmbeddingProvider, create_embedding_provider
from vectorize.services.rerank import Reranker, create_reranker
from vectorize.services.search import HybridSearchEngine, collection_for
from vectorize.workers.refresh import format_age, index_age, index_status

logger = logging.getLogger(__name__)

TOOL_NAME = "semantic_search"
TOOL_DESCRIPTION = """Search the codebase semantically using natural language queries.
Returns relevant code snippets, documentation, and database schema based on meaning, \
not just keywords.

Use this tool when you need to:
- Understand how a feature is implemented
- Find code related to a concept
- Discover patterns and conventions
- Locate relevant database tables/columns"""

PREVIEW_LINES = 3


def tool_definition() -> dict:
    """Tool registration payload (name, description, JSON schema of the input)."""
    return {
        "name": TOOL_NAME,
        "description": TOOL_DESCRIPTION,
        "inputSchema": SemanticSearchInput.model_json_schema(),
    }


async def semantic_search(
    request: SemanticSearchInput,
    project_root: Path | None = None,
    *,
    settings: Settings | None = None,
    config: VectorizationConfig | None = None,
    provider: EmbeddingProvider | None = None,
    reranker: Reranker | None = None,
) -> SemanticSearchOutput:
    """Run a hybrid search against the project's committed index.

    A missing index is reported as ``index_status="missing"`` with no results,
    and a stale one as ``"stale"``; neither is an error.
    """
    started = time.perf_counter()
    settings = settings or get_settings()
    project_root = project_root or settings.project_root

    async with open_index(project_root, settings) as handle:
        metadata = handle.read_metadata()
        if metadata is None:
            return SemanticSearchOutput(
                index_status=IndexStatus.MISSING,
                query_time_ms=_elapsed_ms(started),
            )

        config = config or load_vectorization_config(project_root) or VectorizationConfig()
        status = index_status(metadata, config.refresh.max_age_delta)
        provider = provider or create_embedding_provider(
            config, settings, indexed_model=metadata.config.embedding_model,
        )
        engine = HybridSearchEngine(
            handle,
            provider,
            reranker=reranker if reranker is not None else create_reranker(config),
        )

        filters = request.filters
        content_type = filters.content_type if filters else None
        hits = await engine.search(
            request.query,
            top_k=request.top_k or config.search.top_k,
            weight=config.search.hybrid_weight,
            collection=collection_for(content_type),
            kinds=[content_type] if content_type else None,
            languages=filters.languages if filters else None,
            file_patterns=filters.file_patterns if filters else None,
        )

    results = [
        SemanticSearchResult(
            content=hit.chunk.content,
            file_path=hit.chunk.file_path,
            line_range=hit.chunk.line_range,
            language=hit.chunk.language,
            score=round(hit.score, 4),
            type=hit.chunk.kind.value,
            context=hit.chunk.context,
        )
        for hit in hits
    ]
    return SemanticSearchOutput(
        results=results,
        index_status=status,
        query_time_ms=_elapsed_ms(started),
        index_age=f"{format_age(index_age(metadata))} ago",
    )


def format_search_results(output: SemanticSearchOutput) -> str:
    """Render search output for an agent's context window."""
    if output.index_status is IndexStatus.MISSING:
        return "⚠️ Vector index not found. Run 'vectorize init' to enable semantic search."
    if not output.results:
        return "No results found. Try rephrasing your query or checking 'vectorize status'."

    lines: list[str] = []
    if output.index_status is IndexStatus.STALE:
        lines.append(
            f"⚠️ Index is stale (last updated {output.index_age}). "
            "Consider running 'vectorize refresh'."
        )
        lines.append("")

    lines.append(f"Found {len(output.results)} results ({output.query_time_ms}ms):")
    lines.append("")

    for i, result in enumerate(output.results, start=1):
        start, end = result.line_range
        lines.append(f"{i}. **{result.file_path}** (lines {start}-{end}) [score: {result.score:.2f}]")
        if result.context:
            lines.append(f"   _{result.context}_")
        preview = "\n".join(result.content.split("\n")[:PREVIEW_LINES])
        lines.append(f"   ```{result.language}")
        lines.append("   " + preview.replace("\n", "\n   "))
        lines.append("   ```")
        lines.append("")

    return "\n".join(lines)


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)
