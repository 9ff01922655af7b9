"""Hybrid search — vector similarity and BM25 fused into one ranking.

Flow:
  1. Embed the query and fetch 3 x top_k nearest chunks per collection
  2. Fetch 3 x top_k BM25 matches from the keyword index
  3. Normalize BM25 by this query's best score and fuse with the weight
  4. Optionally rerank the fused candidates
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from fnmatch import fnmatchcase

from vectorize.core.exceptions import ConfigurationError, IndexMissingError, VectorizeError
from vectorize.core.index import Generation, IndexHandle
from vectorize.models.chunk import Chunk
from vectorize.services.embedding import EmbeddingProvider
from vectorize.services.rerank import Reranker
from vectorize.services.vector_store import VectorHit, VectorStore

logger = logging.getLogger(__name__)

CODEBASE = "codebase"
DATABASE = "database"
ALL = "all"

MAX_FETCH_K = 100
RERANK_CANDIDATES = 150
# Extra BM25 depth when results will be filtered after scoring
FILTERED_BM25_FACTOR = 5

# Which collection holds each kind of content
KIND_COLLECTIONS = {
    "code": CODEBASE,
    "docs": CODEBASE,
    "schema": DATABASE,
    "config": DATABASE,
}


@dataclass
class ScoredChunk:
    """A fused search result."""
    chunk: Chunk
    score: float
    vector_similarity: float = 0.0
    keyword_score: float = 0.0


def fetch_size(top_k: int) -> int:
    return min(3 * top_k, MAX_FETCH_K)


def collection_for(content_type: str | None) -> str:
    if content_type is None:
        return ALL
    return KIND_COLLECTIONS[content_type]


def collection_of(chunk_id: str) -> str:
    return DATABASE if chunk_id.startswith("database:") else CODEBASE


def fuse(
    vector_hits: Sequence[VectorHit],
    keyword_hits: Sequence[tuple[str, float]],
    chunks: dict[str, Chunk],
    weight: float,
) -> list[ScoredChunk]:
    """Weighted fusion of vector similarity and max-normalized BM25.

    A chunk found by only one retriever scores 0 on the other signal. Vector
    hits are listed before keyword-only hits, so equal scores keep that order.
    Chunks scoring 0 overall are dropped, which at ``weight=0`` leaves exactly
    the keyword hits.
    """
    max_keyword = max((score for _, score in keyword_hits), default=0.0)
    keyword = {
        chunk_id: (score / max_keyword if max_keyword > 0 else 0.0)
        for chunk_id, score in keyword_hits
    }

    fused: dict[str, ScoredChunk] = {}
    for hit in vector_hits:
        if hit.chunk.id in fused:
            continue
        fused[hit.chunk.id] = ScoredChunk(chunk=hit.chunk, score=0.0, vector_similarity=hit.similarity)
    for chunk_id, normalized in keyword.items():
        if chunk_id in fused:
            fused[chunk_id].keyword_score = normalized
        elif chunk_id in chunks:
            fused[chunk_id] = ScoredChunk(chunk=chunks[chunk_id], score=0.0, keyword_score=normalized)

    results = list(fused.values())
    for result in results:
        result.score = weight * result.vector_similarity + (1 - weight) * result.keyword_score
    results = [r for r in results if r.score > 0]
    results.sort(key=lambda r: -r.score)
    return results


def _matches(
    chunk: Chunk,
    kinds: Sequence[str] | None,
    languages: Sequence[str] | None,
    file_patterns: Sequence[str] | None,
) -> bool:
    if kinds and chunk.kind.value not in kinds:
        return False
    if languages and chunk.language not in languages:
        return False
    if file_patterns and not any(fnmatchcase(chunk.file_path, p) for p in file_patterns):
        return False
    return True


class HybridSearchEngine:
    """Searches the committed generation of one project's index."""

    def __init__(
        self,
        handle: IndexHandle,
        provider: EmbeddingProvider,
        reranker: Reranker | None = None,
    ) -> None:
        self.handle = handle
        self.provider = provider
        self.reranker = reranker

    async def search(
        self,
        query: str,
        top_k: int = 20,
        weight: float = 0.7,
        collection: str = ALL,
        kinds: Sequence[str] | None = None,
        languages: Sequence[str] | None = None,
        file_patterns: Sequence[str] | None = None,
    ) -> list[ScoredChunk]:
        """Return up to ``top_k`` chunks ranked by fused score.

        Args:
            query: Free-text query.
            top_k: Number of results wanted.
            weight: Vector share of the combined score (BM25 gets the rest).
            collection: ``codebase``, ``database`` or ``all``.
            kinds: Pushed down to the vector store as a match-any filter.
            languages: Pushed down to the vector store as a match-any filter.
            file_patterns: Shell-style globs applied after retrieval.

        Raises:
            IndexMissingError: No committed index.
            ConfigurationError: The provider's dimension differs from the index.
        """
        metadata = self.handle.read_metadata()
        if metadata is None:
            raise IndexMissingError(f"No index at {self.handle.root}")
        if metadata.config.embedding_dimensions != self.provider.dimensions:
            raise ConfigurationError(
                f"Index was built with {metadata.config.embedding_model} "
                f"({metadata.config.embedding_dimensions} dimensions) but {self.provider.model} "
                f"produces {self.provider.dimensions}; run a full refresh"
            )

        generation = self.handle.generation(metadata.generation)
        fetch_k = fetch_size(top_k)
        filtered = bool(kinds or languages or file_patterns)
        # Stores are opened only once the query is embedded
        query_vector = await self.provider.embed_query(query)
        stores = await self._open_stores(generation, collection, metadata.config.embedding_dimensions)
        vector_hits: list[VectorHit] = []
        for store in stores.values():
            vector_hits.extend(await store.search(query_vector, fetch_k, kinds, languages))
        vector_hits.sort(key=lambda hit: hit.distance)
        vector_hits = [h for h in vector_hits if _matches(h.chunk, kinds, languages, file_patterns)]
        vector_hits = vector_hits[:fetch_k]

        keyword_index = self.handle.load_bm25(generation)
        depth = fetch_k * FILTERED_BM25_FACTOR if filtered else fetch_k
        keyword_hits = [
            (chunk_id, score)
            for chunk_id, score in keyword_index.search(query, depth)
            if collection_of(chunk_id) in stores
        ]

        chunks = {hit.chunk.id: hit.chunk for hit in vector_hits}
        missing = [cid for cid, _ in keyword_hits if cid not in chunks]
        for name, store in stores.items():
            wanted = [cid for cid in missing if collection_of(cid) == name]
            for chunk in await store.retrieve(wanted):
                chunks[chunk.id] = chunk

        keyword_hits = [
            (cid, score) for cid, score in keyword_hits
            if cid in chunks and _matches(chunks[cid], kinds, languages, file_patterns)
        ][:fetch_k]

        results = fuse(vector_hits, keyword_hits, chunks, weight)
        if self.reranker is not None:
            results = await self._rerank(query, results, top_k)
        return results[:top_k]

    async def _open_stores(
        self,
        generation: Generation,
        collection: str,
        dimensions: int,
    ) -> dict[str, VectorStore]:
        paths = {CODEBASE: generation.codebase_path, DATABASE: generation.database_path}
        names = [CODEBASE, DATABASE] if collection == ALL else [collection]
        stores = {}
        for name in names:
            if paths[name].exists():
                stores[name] = await self.handle.open_store(paths[name], dimensions)
        return stores

    async def _rerank(self, query: str, results: list[ScoredChunk], top_k: int) -> list[ScoredChunk]:
        candidates = results[:RERANK_CANDIDATES]
        try:
            ranked = await self.reranker.rerank(query, [r.chunk.content for r in candidates], top_k)
        except VectorizeError as exc:
            logger.warning("Reranking failed, keeping fused order: %s", exc)
            return results
        reranked = []
        for index, relevance in ranked:
            result = candidates[index]
            result.score = relevance
            reranked.append(result)
        return reranked
