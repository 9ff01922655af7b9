"""Tests for weighted fusion and the hybrid search engine."""

import math

import pytest

from vectorize.core.exceptions import ConfigurationError, IndexMissingError, ProviderError
from vectorize.models.chunk import Chunk, ChunkKind
from vectorize.services.search import (
    HybridSearchEngine,
    collection_for,
    collection_of,
    fetch_size,
    fuse,
)
from vectorize.services.vector_store import VectorHit
from vectorize.workers.ingest import IncrementalIndexer

from conftest import FakeEmbeddingProvider, fake_vector


def _chunk(chunk_id: str) -> Chunk:
    path, _, lines = chunk_id.rpartition(":")
    start, end = (int(n) for n in lines.split("-"))
    return Chunk(
        id=chunk_id,
        content=f"content {chunk_id}",
        file_path=path,
        line_range=(start, end),
        language="typescript",
        kind=ChunkKind.CODE,
    )


class ReversingReranker:
    def __init__(self):
        self.documents = None

    async def rerank(self, query, documents, top_n):
        self.documents = documents
        order = list(reversed(range(len(documents))))[:top_n]
        return [(i, 1.0 - n * 0.1) for n, i in enumerate(order)]


class FailingReranker:
    async def rerank(self, query, documents, top_n):
        raise ProviderError("rerank service down")


# ── Pure helpers ─────────────────────────────────────────────


def test_fetch_size_is_capped():
    assert fetch_size(5) == 15
    assert fetch_size(50) == 100


def test_collection_routing():
    assert collection_for(None) == "all"
    assert collection_for("code") == "codebase"
    assert collection_for("docs") == "codebase"
    assert collection_for("schema") == "database"
    assert collection_for("config") == "database"
    assert collection_of("database:main/users:1-4") == "database"
    assert collection_of("src/a.ts:1-4") == "codebase"


def test_fuse_combines_normalized_scores():
    a, b, c = _chunk("a.ts:1-2"), _chunk("b.ts:1-2"), _chunk("c.ts:1-2")
    vector_hits = [VectorHit(a, 0.0), VectorHit(b, 3.0)]
    keyword_hits = [("c.ts:1-2", 4.0), ("b.ts:1-2", 2.0)]

    results = fuse(vector_hits, keyword_hits, {c.id: c}, weight=0.5)
    scores = {r.chunk.id: r for r in results}

    assert math.isclose(scores["a.ts:1-2"].score, 0.5 * 1.0)
    assert math.isclose(scores["b.ts:1-2"].score, 0.5 * 0.25 + 0.5 * 0.5)
    assert math.isclose(scores["c.ts:1-2"].score, 0.5 * 1.0)
    assert scores["c.ts:1-2"].vector_similarity == 0.0
    assert [r.chunk.id for r in results] == ["a.ts:1-2", "c.ts:1-2", "b.ts:1-2"]


def test_fuse_weight_boundaries():
    a, b, c = _chunk("a.ts:1-2"), _chunk("b.ts:1-2"), _chunk("c.ts:1-2")
    vector_hits = [VectorHit(a, 0.1), VectorHit(b, 0.5), VectorHit(c, 2.0)]
    keyword_hits = [("c.ts:1-2", 9.0), ("a.ts:1-2", 3.0)]
    chunks = {x.id: x for x in (a, b, c)}

    vector_only = fuse(vector_hits, keyword_hits, chunks, weight=1.0)
    keyword_only = fuse(vector_hits, keyword_hits, chunks, weight=0.0)

    assert [r.chunk.id for r in vector_only] == ["a.ts:1-2", "b.ts:1-2", "c.ts:1-2"]
    assert [r.chunk.id for r in keyword_only] == ["c.ts:1-2", "a.ts:1-2"]


def test_fuse_weight_zero_drops_vector_only_hits():
    a, b = _chunk("a.ts:1-2"), _chunk("b.ts:1-2")

    results = fuse([VectorHit(a, 0.0), VectorHit(b, 0.2)], [("b.ts:1-2", 2.0)], {}, weight=0.0)

    assert [(r.chunk.id, r.score) for r in results] == [("b.ts:1-2", 1.0)]
    assert fuse([VectorHit(a, 0.0)], [], {}, weight=0.0) == []


def test_fuse_with_no_keyword_hits():
    a = _chunk("a.ts:1-2")
    results = fuse([VectorHit(a, 1.0)], [], {}, weight=0.7)
    assert math.isclose(results[0].score, 0.7 * 0.5)


# ── Engine over a real index ─────────────────────────────────


@pytest.fixture
async def built(handle, config, provider, settings):
    await IncrementalIndexer(handle, config, provider, settings=settings).build()
    return handle


def _distance(query: str, chunk: Chunk) -> float:
    q, v = fake_vector(query), fake_vector(chunk.embedding_text)
    return math.sqrt(sum((x - y) ** 2 for x, y in zip(q, v)))


@pytest.mark.asyncio
async def test_weight_one_matches_pure_vector_order(built, settings):
    engine = HybridSearchEngine(built, FakeEmbeddingProvider(settings=settings))
    query = "invoice total tax"

    results = await engine.search(query, top_k=6, weight=1.0)

    expected = sorted(results, key=lambda r: _distance(query, r.chunk))
    assert len(results) == 6
    assert [r.chunk.id for r in results] == [r.chunk.id for r in expected]
    assert all(math.isclose(r.score, r.vector_similarity) for r in results)


@pytest.mark.asyncio
async def test_weight_zero_matches_pure_bm25_order(built, settings):
    engine = HybridSearchEngine(built, FakeEmbeddingProvider(settings=settings))
    query = "invoice rollback"
    generation = built.active_generation()
    bm25_order = [cid for cid, _ in built.load_bm25(generation).search(query, 20)]

    results = await engine.search(query, top_k=6, weight=0.0)

    assert [r.chunk.id for r in results] == bm25_order[:6]
    assert all(r.keyword_score > 0 for r in results)
    assert results[0].score == 1.0


@pytest.mark.asyncio
async def test_filters(built, settings):
    engine = HybridSearchEngine(built, FakeEmbeddingProvider(settings=settings))

    docs = await engine.search("deploy invoice user", top_k=10, kinds=["docs"])
    python = await engine.search("deploy invoice user", top_k=10, languages=["python"])
    pattern = await engine.search("deploy invoice user", top_k=10, file_patterns=["src/*.ts"])

    assert docs and all(r.chunk.kind is ChunkKind.DOCS for r in docs)
    assert python and all(r.chunk.language == "python" for r in python)
    assert pattern and all(r.chunk.file_path == "src/user-service.ts" for r in pattern)


@pytest.mark.asyncio
async def test_database_collection_alone_is_empty_without_database(built, settings):
    engine = HybridSearchEngine(built, FakeEmbeddingProvider(settings=settings))
    assert await engine.search("users table", collection="database") == []


@pytest.mark.asyncio
async def test_reranker_reorders_candidates(built, settings):
    reranker = ReversingReranker()
    engine = HybridSearchEngine(built, FakeEmbeddingProvider(settings=settings), reranker=reranker)
    plain = HybridSearchEngine(built, FakeEmbeddingProvider(settings=settings))

    fused = await plain.search("invoice", top_k=6)
    reranked = await engine.search("invoice", top_k=6)

    assert [r.chunk.id for r in reranked] == [r.chunk.id for r in reversed(fused)]
    assert reranked[0].score == 1.0
    assert len(reranker.documents) == len(fused)


@pytest.mark.asyncio
async def test_reranker_failure_keeps_fused_order(built, settings):
    engine = HybridSearchEngine(built, FakeEmbeddingProvider(settings=settings), reranker=FailingReranker())
    plain = HybridSearchEngine(built, FakeEmbeddingProvider(settings=settings))

    assert [r.chunk.id for r in await engine.search("invoice", top_k=3)] == \
        [r.chunk.id for r in await plain.search("invoice", top_k=3)]


@pytest.mark.asyncio
async def test_dimension_mismatch_is_refused(built, settings):
    class Wider(FakeEmbeddingProvider):
        dimensions = 128

    engine = HybridSearchEngine(built, Wider(settings=settings))
    with pytest.raises(ConfigurationError):
        await engine.search("anything")


@pytest.mark.asyncio
async def test_missing_index(handle, settings):
    engine = HybridSearchEngine(handle, FakeEmbeddingProvider(settings=settings))
    with pytest.raises(IndexMissingError):
        await engine.search("anything")
