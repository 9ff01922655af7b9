"""Indexing worker — full builds and incremental refreshes of a project's index.

Every run writes a new generation and commits it by rewriting metadata.json,
so a failed or abandoned run leaves the previous index untouched.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path

from vectorize.core.config import Settings, VectorizationConfig, get_settings
from vectorize.core.exceptions import ConfigurationError, RefreshTimeoutError
from vectorize.core.index import Generation, IndexHandle
from vectorize.core.pricing import contextual_cost, embedding_cost
from vectorize.models.base import utcnow
from vectorize.models.chunk import Chunk, EmbeddingResult
from vectorize.models.metadata import (
    CodebaseStats,
    DatabaseStats,
    IndexConfigSnapshot,
    IndexMetadata,
    IndexState,
)
from vectorize.services.bm25 import BM25Index
from vectorize.services.chunking import (
    SourceFile,
    chunk_file,
    estimate_tokens,
    scan_codebase,
)
from vectorize.services.contextual import (
    MAX_DOCUMENT_CHARS,
    ContextualEnricher,
    create_enricher,
    estimate_total_tokens,
    should_enable_contextual,
)
from vectorize.services.database import DatabaseExtract, extract_database_chunks
from vectorize.services.embedding import EmbeddingProvider
from vectorize.services.git import changed_files_since, current_head
from vectorize.services.vector_store import VectorStore

logger = logging.getLogger(__name__)

EnricherFactory = Callable[[int], ContextualEnricher | None]
DatabaseExtractor = Callable[..., Awaitable[DatabaseExtract]]


@dataclass
class BuildResult:
    """Outcome of a build or refresh."""
    files: int
    chunks: int
    chunks_updated: int
    generation: str
    full: bool
    enriched: int = 0
    elapsed_ms: int = 0


@dataclass
class InitEstimate:
    """What a full build would index and roughly cost (``init --dry-run``)."""
    files: int
    chunks: int
    tokens: int
    languages: list[str] = field(default_factory=list)
    embedding_model: str = ""
    embedding_cost: float = 0.0
    contextual_enabled: bool = False
    contextual_cost: float = 0.0

    @property
    def total_cost(self) -> float:
        return self.embedding_cost + self.contextual_cost


@dataclass
class _Snapshot:
    """Chunks and vectors read out of a committed generation."""
    codebase: list[tuple[Chunk, list[float]]] = field(default_factory=list)
    database: list[tuple[Chunk, list[float]]] = field(default_factory=list)


def _codebase_stats(chunks: Sequence[Chunk]) -> CodebaseStats:
    return CodebaseStats(
        files=len({c.file_path for c in chunks}),
        chunks=len(chunks),
        languages=sorted({c.language for c in chunks}),
    )


class IncrementalIndexer:
    """Drives the index through uninitialized → initializing → ready ⇄ refreshing."""

    def __init__(
        self,
        handle: IndexHandle,
        config: VectorizationConfig,
        provider: EmbeddingProvider,
        *,
        settings: Settings | None = None,
        enricher_factory: EnricherFactory | None = None,
        database_extractor: DatabaseExtractor = extract_database_chunks,
        skip_database: bool = False,
        contextual: bool = True,
    ) -> None:
        self.handle = handle
        self.config = config
        self.provider = provider
        self.settings = settings or get_settings()
        self.enricher_factory = enricher_factory or self._default_enricher
        self.database_extractor = database_extractor
        self.skip_database = skip_database
        self.contextual = contextual
        self.state = IndexState.READY if handle.exists() else IndexState.UNINITIALIZED

    # ── Public operations ────────────────────────────────────

    async def estimate(self) -> InitEstimate:
        """Scan and chunk without writing anything, and price a full build."""
        files = await self._scan()
        chunks = await self._chunk(files)
        tokens = sum(estimate_tokens(c.embedding_text) for c in chunks)

        estimate = InitEstimate(
            files=len(files),
            chunks=len(chunks),
            tokens=tokens,
            languages=sorted({c.language for c in chunks}),
            embedding_model=self.provider.model,
            embedding_cost=embedding_cost(self.provider.model, tokens),
        )
        total_tokens = estimate_total_tokens(chunks)
        if self.contextual and should_enable_contextual(self.config.contextual_retrieval, total_tokens):
            sizes = {f.path: estimate_tokens(f.content[:MAX_DOCUMENT_CHARS]) for f in files}
            estimate.contextual_enabled = True
            estimate.contextual_cost = contextual_cost(
                self.settings.contextual_model,
                [estimate_tokens(c.content) for c in chunks],
                [sizes.get(c.file_path, 0) for c in chunks],
            )
        return estimate

    async def build(self) -> BuildResult:
        """Index everything from scratch and swap it in."""
        return await self.refresh(full=True)

    async def refresh(
        self,
        changed_files: Sequence[str] | None = None,
        full: bool = False,
    ) -> BuildResult:
        """Bring the index up to date.

        Args:
            changed_files: Explicit project-relative paths to re-index. When
                omitted, the delta since the indexed git revision is used.
            full: Rebuild everything, including the database collection.

        Raises:
            RefreshInProgressError: Another writer holds the lock.
            RefreshTimeoutError: The run exceeded ``refresh_timeout``.
            ConfigurationError: Incremental refresh with a different embedding model.
        """
        with self.handle.writer_lock():
            previous_state = self.state
            previous = self.handle.read_metadata()
            self.state = IndexState.INITIALIZING if previous is None else IndexState.REFRESHING
            logger.info("Index %s: %s", self.handle.root, self.state.value)
            try:
                result = await asyncio.wait_for(
                    self._run(previous, changed_files, full),
                    timeout=self.settings.refresh_timeout,
                )
            except asyncio.TimeoutError:
                self.state = previous_state
                raise RefreshTimeoutError(
                    f"Refresh exceeded {self.settings.refresh_timeout:.0f}s and was abandoned"
                ) from None
            except BaseException:
                self.state = previous_state
                raise
            self.state = IndexState.READY
            return result

    # ── Pipeline ─────────────────────────────────────────────

    async def _run(
        self,
        previous: IndexMetadata | None,
        changed_files: Sequence[str] | None,
        full: bool,
    ) -> BuildResult:
        started = time.monotonic()
        head = current_head(self.handle.project_root)

        if previous is None or full:
            result = await self._full_build(previous, head)
        else:
            self._check_compatible(previous)
            if changed_files is None:
                changed_files = (
                    changed_files_since(self.handle.project_root, previous.git_head)
                    if previous.git_head else None
                )
            if changed_files is None:
                logger.info("No revision delta available; falling back to a full build")
                result = await self._full_build(previous, head)
            elif not changed_files:
                result = self._touch(previous, head)
            else:
                result = await self._incremental(previous, head, changed_files)

        result.elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Index ready: generation %s, %d files, %d chunks (%d updated) in %dms",
            result.generation, result.files, result.chunks, result.chunks_updated, result.elapsed_ms,
        )
        return result

    async def _full_build(self, previous: IndexMetadata | None, head: str | None) -> BuildResult:
        files = await self._scan()
        chunks = await self._chunk(files)
        chunks, enriched = await self._enrich(chunks, estimate_total_tokens(chunks))

        extract = DatabaseExtract()
        if self.config.database is not None and self.config.database.enabled and not self.skip_database:
            extract = await self.database_extractor(self.config.database)

        code_vectors = await self._embed(chunks)
        db_vectors = await self._embed(extract.chunks)

        generation = self.handle.new_generation()
        try:
            await self._write_generation(
                generation,
                list(zip(chunks, code_vectors)),
                list(zip(extract.chunks, db_vectors)),
            )
            database = None
            if extract.chunks or (self.config.database is not None and self.config.database.enabled):
                database = DatabaseStats(
                    tables=extract.tables,
                    chunks=len(extract.chunks),
                    config_tables=extract.config_tables,
                )
            self._commit(generation, previous, head, _codebase_stats(chunks), database)
        except BaseException:
            self.handle.discard(generation)
            raise

        return BuildResult(
            files=len({c.file_path for c in chunks}),
            chunks=len(chunks),
            chunks_updated=len(chunks),
            generation=generation.name,
            full=True,
            enriched=enriched,
        )

    async def _incremental(
        self,
        previous: IndexMetadata,
        head: str | None,
        changed_files: Sequence[str],
    ) -> BuildResult:
        changed = {p.replace("\\", "/").removeprefix("./") for p in changed_files}
        snapshot = await self._read_generation(self.handle.generation(previous.generation))

        kept = [(c, v) for c, v in snapshot.codebase if c.file_path not in changed]
        removed = len(snapshot.codebase) - len(kept)

        files = await self._scan(only=changed)
        chunks = await self._chunk(files)
        total_tokens = estimate_total_tokens([c for c, _ in kept]) + estimate_total_tokens(chunks)
        chunks, enriched = await self._enrich(chunks, total_tokens)
        vectors = await self._embed(chunks)

        codebase = kept + list(zip(chunks, vectors))
        generation = self.handle.new_generation()
        try:
            await self._write_generation(generation, codebase, snapshot.database)
            self._commit(
                generation,
                previous,
                head,
                _codebase_stats([c for c, _ in codebase]),
                previous.database,
            )
        except BaseException:
            self.handle.discard(generation)
            raise

        logger.info(
            "Incremental refresh: %d changed files, %d chunks removed, %d added",
            len(changed), removed, len(chunks),
        )
        return BuildResult(
            files=len({c.file_path for c, _ in codebase}),
            chunks=len(codebase),
            chunks_updated=len(chunks),
            generation=generation.name,
            full=False,
            enriched=enriched,
        )

    def _touch(self, previous: IndexMetadata, head: str | None) -> BuildResult:
        """Nothing changed: keep the generation, record the check."""
        self.handle.write_metadata(previous.model_copy(update={
            "last_updated": utcnow(),
            "git_head": head or previous.git_head,
        }))
        return BuildResult(
            files=previous.codebase.files,
            chunks=previous.codebase.chunks,
            chunks_updated=0,
            generation=previous.generation,
            full=False,
        )

    # ── Stages ───────────────────────────────────────────────

    async def _scan(self, only: set[str] | None = None) -> list[SourceFile]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None,
            lambda: scan_codebase(
                self.handle.project_root,
                self.config.codebase,
                only=only,
                skip_dirs=(".git", self.settings.index_dir_name),
            ),
        )

    async def _chunk(self, files: Sequence[SourceFile]) -> list[Chunk]:
        """Chunk files in parallel on a thread pool, keeping file order."""
        if not files:
            return []
        loop = asyncio.get_running_loop()
        strategy = self.config.codebase.chunk_strategy
        with ThreadPoolExecutor(max_workers=max(1, self.settings.chunk_workers)) as pool:
            per_file = await asyncio.gather(*(
                loop.run_in_executor(pool, chunk_file, source, strategy) for source in files
            ))
        return [chunk for chunks in per_file for chunk in chunks]

    async def _enrich(self, chunks: list[Chunk], total_tokens: int) -> tuple[list[Chunk], int]:
        if not chunks or not self.contextual:
            return chunks, 0
        enricher = self.enricher_factory(total_tokens)
        if enricher is None:
            return chunks, 0
        enriched = await enricher.enrich(chunks)
        return enriched, sum(1 for c in enriched if c.context)

    async def _embed(self, chunks: Sequence[Chunk]) -> list[list[float]]:
        if not chunks:
            return []

        def progress(done: int, total: int) -> None:
            logger.info("Embedded %d/%d chunks", done, total)

        results = await self.provider.embed_chunks(chunks, on_progress=progress)
        return [r.vector for r in results]

    async def _read_generation(self, generation: Generation) -> _Snapshot:
        """Copy the committed collections into memory, closing each store afterwards."""
        snapshot = _Snapshot()
        dimensions = self.provider.dimensions
        if generation.codebase_path.exists():
            async with VectorStore(generation.codebase_path, dimensions) as store:
                snapshot.codebase = await store.scroll_all()
        if generation.database_path.exists():
            async with VectorStore(generation.database_path, dimensions) as store:
                snapshot.database = await store.scroll_all()
        snapshot.codebase.sort(key=lambda item: (item[0].file_path, item[0].start_line))
        snapshot.database.sort(key=lambda item: (item[0].file_path, item[0].start_line))
        return snapshot

    async def _write_generation(
        self,
        generation: Generation,
        codebase: Sequence[tuple[Chunk, list[float]]],
        database: Sequence[tuple[Chunk, list[float]]],
    ) -> None:
        await self._write_store(generation.codebase_path, codebase)
        if database:
            await self._write_store(generation.database_path, database)
        keyword_index = BM25Index.build([c for c, _ in codebase] + [c for c, _ in database])
        keyword_index.save(generation.bm25_path)

    async def _write_store(self, path: Path, items: Sequence[tuple[Chunk, list[float]]]) -> None:
        async with VectorStore(path, self.provider.dimensions) as store:
            await store.upsert(
                [c for c, _ in items],
                [EmbeddingResult(chunk_id=c.id, vector=v) for c, v in items],
            )

    def _commit(
        self,
        generation: Generation,
        previous: IndexMetadata | None,
        head: str | None,
        codebase: CodebaseStats,
        database: DatabaseStats | None,
    ) -> None:
        """Swap the new generation in, then drop all but it and its predecessor."""
        now = utcnow()
        metadata = IndexMetadata(
            generation=generation.name,
            created_at=previous.created_at if previous else now,
            last_updated=now,
            git_head=head,
            codebase=codebase,
            database=database,
            config=IndexConfigSnapshot(
                embedding_model=self.provider.model,
                embedding_dimensions=self.provider.dimensions,
                chunk_strategy=self.config.codebase.chunk_strategy,
                contextual_retrieval=self.config.contextual_retrieval,
            ),
        )
        self.handle.write_metadata(metadata)
        logger.info("Swapped in index generation %s", generation.name)

        keep = {generation.name}
        if previous is not None:
            keep.add(previous.generation)
        self.handle.collect_garbage(keep)

    def _check_compatible(self, previous: IndexMetadata) -> None:
        snapshot = previous.config
        if (
            snapshot.embedding_model != self.provider.model
            or snapshot.embedding_dimensions != self.provider.dimensions
        ):
            raise ConfigurationError(
                f"Index was built with {snapshot.embedding_model} "
                f"({snapshot.embedding_dimensions} dimensions); the configured provider uses "
                f"{self.provider.model} ({self.provider.dimensions}). Run a full refresh."
            )

    def _default_enricher(self, total_tokens: int) -> ContextualEnricher | None:
        return create_enricher(
            self.config,
            self.handle.project_root,
            total_tokens,
            settings=self.settings,
        )

