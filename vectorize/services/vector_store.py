"""Qdrant vector store service: shared local-mode clients, upsert, search, scroll."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from qdrant_client import AsyncQdrantClient
from qdrant_client.models import (
    Distance,
    FieldCondition,
    Filter,
    MatchAny,
    PointStruct,
    VectorParams,
)

from vectorize.core.exceptions import ConfigurationError, IndexBusyError
from vectorize.models.chunk import Chunk, EmbeddingResult

logger = logging.getLogger(__name__)

# Each store directory holds exactly one collection
COLLECTION_NAME = "chunks"
UPSERT_BATCH_SIZE = 256
SCROLL_PAGE_SIZE = 256

# Local mode allows one client per directory; readers wait briefly for the writer
OPEN_ATTEMPTS = 20
OPEN_RETRY_DELAY = 0.1


def point_id(chunk_id: str) -> str:
    """Deterministic Qdrant point id for a chunk id."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, chunk_id))


def similarity_from_distance(distance: float) -> float:
    """Map an unbounded L2 distance into ``(0, 1]``."""
    return 1.0 / (1.0 + distance)


@dataclass
class VectorHit:
    """A chunk retrieved by vector search, with its L2 distance from the query."""
    chunk: Chunk
    distance: float

    @property
    def similarity(self) -> float:
        return similarity_from_distance(self.distance)


def build_filter(
    kinds: Sequence[str] | None = None,
    languages: Sequence[str] | None = None,
) -> Filter | None:
    conditions = []
    if kinds:
        conditions.append(FieldCondition(key="kind", match=MatchAny(any=list(kinds))))
    if languages:
        conditions.append(FieldCondition(key="language", match=MatchAny(any=list(languages))))
    return Filter(must=conditions) if conditions else None


@dataclass
class _SharedClient:
    client: AsyncQdrantClient
    refs: int = 0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


# Open local-mode clients by resolved directory, shared by every store in this process
_clients: dict[Path, _SharedClient] = {}


def _acquire_client(key: Path) -> _SharedClient:
    """Take a reference on the directory's client, creating it if needed.

    Synchronous so that concurrent openers never race between lookup and insert.

    Raises:
        RuntimeError: Another process holds the directory.
    """
    shared = _clients.get(key)
    if shared is None:
        shared = _SharedClient(AsyncQdrantClient(path=str(key)))
        _clients[key] = shared
    shared.refs += 1
    return shared


def open_client_count() -> int:
    return len(_clients)


class VectorStore:
    """One on-disk collection (``codebase`` or ``database``) in Qdrant local mode.

    Use as an async context manager. Stores on the same directory share one
    client, which is closed when the last of them closes so the directory can
    be opened again by another process.
    """

    def __init__(self, path: Path, dimensions: int) -> None:
        self.path = path
        self.dimensions = dimensions
        self._shared: _SharedClient | None = None

    async def __aenter__(self) -> VectorStore:
        await self.open()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    @property
    def client(self) -> AsyncQdrantClient:
        if self._shared is None:
            raise RuntimeError(f"vector store {self.path} is not open")
        return self._shared.client

    async def open(self) -> None:
        """Attach to the directory's client and check the collection.

        Raises:
            IndexBusyError: Another process kept the directory open for the
                whole retry window.
            ConfigurationError: The collection has another dimension.
        """
        if self._shared is not None:
            return
        self.path.mkdir(parents=True, exist_ok=True)
        key = self.path.resolve()
        for attempt in range(1, OPEN_ATTEMPTS + 1):
            try:
                self._shared = _acquire_client(key)
                break
            except RuntimeError as exc:
                if "already accessed" not in str(exc):
                    raise
                if attempt == OPEN_ATTEMPTS:
                    raise IndexBusyError(f"Vector store {self.path} is in use by another process") from exc
                await asyncio.sleep(OPEN_RETRY_DELAY)
        try:
            async with self._shared.lock:
                await self.ensure_collection()
        except BaseException:
            await self.close()
            raise

    async def close(self) -> None:
        shared, self._shared = self._shared, None
        if shared is None:
            return
        shared.refs -= 1
        if shared.refs == 0:
            key = self.path.resolve()
            if _clients.get(key) is shared:
                del _clients[key]
            await shared.client.close()

    async def ensure_collection(self) -> None:
        """Create the collection if missing; refuse to reuse one of another dimension."""
        if await self.client.collection_exists(COLLECTION_NAME):
            info = await self.client.get_collection(COLLECTION_NAME)
            size = info.config.params.vectors.size
            if size != self.dimensions:
                raise ConfigurationError(
                    f"Collection at {self.path} holds {size}-dimensional vectors, "
                    f"embedding model produces {self.dimensions}"
                )
            return
        await self.client.create_collection(
            collection_name=COLLECTION_NAME,
            vectors_config=VectorParams(size=self.dimensions, distance=Distance.EUCLID),
        )

    async def upsert(self, chunks: Sequence[Chunk], embeddings: Sequence[EmbeddingResult]) -> None:
        """Upsert chunks with their vectors (matched by chunk id)."""
        vectors = {e.chunk_id: e.vector for e in embeddings}
        points = []
        for chunk in chunks:
            vector = vectors[chunk.id]
            if len(vector) != self.dimensions:
                raise ConfigurationError(
                    f"Refusing {len(vector)}-dimensional vector for {chunk.id} "
                    f"in a {self.dimensions}-dimensional collection"
                )
            points.append(PointStruct(id=point_id(chunk.id), vector=vector, payload=chunk.to_payload()))

        for i in range(0, len(points), UPSERT_BATCH_SIZE):
            await self.client.upsert(
                collection_name=COLLECTION_NAME,
                points=points[i : i + UPSERT_BATCH_SIZE],
            )

    async def search(
        self,
        query_vector: list[float],
        limit: int,
        kinds: Sequence[str] | None = None,
        languages: Sequence[str] | None = None,
    ) -> list[VectorHit]:
        """Nearest chunks by L2 distance, closest first."""
        response = await self.client.query_points(
            collection_name=COLLECTION_NAME,
            query=query_vector,
            query_filter=build_filter(kinds, languages),
            limit=limit,
            with_payload=True,
        )
        # Local mode may report Euclidean distance negated
        hits = [
            VectorHit(chunk=Chunk.from_payload(point.payload), distance=abs(point.score))
            for point in response.points
        ]
        hits.sort(key=lambda hit: hit.distance)
        return hits

    async def retrieve(self, chunk_ids: Sequence[str]) -> list[Chunk]:
        if not chunk_ids:
            return []
        records = await self.client.retrieve(
            collection_name=COLLECTION_NAME,
            ids=[point_id(cid) for cid in chunk_ids],
            with_payload=True,
        )
        return [Chunk.from_payload(record.payload) for record in records]

    async def scroll_all(self) -> list[tuple[Chunk, list[float]]]:
        """Every stored chunk with its vector."""
        results: list[tuple[Chunk, list[float]]] = []
        offset = None
        while True:
            records, offset = await self.client.scroll(
                collection_name=COLLECTION_NAME,
                limit=SCROLL_PAGE_SIZE,
                offset=offset,
                with_payload=True,
                with_vectors=True,
            )
            results.extend((Chunk.from_payload(r.payload), list(r.vector)) for r in records)
            if offset is None:
                break
        return results
