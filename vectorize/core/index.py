"""Index handle — owns the on-disk layout, committed metadata and the writer lock.

Layout under ``<project>/.vectorindex/``::

    metadata.json                       committed IndexMetadata (names the generation)
    writer.lock                         single-writer lock, holds the writer's pid
    generations/<gen>/codebase.qdrant/  vector store collections
    generations/<gen>/database.qdrant/
    generations/<gen>/bm25/             keyword index

Writers build a brand-new generation and swap it in by rewriting
``metadata.json``; readers resolve the generation once and never see a
partially written one.
"""

from __future__ import annotations

import logging
import os
import shutil
import time
import uuid
from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass
from pathlib import Path

from pydantic import ValidationError

from vectorize.core.config import Settings, get_settings
from vectorize.core.exceptions import ConfigurationError, RefreshInProgressError
from vectorize.models.base import utcnow
from vectorize.models.metadata import IndexMetadata
from vectorize.services.bm25 import BM25Index
from vectorize.services.vector_store import VectorStore

logger = logging.getLogger(__name__)

METADATA_FILE = "metadata.json"
LOCK_FILE = "writer.lock"
GENERATIONS_DIR = "generations"
# Seconds a freshly created lock file may stay empty before it counts as abandoned
LOCK_WRITE_GRACE = 5.0


@dataclass(frozen=True)
class Generation:
    """One immutable, fully written set of collections."""
    name: str
    path: Path

    @property
    def codebase_path(self) -> Path:
        return self.path / "codebase.qdrant"

    @property
    def database_path(self) -> Path:
        return self.path / "database.qdrant"

    @property
    def bm25_path(self) -> Path:
        return self.path / "bm25"


class IndexHandle:
    """Explicit per-project index state, passed to every component that touches the index."""

    def __init__(self, project_root: Path, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()
        self.project_root = project_root.resolve()
        self.root = self.project_root / self.settings.index_dir_name
        self._stores: dict[Path, VectorStore] = {}

    @property
    def metadata_path(self) -> Path:
        return self.root / METADATA_FILE

    @property
    def lock_path(self) -> Path:
        return self.root / LOCK_FILE

    @property
    def generations_path(self) -> Path:
        return self.root / GENERATIONS_DIR

    # ── Metadata ─────────────────────────────────────────────

    def exists(self) -> bool:
        return self.read_metadata() is not None

    def read_metadata(self) -> IndexMetadata | None:
        """Committed metadata, or ``None`` when no index has been built."""
        if not self.metadata_path.exists():
            return None
        try:
            metadata = IndexMetadata.model_validate_json(self.metadata_path.read_bytes())
        except ValidationError as exc:
            raise ConfigurationError(f"Corrupt index metadata at {self.metadata_path}: {exc}") from exc
        if not self.generation(metadata.generation).path.is_dir():
            logger.warning("Index metadata names missing generation %s", metadata.generation)
            return None
        return metadata

    def write_metadata(self, metadata: IndexMetadata) -> None:
        """Atomically replace ``metadata.json``; this is the commit point of every refresh."""
        self.root.mkdir(parents=True, exist_ok=True)
        tmp_path = self.root / f".{METADATA_FILE}.{os.getpid()}.tmp"
        tmp_path.write_text(metadata.model_dump_json(indent=2), encoding="utf-8")
        os.replace(tmp_path, self.metadata_path)

    # ── Generations ──────────────────────────────────────────

    def generation(self, name: str) -> Generation:
        return Generation(name=name, path=self.generations_path / name)

    def active_generation(self) -> Generation | None:
        metadata = self.read_metadata()
        return self.generation(metadata.generation) if metadata else None

    def new_generation(self) -> Generation:
        name = f"{utcnow():%Y%m%dT%H%M%S}-{uuid.uuid4().hex[:8]}"
        generation = self.generation(name)
        generation.path.mkdir(parents=True)
        return generation

    def discard(self, generation: Generation) -> None:
        shutil.rmtree(generation.path, ignore_errors=True)

    def collect_garbage(self, keep: set[str]) -> list[str]:
        """Remove generations not named in ``keep``. Returns the removed names."""
        if not self.generations_path.is_dir():
            return []
        removed = []
        for path in self.generations_path.iterdir():
            if path.is_dir() and path.name not in keep:
                shutil.rmtree(path, ignore_errors=True)
                removed.append(path.name)
        if removed:
            logger.debug("Removed old index generations: %s", ", ".join(sorted(removed)))
        return removed

    # ── Collections ──────────────────────────────────────────

    async def open_store(self, path: Path, dimensions: int) -> VectorStore:
        """Open (or reuse) a vector store that is closed together with the handle."""
        store = self._stores.get(path)
        if store is not None and store.dimensions == dimensions:
            await store.open()
            return store
        if store is not None:
            await self._stores.pop(path).close()
        store = self._stores[path] = VectorStore(path, dimensions)
        try:
            await store.open()
        except BaseException:
            if self._stores.get(path) is store:
                del self._stores[path]
            raise
        return store

    def load_bm25(self, generation: Generation) -> BM25Index:
        return BM25Index.load(generation.bm25_path)

    async def close(self) -> None:
        while self._stores:
            _, store = self._stores.popitem()
            await store.close()

    # ── Writer lock ──────────────────────────────────────────

    @contextmanager
    def writer_lock(self) -> Iterator[None]:
        """Hold the single-writer lock for the duration of the block.

        Raises:
            RefreshInProgressError: A live process (this one included) holds the lock.
        """
        self.root.mkdir(parents=True, exist_ok=True)
        fd = self._acquire_lock()
        with os.fdopen(fd, "w") as lock_file:
            lock_file.write(str(os.getpid()))
        try:
            yield
        finally:
            self.lock_path.unlink(missing_ok=True)

    def _acquire_lock(self) -> int:
        try:
            return os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            pass
        holder = self.lock_holder()
        if holder is not None and _pid_alive(holder):
            raise RefreshInProgressError(f"Index is being refreshed by process {holder}")
        if holder is None and self._lock_age() < LOCK_WRITE_GRACE:
            # Just created; the pid has not been written yet
            raise RefreshInProgressError("Index is being refreshed by another process")
        logger.warning("Reclaiming stale index lock left by process %s", holder)
        self.lock_path.unlink(missing_ok=True)
        try:
            return os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            raise RefreshInProgressError("Index is being refreshed by another process") from None

    def lock_holder(self) -> int | None:
        try:
            return int(self.lock_path.read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            return None

    def _lock_age(self) -> float:
        try:
            return time.time() - self.lock_path.stat().st_mtime
        except OSError:
            return LOCK_WRITE_GRACE

    def is_locked(self) -> bool:
        holder = self.lock_holder()
        return holder is not None and _pid_alive(holder)

    # ── Reporting ────────────────────────────────────────────

    def storage_size(self) -> int:
        """Total bytes under the index directory."""
        if not self.root.exists():
            return 0
        return sum(p.stat().st_size for p in self.root.rglob("*") if p.is_file())


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


@asynccontextmanager
async def open_index(
    project_root: Path,
    settings: Settings | None = None,
) -> AsyncIterator[IndexHandle]:
    """Open the project's index; stores opened through the handle are closed on exit."""
    handle = IndexHandle(project_root, settings)
    try:
        yield handle
    finally:
        await handle.close()
