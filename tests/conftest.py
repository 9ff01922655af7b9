"""Shared test fixtures."""

import hashlib
import json
import math
from collections.abc import AsyncGenerator, Sequence
from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient

from vectorize.api.deps import get_embedding_provider
from vectorize.core.config import Settings, VectorizationConfig, get_settings
from vectorize.core.exceptions import ProviderError
from vectorize.core.index import open_index
from vectorize.main import app
from vectorize.services.bm25 import tokenize
from vectorize.services.embedding import EmbeddingProvider

DIMENSIONS = 64


def fake_vector(text: str, dimensions: int = DIMENSIONS) -> list[float]:
    """Hashed bag-of-words unit vector: texts sharing terms land close together."""
    vector = [0.0] * dimensions
    for term in tokenize(text):
        bucket = int(hashlib.md5(term.encode()).hexdigest(), 16) % dimensions
        vector[bucket] += 1.0
    norm = math.sqrt(sum(v * v for v in vector))
    if norm == 0:
        vector[0] = 1.0
        return vector
    return [v / norm for v in vector]


class FakeEmbeddingProvider(EmbeddingProvider):
    """Deterministic, offline provider. ``fail_on_call`` makes the Nth batch fail for good."""

    name = "fake"
    model = "fake-embedding"
    dimensions = DIMENSIONS
    max_batch_size = 8

    def __init__(self, settings: Settings | None = None, fail_on_call: int | None = None) -> None:
        super().__init__(settings=settings)
        self.fail_on_call = fail_on_call
        self.calls = 0
        self.embedded: list[str] = []

    async def embed_texts(self, texts: Sequence[str]) -> list[list[float]]:
        self.calls += 1
        if self.fail_on_call is not None and self.calls >= self.fail_on_call:
            raise ProviderError("fake provider is down")
        self.embedded.extend(texts)
        return [fake_vector(t) for t in texts]


# ── Project fixtures ─────────────────────────────────────────

USER_SERVICE_TS = """\
import { db } from "./db";

export function getUserById(id: string) {
  return db.users.find((user) => user.id === id);
}

export function deleteUser(id: string) {
  db.users.remove(id);
  return true;
}
"""

BILLING_PY = """\
def compute_invoice_total(items, tax_rate):
    subtotal = sum(item.price * item.quantity for item in items)
    return round(subtotal * (1 + tax_rate), 2)


class InvoiceMailer:
    def send(self, invoice, address):
        return f"sending invoice {invoice.id} to {address}"
"""

GUIDE_MD = """\
# Deployment guide

Deploy the service with docker compose and point it at the database.

## Rollback

To roll back a release, redeploy the previous image tag.
"""


def write_project(root: Path, files: dict[str, str], config: dict | None = None) -> Path:
    for rel_path, content in files.items():
        path = root / rel_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    manifest = {
        "name": "fixture",
        "vectorization": config or {
            "codebase": {"include": ["src/**", "docs/**"], "exclude": []},
            "contextualRetrieval": "never",
        },
    }
    (root / "project.json").write_text(json.dumps(manifest), encoding="utf-8")
    return root


@pytest.fixture
def project(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    return write_project(root, {
        "src/user-service.ts": USER_SERVICE_TS,
        "src/billing.py": BILLING_PY,
        "docs/guide.md": GUIDE_MD,
    })


@pytest.fixture
def settings(project: Path) -> Settings:
    return Settings(
        project_root=project,
        retry_base_delay=0.0,
        refresh_timeout=120.0,
        _env_file=None,
    )


@pytest.fixture
def config() -> VectorizationConfig:
    return VectorizationConfig.model_validate({
        "codebase": {"include": ["src/**", "docs/**"], "exclude": []},
        "contextualRetrieval": "never",
    })


@pytest.fixture
def provider(settings: Settings) -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider(settings=settings)


@pytest.fixture
async def handle(project: Path, settings: Settings):
    async with open_index(project, settings) as h:
        yield h


@pytest.fixture
async def client(settings: Settings) -> AsyncGenerator[AsyncClient, None]:
    """HTTPX async test client with settings and provider overrides."""
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_embedding_provider] = lambda: FakeEmbeddingProvider(settings=settings)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
