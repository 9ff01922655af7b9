"""Tests for contextual enrichment with an injected completion function."""

from pathlib import Path

import pytest

from vectorize.core.config import Settings, VectorizationConfig
from vectorize.core.exceptions import ProviderError, TransientProviderError
from vectorize.models.chunk import Chunk, ChunkKind
from vectorize.services.contextual import (
    MAX_DOCUMENT_CHARS,
    ContextualEnricher,
    build_context_prompt,
    create_enricher,
    should_enable_contextual,
)
from vectorize.services.retry import RetryPolicy


def _chunk(path: str, start: int, content: str) -> Chunk:
    return Chunk.create(
        content=content,
        file_path=path,
        start_line=start,
        end_line=start,
        language="python",
        kind=ChunkKind.CODE,
    )


@pytest.fixture
def source_tree(tmp_path: Path) -> Path:
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "a.py").write_text("def alpha():\n    return 1\n\ndef beta():\n    return 2\n")
    (tmp_path / "src" / "b.py").write_text("def gamma():\n    return 3\n")
    return tmp_path


def test_prompt_truncates_long_documents():
    prompt = build_context_prompt("x" * (MAX_DOCUMENT_CHARS + 10), "def f(): pass")
    assert "...[truncated]" in prompt
    assert "<chunk>\ndef f(): pass\n</chunk>" in prompt

    short = build_context_prompt("short doc", "chunk")
    assert "...[truncated]" not in short


def test_auto_enables_only_for_large_codebases():
    assert should_enable_contextual("always", 10)
    assert not should_enable_contextual("never", 10_000_000)
    assert not should_enable_contextual("auto", 50_000)
    assert should_enable_contextual("auto", 50_001)


@pytest.mark.asyncio
async def test_enrich_adds_context_and_reads_each_file_once(source_tree, monkeypatch):
    prompts = []

    async def complete(prompt: str) -> str:
        prompts.append(prompt)
        return "  Situated in the module.  "

    reads = []
    original = Path.read_text

    def counting_read(self, *args, **kwargs):
        reads.append(self.name)
        return original(self, *args, **kwargs)

    monkeypatch.setattr(Path, "read_text", counting_read)
    chunks = [
        _chunk("src/a.py", 1, "def alpha():\n    return 1"),
        _chunk("src/a.py", 4, "def beta():\n    return 2"),
        _chunk("src/b.py", 1, "def gamma():\n    return 3"),
    ]
    enricher = ContextualEnricher(complete, source_tree, settings=Settings(project_root=source_tree, _env_file=None))

    enriched = await enricher.enrich(chunks)

    assert [c.id for c in enriched] == [c.id for c in chunks]
    assert all(c.context == "Situated in the module." for c in enriched)
    assert sorted(reads) == ["a.py", "b.py"]
    assert len(prompts) == 3
    assert "def beta" in prompts[1]


@pytest.mark.asyncio
async def test_failed_chunks_keep_no_context(source_tree):
    async def complete(prompt: str) -> str:
        if "gamma" in prompt.split("<chunk>")[1]:
            raise ProviderError("model refused")
        return "context"

    chunks = [
        _chunk("src/a.py", 1, "def alpha():\n    return 1"),
        _chunk("src/b.py", 1, "def gamma():\n    return 3"),
    ]
    enricher = ContextualEnricher(complete, source_tree, settings=Settings(project_root=source_tree, _env_file=None))

    enriched = await enricher.enrich(chunks)

    assert enriched[0].context == "context"
    assert enriched[1].context is None
    assert enriched[1].content == chunks[1].content


@pytest.mark.asyncio
async def test_transient_failures_are_retried(source_tree):
    attempts = {"count": 0}

    async def complete(prompt: str) -> str:
        attempts["count"] += 1
        if attempts["count"] == 1:
            raise TransientProviderError("overloaded")
        return "context after retry"

    enricher = ContextualEnricher(
        complete,
        source_tree,
        settings=Settings(project_root=source_tree, _env_file=None),
        retry_policy=RetryPolicy(max_attempts=3, base_delay=0.0),
    )
    enriched = await enricher.enrich([_chunk("src/b.py", 1, "def gamma():\n    return 3")])

    assert enriched[0].context == "context after retry"
    assert attempts["count"] == 2


@pytest.mark.asyncio
async def test_unreadable_file_is_skipped(source_tree):
    async def complete(prompt: str) -> str:
        raise AssertionError("should not be called")

    enricher = ContextualEnricher(complete, source_tree, settings=Settings(project_root=source_tree, _env_file=None))
    enriched = await enricher.enrich([_chunk("src/missing.py", 1, "def gone():\n    pass")])
    assert enriched[0].context is None


def test_create_enricher_requires_a_key(monkeypatch, tmp_path):
    config = VectorizationConfig.model_validate({"contextualRetrieval": "always"})
    settings = Settings(project_root=tmp_path, _env_file=None)

    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    assert create_enricher(config, tmp_path, 10, settings) is None

    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-test")
    assert isinstance(create_enricher(config, tmp_path, 10, settings), ContextualEnricher)

    never = VectorizationConfig.model_validate({"contextualRetrieval": "never"})
    assert create_enricher(never, tmp_path, 10_000_000, settings) is None
