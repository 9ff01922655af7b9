"""Contextual enrichment — a short LLM-written description situating each chunk in its file.

Flow:
  1. Group chunks by file and read each file once
  2. Ask the model, per chunk, for a succinct situating context
  3. Attach the context; failures leave the chunk as it was
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from pathlib import Path

from litellm import acompletion

from vectorize.core.config import Settings, VectorizationConfig, get_settings, resolve_credential
from vectorize.core.exceptions import VectorizeError
from vectorize.models.chunk import Chunk
from vectorize.services.chunking import estimate_tokens
from vectorize.services.retry import RetryPolicy, classify_provider_error, retry_async

logger = logging.getLogger(__name__)

CompletionFn = Callable[[str], Awaitable[str]]

# Codebases above this many estimated tokens are enriched under "auto"
AUTO_ENABLE_TOKENS = 50_000
MAX_DOCUMENT_CHARS = 50_000
CONTEXT_MAX_TOKENS = 150

CONTEXT_PROMPT = """<document>
{document}
</document>

Here is the chunk we want to situate within the whole document:

<chunk>
{chunk}
</chunk>

Please give a short succinct context to situate this chunk within the overall document \
for the purposes of improving search retrieval of the chunk. Answer only with the \
succinct context and nothing else."""


def build_context_prompt(document: str, chunk_content: str) -> str:
    if len(document) > MAX_DOCUMENT_CHARS:
        document = document[:MAX_DOCUMENT_CHARS] + "\n...[truncated]"
    return CONTEXT_PROMPT.format(document=document, chunk=chunk_content)


def estimate_total_tokens(chunks: Sequence[Chunk]) -> int:
    return sum(estimate_tokens(chunk.content) for chunk in chunks)


def should_enable_contextual(
    setting: str,
    total_tokens: int,
    threshold: int = AUTO_ENABLE_TOKENS,
) -> bool:
    if setting == "always":
        return True
    if setting == "auto":
        return total_tokens > threshold
    return False


def litellm_completion(model: str, api_key: str | None = None) -> CompletionFn:
    """Build a completion function backed by LiteLLM's ``acompletion``."""

    async def complete(prompt: str) -> str:
        kwargs: dict = {
            "model": model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": CONTEXT_MAX_TOKENS,
        }
        if api_key:
            kwargs["api_key"] = api_key
        try:
            response = await acompletion(**kwargs)
        except Exception as exc:
            raise classify_provider_error(exc, "context generation") from exc
        return (response.choices[0].message.content or "").strip()

    return complete


class ContextualEnricher:
    """Adds ``context`` to chunks using an injected completion function."""

    def __init__(
        self,
        complete: CompletionFn,
        project_root: Path,
        settings: Settings | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.complete = complete
        self.project_root = project_root
        self.settings = settings or get_settings()
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=self.settings.retry_max_attempts,
            base_delay=self.settings.retry_base_delay,
        )

    async def enrich(self, chunks: Sequence[Chunk]) -> list[Chunk]:
        """Return the chunks in the same order, each with context when generation succeeded."""
        documents: dict[str, str | None] = {}
        for chunk in chunks:
            if chunk.file_path not in documents:
                documents[chunk.file_path] = self._read_document(chunk.file_path)

        semaphore = asyncio.Semaphore(max(1, self.settings.contextual_concurrency))

        async def run(chunk: Chunk) -> Chunk:
            document = documents[chunk.file_path]
            if document is None:
                return chunk
            async with semaphore:
                context = await self._generate(document, chunk)
            return chunk.with_context(context)

        enriched = await asyncio.gather(*(run(chunk) for chunk in chunks))
        added = sum(1 for chunk in enriched if chunk.context)
        logger.info("Added context to %d/%d chunks", added, len(enriched))
        return list(enriched)

    async def _generate(self, document: str, chunk: Chunk) -> str | None:
        prompt = build_context_prompt(document, chunk.content)

        async def call() -> str:
            return await self.complete(prompt)

        try:
            context = await retry_async(
                call,
                self.retry_policy,
                description=f"context for {chunk.id}",
            )
        except VectorizeError as exc:
            logger.warning("Failed to generate context for %s: %s", chunk.id, exc)
            return None
        return context.strip() or None

    def _read_document(self, file_path: str) -> str | None:
        try:
            return (self.project_root / file_path).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            logger.debug("Cannot read %s for context, skipping its chunks", file_path)
            return None


def create_enricher(
    config: VectorizationConfig,
    project_root: Path,
    total_tokens: int,
    settings: Settings | None = None,
) -> ContextualEnricher | None:
    """Return an enricher when enrichment applies and a credential is available."""
    settings = settings or get_settings()
    if not should_enable_contextual(config.contextual_retrieval, total_tokens):
        return None
    api_key = resolve_credential(config.credentials.anthropic)
    if not api_key:
        logger.warning("Contextual retrieval requested but no Anthropic API key is set; skipping")
        return None
    return ContextualEnricher(
        litellm_completion(settings.contextual_model, api_key),
        project_root,
        settings=settings,
    )
