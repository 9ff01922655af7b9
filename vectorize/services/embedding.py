"""Embedding service — wraps LiteLLM for provider-agnostic vector generation."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence

from litellm import aembedding

from vectorize.core.config import Settings, VectorizationConfig, get_settings, resolve_credential
from vectorize.core.exceptions import ConfigurationError, ProviderError
from vectorize.models.chunk import Chunk, EmbeddingResult
from vectorize.services.retry import RetryPolicy, classify_provider_error, retry_async

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


class EmbeddingProvider:
    """Turns text into fixed-dimension vectors through LiteLLM.

    Subclasses only pin the model, its dimension and the batch ceiling.
    """

    name: str = ""
    model: str = ""
    dimensions: int = 0
    max_batch_size: int = 100

    def __init__(
        self,
        api_key: str | None = None,
        api_base: str | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.api_key = api_key
        self.api_base = api_base
        self.settings = settings or get_settings()
        self.retry_policy = RetryPolicy(
            max_attempts=self.settings.retry_max_attempts,
            base_delay=self.settings.retry_base_delay,
        )

    @property
    def litellm_model(self) -> str:
        return self.model

    async def embed_query(self, text: str) -> list[float]:
        vectors = await self._embed_with_retry([text])
        return vectors[0]

    async def embed_texts(self, texts: Sequence[str]) -> list[list[float]]:
        """Embed a single batch (at most ``max_batch_size`` texts), input order preserved."""
        if not texts:
            return []
        if len(texts) > self.max_batch_size:
            raise ValueError(f"batch of {len(texts)} exceeds {self.max_batch_size} for {self.name}")

        kwargs: dict = {"model": self.litellm_model, "input": [self._truncate(t) for t in texts]}
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base

        try:
            response = await aembedding(**kwargs)
        except Exception as exc:
            raise classify_provider_error(exc, f"{self.name} embedding") from exc

        vectors = [item["embedding"] for item in response.data]
        if len(vectors) != len(texts):
            raise ProviderError(f"{self.name} returned {len(vectors)} vectors for {len(texts)} inputs")
        for vector in vectors:
            if len(vector) != self.dimensions:
                raise ConfigurationError(
                    f"{self.model} returned {len(vector)}-dimensional vectors, "
                    f"expected {self.dimensions}"
                )
        return vectors

    async def embed_chunks(
        self,
        chunks: Sequence[Chunk],
        on_progress: ProgressCallback | None = None,
    ) -> list[EmbeddingResult]:
        """Embed chunks in batches, several batches in flight at once.

        Each batch gets the configured timeout and retry policy. If any batch
        fails for good, the batches still running are cancelled and the error
        propagates, so no partial result is ever returned.

        Args:
            chunks: Chunks to embed (context prepended when present).
            on_progress: Called with ``(embedded, total)`` as batches finish.

        Returns:
            One result per chunk, in input order.
        """
        if not chunks:
            return []

        total = len(chunks)
        batches = [
            list(chunks[i : i + self.max_batch_size])
            for i in range(0, total, self.max_batch_size)
        ]
        semaphore = asyncio.Semaphore(max(1, self.settings.embedding_concurrency))
        done = 0

        async def run(batch: list[Chunk]) -> list[list[float]]:
            nonlocal done
            async with semaphore:
                vectors = await self._embed_with_retry([c.embedding_text for c in batch])
            done += len(batch)
            if on_progress:
                on_progress(done, total)
            return vectors

        tasks = [asyncio.create_task(run(batch)) for batch in batches]
        try:
            batch_vectors = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        results: list[EmbeddingResult] = []
        for batch, vectors in zip(batches, batch_vectors):
            results.extend(
                EmbeddingResult(chunk_id=chunk.id, vector=vector)
                for chunk, vector in zip(batch, vectors)
            )
        return results

    async def _embed_with_retry(self, texts: list[str]) -> list[list[float]]:
        timeout = self.settings.embedding_batch_timeout

        async def attempt() -> list[list[float]]:
            try:
                return await asyncio.wait_for(self.embed_texts(texts), timeout=timeout)
            except asyncio.TimeoutError as exc:
                raise classify_provider_error(exc, f"{self.name} embedding timed out") from exc

        return await retry_async(attempt, self.retry_policy, description=f"{self.name} embedding")

    def _truncate(self, text: str) -> str:
        limit = self.settings.max_embedding_chars
        if len(text) > limit:
            logger.warning("Truncating embedding input from %d to %d chars", len(text), limit)
            return text[:limit]
        return text


class OpenAIEmbeddingProvider(EmbeddingProvider):
    name = "openai"
    model = "text-embedding-3-small"
    dimensions = 1536
    max_batch_size = 100


class VoyageEmbeddingProvider(EmbeddingProvider):
    name = "voyage"
    model = "voyage-code-2"
    dimensions = 1536
    max_batch_size = 100

    @property
    def litellm_model(self) -> str:
        return f"voyage/{self.model}"


class LocalEmbeddingProvider(EmbeddingProvider):
    """Ollama-served model; one text per request."""

    name = "ollama"
    model = "nomic-embed-text"
    dimensions = 768
    max_batch_size = 1

    @property
    def litellm_model(self) -> str:
        return f"ollama/{self.model}"


PROVIDERS: dict[str, type[EmbeddingProvider]] = {
    "openai": OpenAIEmbeddingProvider,
    "voyage": VoyageEmbeddingProvider,
    "ollama": LocalEmbeddingProvider,
}


def create_embedding_provider(
    config: VectorizationConfig,
    settings: Settings | None = None,
    indexed_model: str | None = None,
) -> EmbeddingProvider:
    """Instantiate the configured provider.

    ``auto`` prefers OpenAI, then Voyage, then a local Ollama model, depending
    on which credentials resolve. Passing ``indexed_model`` (the model an
    existing index was built with) resolves ``auto`` to that model's provider,
    so queries keep matching the index.

    Raises:
        ConfigurationError: An explicitly selected hosted provider has no key.
    """
    settings = settings or get_settings()
    choice = config.embedding_model
    openai_key = resolve_credential(config.credentials.openai)
    voyage_key = resolve_credential(config.credentials.voyage)

    if choice == "auto" and indexed_model:
        choice = provider_for_model(indexed_model) or "auto"

    if choice == "auto":
        if openai_key:
            choice = "openai"
        elif voyage_key:
            choice = "voyage"
        else:
            choice = "ollama"
        logger.info("Auto-selected %s embeddings", choice)

    if choice == "openai":
        if not openai_key:
            raise ConfigurationError("OpenAI embeddings selected but no OpenAI API key is set")
        return OpenAIEmbeddingProvider(api_key=openai_key, settings=settings)
    if choice == "voyage":
        if not voyage_key:
            raise ConfigurationError("Voyage embeddings selected but no Voyage API key is set")
        return VoyageEmbeddingProvider(api_key=voyage_key, settings=settings)
    return LocalEmbeddingProvider(api_base=settings.ollama_base_url, settings=settings)


def provider_for_model(model: str) -> str | None:
    """Provider name for a model id recorded in index metadata."""
    for name, provider_cls in PROVIDERS.items():
        if provider_cls.model == model:
            return name
    return None
