"""Cross-encoder reranking via LiteLLM."""

from __future__ import annotations

import logging
from typing import Protocol

from litellm import arerank

from vectorize.core.config import VectorizationConfig, resolve_credential
from vectorize.services.retry import classify_provider_error

logger = logging.getLogger(__name__)

# Short aliases accepted in search.reranking.model
RERANK_MODELS = {
    "cohere": "cohere/rerank-english-v3.0",
}


class Reranker(Protocol):
    async def rerank(self, query: str, documents: list[str], top_n: int) -> list[tuple[int, float]]:
        """Return ``(document_index, relevance_score)`` pairs, most relevant first."""
        ...


class LiteLLMReranker:
    def __init__(self, model: str, api_key: str | None = None) -> None:
        self.model = RERANK_MODELS.get(model, model)
        self.api_key = api_key

    async def rerank(self, query: str, documents: list[str], top_n: int) -> list[tuple[int, float]]:
        if not documents:
            return []
        kwargs: dict = {
            "model": self.model,
            "query": query,
            "documents": documents,
            "top_n": min(top_n, len(documents)),
        }
        if self.api_key:
            kwargs["api_key"] = self.api_key
        try:
            response = await arerank(**kwargs)
        except Exception as exc:
            raise classify_provider_error(exc, "rerank") from exc
        return [(int(r["index"]), float(r["relevance_score"])) for r in response.results]


def create_reranker(config: VectorizationConfig) -> Reranker | None:
    """A reranker when ``search.reranking`` is enabled, otherwise ``None``."""
    reranking = config.search.reranking
    if reranking is None or not reranking.enabled:
        return None
    api_key = resolve_credential(config.credentials.cohere)
    if reranking.model.startswith("cohere") and not api_key:
        logger.warning("Reranking enabled but no Cohere API key is set; skipping")
        return None
    return LiteLLMReranker(reranking.model, api_key)
