"""Centralized model pricing configuration.

Single source of truth for token costs (USD per 1M tokens), used by
``init --dry-run`` to estimate what a full build will cost.
"""

# Embedding models: USD per 1M input tokens. Local models are free.
EMBEDDING_PRICING: dict[str, float] = {
    "text-embedding-3-small": 0.02,
    "text-embedding-3-large": 0.13,
    "voyage-code-2":          0.12,
    "nomic-embed-text":       0.00,
}

# Completion models: (prompt_cost, completion_cost) per 1M tokens.
COMPLETION_PRICING: dict[str, tuple[float, float]] = {
    "claude-3-haiku-20240307":    (0.25,  1.25),
    "claude-haiku-4-5-20251001":  (0.80,  4.00),
    "gpt-4o-mini":                (0.15,  0.60),
}

DEFAULT_EMBEDDING_PRICING = 0.10
DEFAULT_COMPLETION_PRICING: tuple[float, float] = (1.00, 3.00)

# Approximate prompt overhead per enrichment call, on top of the file text
CONTEXT_PROMPT_OVERHEAD_TOKENS = 60
CONTEXT_COMPLETION_TOKENS = 100


def embedding_cost(model: str, tokens: int) -> float:
    """USD cost of embedding ``tokens`` tokens with ``model``."""
    return tokens * EMBEDDING_PRICING.get(model, DEFAULT_EMBEDDING_PRICING) / 1_000_000


def completion_cost(model: str, prompt_tokens: int, completion_tokens: int) -> float:
    prompt_rate, completion_rate = COMPLETION_PRICING.get(model, DEFAULT_COMPLETION_PRICING)
    return (prompt_tokens * prompt_rate + completion_tokens * completion_rate) / 1_000_000


def contextual_cost(model: str, chunk_tokens: list[int], document_tokens: list[int]) -> float:
    """Estimated cost of enriching chunks; each call sends its whole file plus the chunk.

    Args:
        model: Completion model used for enrichment.
        chunk_tokens: Estimated tokens per chunk.
        document_tokens: Estimated tokens of each chunk's (truncated) file, same order.
    """
    prompt = sum(
        doc + chunk + CONTEXT_PROMPT_OVERHEAD_TOKENS
        for chunk, doc in zip(chunk_tokens, document_tokens)
    )
    completion = CONTEXT_COMPLETION_TOKENS * len(chunk_tokens)
    return completion_cost(model, prompt, completion)
