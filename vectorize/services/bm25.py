"""Inverted BM25 index over chunk text, persisted as JSON."""

from __future__ import annotations

import json
import logging
import math
import re
from collections import Counter
from collections.abc import Iterable
from pathlib import Path

from vectorize.models.chunk import Chunk

logger = logging.getLogger(__name__)

INDEX_VERSION = "1.0.0"
DEFAULT_K1 = 1.5
DEFAULT_B = 0.75

INDEX_FILE = "index.json"
TERM_CHUNKS_FILE = "term-chunks.json"

STOP_WORDS = frozenset({
    "a", "an", "and", "are", "as", "at", "be", "by", "for", "from",
    "has", "he", "in", "is", "it", "its", "of", "on", "or", "that",
    "the", "to", "was", "were", "will", "with", "this", "but", "they",
    "have", "had", "what", "when", "where", "who", "which", "why", "how",
    "all", "each", "every", "both", "few", "more", "most", "other",
    "some", "such", "no", "nor", "not", "only", "own", "same", "so",
    "than", "too", "very", "can", "just", "should", "now",
    # Code keywords
    "function", "const", "let", "var", "return", "if", "else", "import",
    "export", "default", "class", "new", "async", "await", "try", "catch",
    "throw", "true", "false", "null", "undefined", "void", "type",
})

_SPLIT_RE = re.compile(r"[^A-Za-z0-9_]+")
_CAMEL_RE = re.compile(r"[A-Z]+(?![a-z])|[A-Z]?[a-z]+|[0-9]+")


def tokenize(text: str) -> list[str]:
    """Lower-cased terms plus camelCase / snake_case sub-terms.

    ``getUserById`` yields ``getuserbyid``, ``get``, ``user``, ``id``. Sub-terms
    pass through the same stop-word filter as whole terms.
    """
    terms: list[str] = []
    for raw in _SPLIT_RE.split(text):
        term = raw.lower()
        if len(term) <= 1 or term in STOP_WORDS:
            continue
        terms.append(term)

        parts = [p for piece in raw.split("_") for p in _CAMEL_RE.findall(piece)]
        if len(parts) > 1:
            for part in parts:
                sub = part.lower()
                if len(sub) > 1 and sub not in STOP_WORDS:
                    terms.append(sub)
    return terms


class BM25Index:
    """Posting lists, document lengths and collection statistics for BM25 scoring."""

    def __init__(self, k1: float = DEFAULT_K1, b: float = DEFAULT_B) -> None:
        self.k1 = k1
        self.b = b
        self.document_lengths: dict[str, int] = {}
        self.term_frequencies: dict[str, dict[str, int]] = {}
        self.document_frequencies: dict[str, int] = {}
        self.avg_document_length = 0.0

    @classmethod
    def build(cls, chunks: Iterable[Chunk], k1: float = DEFAULT_K1, b: float = DEFAULT_B) -> BM25Index:
        index = cls(k1=k1, b=b)
        for chunk in chunks:
            index._add(chunk.id, chunk.content)
        index._recompute_lengths()
        return index

    @property
    def document_count(self) -> int:
        return len(self.document_lengths)

    def _add(self, chunk_id: str, text: str) -> None:
        tokens = tokenize(text)
        self.document_lengths[chunk_id] = len(tokens)
        for term, count in Counter(tokens).items():
            postings = self.term_frequencies.setdefault(term, {})
            postings[chunk_id] = count
            self.document_frequencies[term] = len(postings)

    def _recompute_lengths(self) -> None:
        count = len(self.document_lengths)
        self.avg_document_length = sum(self.document_lengths.values()) / count if count else 0.0

    def search(self, query: str, top_k: int = 20) -> list[tuple[str, float]]:
        """Score every document containing at least one query term.

        Returns:
            ``(chunk_id, score)`` pairs with a positive score, best first.
            Equal scores keep document insertion order.
        """
        terms = [t for t in tokenize(query) if t in self.term_frequencies]
        if not terms or not self.document_lengths:
            return []

        candidates: set[str] = set()
        for term in terms:
            candidates.update(self.term_frequencies[term])

        n = self.document_count
        avg_length = self.avg_document_length or 1.0
        scores: list[tuple[str, float]] = []
        for chunk_id in self.document_lengths:
            if chunk_id not in candidates:
                continue
            length = self.document_lengths[chunk_id]
            score = 0.0
            for term in terms:
                tf = self.term_frequencies[term].get(chunk_id)
                if not tf:
                    continue
                df = self.document_frequencies[term]
                idf = math.log((n - df + 0.5) / (df + 0.5) + 1)
                norm = tf * (self.k1 + 1) / (tf + self.k1 * (1 - self.b + self.b * length / avg_length))
                score += idf * norm
            if score > 0:
                scores.append((chunk_id, score))

        scores.sort(key=lambda item: -item[1])
        return scores[:top_k]

    # ── Persistence ──────────────────────────────────────────

    def to_dict(self) -> dict:
        return {
            "version": INDEX_VERSION,
            "k1": self.k1,
            "b": self.b,
            "avg_document_length": self.avg_document_length,
            "document_count": self.document_count,
            "document_lengths": self.document_lengths,
            "term_frequencies": self.term_frequencies,
            "document_frequencies": self.document_frequencies,
        }

    def save(self, directory: Path) -> None:
        directory.mkdir(parents=True, exist_ok=True)
        (directory / INDEX_FILE).write_text(json.dumps(self.to_dict()), encoding="utf-8")
        term_chunks = {term: list(postings) for term, postings in self.term_frequencies.items()}
        (directory / TERM_CHUNKS_FILE).write_text(json.dumps(term_chunks), encoding="utf-8")
        logger.debug(
            "Saved BM25 index: %d documents, %d terms", self.document_count, len(self.term_frequencies)
        )

    @classmethod
    def load(cls, directory: Path) -> BM25Index:
        """Load a saved index; a missing index loads as empty."""
        path = directory / INDEX_FILE
        if not path.exists():
            return cls()
        data = json.loads(path.read_text(encoding="utf-8"))
        index = cls(k1=data["k1"], b=data["b"])
        index.document_lengths = data["document_lengths"]
        index.term_frequencies = data["term_frequencies"]
        index.document_frequencies = data["document_frequencies"]
        index.avg_document_length = data["avg_document_length"]
        return index
