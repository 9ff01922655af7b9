"""Error taxonomy for the indexing and retrieval engine."""

from __future__ import annotations


class VectorizeError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(VectorizeError):
    """Bad credentials, mismatched dimensions, invalid globs. Never retried."""


class ProviderError(VectorizeError):
    """A provider call failed for good (non-transient, or retries exhausted)."""


class TransientProviderError(ProviderError):
    """Rate limiting, timeouts, connection errors and 5xx responses."""

    def __init__(self, message: str, *, rate_limited: bool = False) -> None:
        super().__init__(message)
        self.rate_limited = rate_limited


class ParseError(VectorizeError):
    """The chunker could not build a syntax tree. Always handled inside the chunker."""


class IndexMissingError(VectorizeError):
    """No committed index exists for the project."""


class RefreshInProgressError(VectorizeError):
    """Another writer holds the index lock."""


class IndexBusyError(VectorizeError):
    """Another process keeps the index collections open."""


class RefreshTimeoutError(VectorizeError):
    """A refresh exceeded its wall-clock budget and was abandoned."""


class StaleIndexWarning(UserWarning):
    """The index is older than the configured max age. Advisory only."""
