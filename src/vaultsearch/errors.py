"""Error taxonomy shared by the indexing, retrieval and reconciliation code."""

from __future__ import annotations


class VaultSearchError(Exception):
    """Base class for all VaultSearch errors."""


class InvalidPath(VaultSearchError, ValueError):
    """A document path was rejected by the sanitizer."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Invalid path {path!r}: {reason}")
        self.path = path
        self.reason = reason


class ParseWarning(UserWarning):
    """Front-matter could not be parsed; the raw text was used as the body."""


class EmbeddingFailure(VaultSearchError):
    """The embedding service rejected or failed a request."""


class EmbeddingDimensionMismatch(EmbeddingFailure):
    """Embedding output does not match the configured index shape.

    Unlike other embedding failures this one is fatal for a run.
    """


class StoreIOFailure(VaultSearchError):
    """A vector-store or content-store operation failed."""


class ConfigurationMissing(VaultSearchError):
    """A required setting or binding is missing or invalid."""
