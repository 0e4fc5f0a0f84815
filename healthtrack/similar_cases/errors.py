"""Error taxonomy for similar-case retrieval.

Every error raised across a component boundary derives from
:class:`SimilarCasesError` and carries the transport status it maps to, so the
request handlers in :mod:`.api` never need to inspect messages to pick a code.
"""

from __future__ import annotations

from typing import Any, Optional, Sequence


class SimilarCasesError(RuntimeError):
    """Base class for retrieval failures."""

    status_code: int = 500
    public_message: str = "An unexpected error occurred while processing your request."

    def __init__(self, message: str = "", *, details: Optional[Sequence[Any]] = None):
        super().__init__(message or self.public_message)
        self.details = list(details or [])


class InvalidInput(SimilarCasesError):
    """Caller error: empty note, malformed filters or vitals. Never retried."""

    status_code = 400
    public_message = "Invalid input data."


class EmptyQueryVector(InvalidInput):
    """A zero-length query vector was handed to the index."""


class ProviderUnavailable(SimilarCasesError):
    """Raised by an embedding backend on network, auth or response-shape failures."""

    status_code = 502
    public_message = "Error communicating with the embedding service."


class EmbeddingUnavailable(SimilarCasesError):
    """Embedding failed after the retry budget was spent."""

    status_code = 502
    public_message = "Error communicating with the embedding service."


class IndexUnavailable(SimilarCasesError):
    """The vector index is missing, unreadable, or configured for another dimension."""

    status_code = 503
    public_message = "Error querying the case index for similar cases."


class CacheUnavailable(SimilarCasesError):
    """Cache store I/O failed. Absorbed by the orchestrator, never surfaced."""


class InternalError(SimilarCasesError):
    """Unexpected failure; the original exception is chained, not exposed."""


def status_for(exc: BaseException) -> int:
    if isinstance(exc, SimilarCasesError):
        return int(exc.status_code)
    return 500


__all__ = [
    "CacheUnavailable",
    "EmbeddingUnavailable",
    "EmptyQueryVector",
    "IndexUnavailable",
    "InternalError",
    "InvalidInput",
    "ProviderUnavailable",
    "SimilarCasesError",
    "status_for",
]
