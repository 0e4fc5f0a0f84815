"""Semantic similar-case retrieval.

Use :func:`build_retriever` to assemble a :class:`SimilarCaseRetriever` from
configuration, or the handlers in :mod:`.api` to serve it over HTTP.
"""

from .api import handle_case_details, handle_method_not_allowed, handle_similar_cases
from .config import Paths, RetrievalConfig
from .core.models import FilterSortParams, Query, SearchResult, SimilarCasesRequest, Vitals
from .errors import (
    EmbeddingUnavailable,
    IndexUnavailable,
    InternalError,
    InvalidInput,
    SimilarCasesError,
)
from .services.retrieval import RetrievalOutcome, SimilarCaseRetriever
from .session import build_case_index, build_retriever

# Layering overview:
# - core.*: canonicalizer, embedding providers, cache stores, case index, data model
# - services.*: post-processing and the retrieval orchestrator
# - session.py: explicit construction of provider, index and cache
# - api.py / cli.py: external entrypoints

__all__ = [
    "EmbeddingUnavailable",
    "FilterSortParams",
    "IndexUnavailable",
    "InternalError",
    "InvalidInput",
    "Paths",
    "Query",
    "RetrievalConfig",
    "RetrievalOutcome",
    "SearchResult",
    "SimilarCaseRetriever",
    "SimilarCasesError",
    "SimilarCasesRequest",
    "Vitals",
    "build_case_index",
    "build_retriever",
    "handle_case_details",
    "handle_method_not_allowed",
    "handle_similar_cases",
]
