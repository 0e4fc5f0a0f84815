"""Core primitives for similar-case retrieval."""

from .cache import CacheStore, MemoryCacheStore, SQLiteCacheStore
from .canonical import canonicalize, normalize_text
from .corpus import load_case_records
from .embeddings import EmbeddingProvider, build_embedding_provider
from .index import CaseIndex, IndexConfig
from .models import (
    CacheEntry,
    CaseRecord,
    FilterSortParams,
    Query,
    SearchResult,
    SimilarCasesRequest,
    Vitals,
)

__all__ = [
    "CacheEntry",
    "CacheStore",
    "CaseIndex",
    "CaseRecord",
    "EmbeddingProvider",
    "FilterSortParams",
    "IndexConfig",
    "MemoryCacheStore",
    "Query",
    "SQLiteCacheStore",
    "SearchResult",
    "SimilarCasesRequest",
    "Vitals",
    "build_embedding_provider",
    "canonicalize",
    "load_case_records",
    "normalize_text",
]
