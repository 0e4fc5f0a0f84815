"""Helpers to assemble the retrieval subsystem from configuration."""

from __future__ import annotations

import logging
from typing import Optional, Union

import pandas as pd

from .config import CacheConfig, Paths, RetrievalConfig
from .errors import IndexUnavailable
from .core.cache import CacheStore, MemoryCacheStore, SQLiteCacheStore
from .core.corpus import load_case_records
from .core.embeddings import EmbeddingProvider, build_embedding_provider
from .core.index import CaseIndex
from .services.retrieval import SimilarCaseRetriever

LOGGER = logging.getLogger(__name__)


def build_cache_store(cfg: CacheConfig, paths: Optional[Paths] = None) -> Optional[CacheStore]:
    backend = (cfg.backend or "sqlite").lower()
    if backend in {"none", "off", "disabled"}:
        return None
    if backend == "memory":
        return MemoryCacheStore(maxsize=cfg.memory_maxsize)
    if backend == "sqlite":
        path = cfg.path or (paths.cache_path if paths is not None else None)
        if not path:
            raise ValueError("sqlite cache backend needs CacheConfig.path or Paths.workdir")
        return SQLiteCacheStore(path, timeout=cfg.timeout)
    raise ValueError(f"Unsupported cache backend: {cfg.backend}")


def build_case_index(
    corpus: Union[str, pd.DataFrame],
    paths: Paths,
    cfg: RetrievalConfig,
    *,
    provider: Optional[EmbeddingProvider] = None,
) -> CaseIndex:
    """Load a corpus table, embed rows without vectors, build the index and persist it."""

    records = load_case_records(corpus, provider, batch_size=cfg.embedding.batch_size)
    index = CaseIndex(cfg.index).build(records)
    if cfg.index.persist:
        index.save(paths.index_dir)
    LOGGER.info(
        "Built case index",
        extra={
            "n_cases": len(index),
            "rejected": len(index.rejected_ids),
            "index_type": cfg.index.type,
            "index_dir": paths.index_dir,
        },
    )
    return index


def build_retriever(
    cfg: RetrievalConfig,
    paths: Paths,
    *,
    provider: Optional[EmbeddingProvider] = None,
    index: Optional[CaseIndex] = None,
    cache: Optional[CacheStore] = None,
) -> SimilarCaseRetriever:
    """Construct provider, index and cache explicitly and wire them into a retriever.

    Any component passed in is used as-is; the rest are built from ``cfg``.
    The index is loaded from ``paths.index_dir``.
    """

    if provider is None:
        provider = build_embedding_provider(cfg.embedding)
    if index is None:
        index = CaseIndex.load(paths.index_dir, cfg.index)
    if cache is None:
        cache = build_cache_store(cfg.cache, paths)
    if provider.dim is not None and index.dim is not None and provider.dim != index.dim:
        raise IndexUnavailable(
            f"embedding dimension {provider.dim} does not match index dimension {index.dim}"
        )
    return SimilarCaseRetriever(provider, index, cache, cfg)


__all__ = ["build_cache_store", "build_case_index", "build_retriever"]
