"""Retrieval orchestrator: cache, canonicalize, embed, search, post-process."""

from __future__ import annotations

import contextlib
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional

from ..config import RetrievalConfig
from ..core.cache import CacheStore
from ..core.canonical import canonicalize
from ..core.embeddings import EmbeddingProvider
from ..core.index import CaseIndex, validate_search_params
from ..core.models import FilterSortParams, Query, SearchResult
from ..errors import (
    EmbeddingUnavailable,
    InternalError,
    InvalidInput,
    ProviderUnavailable,
    SimilarCasesError,
)
from ..utils.hashing import make_cache_key
from .postprocess import apply_filters

LOGGER = logging.getLogger(__name__)

UNAVAILABLE_MESSAGE = "Similar cases unavailable"
_MAX_BACKOFF_S = 8.0


@dataclass
class RetrievalOutcome:
    """Result of a lookup that degrades instead of raising."""

    available: bool
    results: List[SearchResult] = field(default_factory=list)
    message: Optional[str] = None


class _Flight:
    __slots__ = ("lock", "waiters", "results")

    def __init__(self):
        self.lock = threading.Lock()
        self.waiters = 0
        self.results: Optional[List[SearchResult]] = None


class SimilarCaseRetriever:
    """
    Answer "which recorded cases resemble this one?" for a single query.

    The retriever owns no global state: the embedding provider, case index and
    cache store are handed in by the caller (see :func:`..session.build_retriever`).
    Cache failures never fail a request; a failed read counts as a miss and a
    failed write is logged and dropped. With ``coalesce_identical`` enabled,
    concurrent misses for the same cache key share a single embed+search.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        index: CaseIndex,
        cache: Optional[CacheStore] = None,
        cfg: Optional[RetrievalConfig] = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.provider = provider
        self.index = index
        self.cache = cache
        self.cfg = cfg or RetrievalConfig()
        self._sleep = sleep
        self._lock = threading.Lock()
        self._flights: Dict[str, _Flight] = {}
        self.stats: Dict[str, int] = {
            "requests": 0,
            "cache_hits": 0,
            "cache_misses": 0,
            "cache_errors": 0,
            "coalesced": 0,
            "embed_calls": 0,
            "embed_retries": 0,
        }

    def _bump(self, key: str, n: int = 1) -> None:
        with self._lock:
            self.stats[key] = self.stats.get(key, 0) + n

    # ------------------------------------------------------------------
    # Cache helpers
    # ------------------------------------------------------------------

    def cache_params(self, query: Query, filters: FilterSortParams, num_candidates: int, limit: int) -> dict:
        return {
            "query": query.to_dict(),
            "filters": filters.to_dict(),
            "search": {"numCandidates": int(num_candidates), "limit": int(limit)},
            "model": self.provider.signature,
        }

    def _cache_get(self, key: str) -> Optional[List[SearchResult]]:
        if self.cache is None:
            return None
        try:
            value = self.cache.get(key)
            if value is None:
                return None
            return [SearchResult.from_dict(item) for item in value]
        except Exception as exc:  # noqa: BLE001 - cache is best-effort
            self._bump("cache_errors")
            LOGGER.warning("Cache read failed; treating as miss: %s", exc, extra={"cache_key": key})
            return None

    def _cache_set(self, key: str, params: dict, results: List[SearchResult]) -> None:
        if self.cache is None:
            return
        try:
            self.cache.set(
                key,
                self.cfg.operation,
                params,
                [r.to_dict() for r in results],
                int(self.cfg.cache.ttl_ms),
            )
        except Exception as exc:  # noqa: BLE001 - cache is best-effort
            self._bump("cache_errors")
            LOGGER.warning("Cache write failed; result not cached: %s", exc, extra={"cache_key": key})

    @contextlib.contextmanager
    def _single_flight(self, key: str) -> Iterator[Optional[_Flight]]:
        if not self.cfg.coalesce_identical:
            yield None
            return
        with self._lock:
            flight = self._flights.get(key)
            if flight is None:
                flight = self._flights[key] = _Flight()
            flight.waiters += 1
        try:
            with flight.lock:
                yield flight
        finally:
            with self._lock:
                flight.waiters -= 1
                if flight.waiters == 0:
                    self._flights.pop(key, None)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _embed_with_retry(self, text: str) -> List[float]:
        attempts = max(1, int(self.cfg.embedding.retry_max))
        backoff = max(0.0, float(self.cfg.embedding.retry_backoff))
        last_exc: Optional[Exception] = None
        for attempt in range(1, attempts + 1):
            self._bump("embed_calls")
            try:
                vectors = self.provider.embed([text])
            except ProviderUnavailable as exc:
                last_exc = exc
                if attempt == attempts:
                    break
                delay = min(_MAX_BACKOFF_S, backoff * (2 ** (attempt - 1)))
                self._bump("embed_retries")
                LOGGER.warning(
                    "Embedding attempt %d/%d failed; retrying in %.2fs: %s",
                    attempt,
                    attempts,
                    delay,
                    exc,
                )
                if delay > 0:
                    self._sleep(delay)
                continue
            if not vectors:
                raise EmbeddingUnavailable("Embedding provider returned no vector.")
            return vectors[0]
        LOGGER.error("Embedding failed after %d attempt(s)", attempts, extra={"backend": self.provider.backend_name})
        raise EmbeddingUnavailable(f"Embedding failed after {attempts} attempt(s): {last_exc}") from last_exc

    def _compute(self, query: Query, filters: FilterSortParams, num_candidates: int, limit: int) -> List[SearchResult]:
        text = canonicalize(query)
        vector = self._embed_with_retry(text)
        results = self.index.search(vector, num_candidates=num_candidates, limit=limit)
        if not results:
            LOGGER.info("No similar cases found", extra={"num_candidates": num_candidates, "limit": limit})
            return []
        return apply_filters(results, filters)

    def find_similar_cases(
        self,
        query: Query,
        filters: Optional[FilterSortParams] = None,
        *,
        num_candidates: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[SearchResult]:
        """Return ranked, filtered cases similar to ``query``; identical requests hit the cache."""

        self._bump("requests")
        query.validate()
        filters = filters or FilterSortParams()
        num_candidates = int(self.cfg.search.num_candidates if num_candidates is None else num_candidates)
        limit = int(self.cfg.search.limit if limit is None else limit)
        validate_search_params(num_candidates, limit)

        params = self.cache_params(query, filters, num_candidates, limit)
        key = make_cache_key(self.cfg.operation, params)
        cached = self._cache_get(key)
        if cached is not None:
            self._bump("cache_hits")
            return cached

        try:
            with self._single_flight(key) as flight:
                if flight is not None and flight.results is not None:
                    self._bump("coalesced")
                    return list(flight.results)
                if flight is not None and flight.waiters > 1:
                    cached = self._cache_get(key)
                    if cached is not None:
                        self._bump("cache_hits")
                        return cached
                self._bump("cache_misses")
                results = self._compute(query, filters, num_candidates, limit)
                if flight is not None:
                    flight.results = list(results)
        except SimilarCasesError:
            raise
        except Exception as exc:
            LOGGER.exception("Similar-case retrieval failed unexpectedly", extra={"cache_key": key})
            raise InternalError() from exc

        self._cache_set(key, params, results)
        return results

    def find_similar_cases_or_unavailable(
        self, query: Query, filters: Optional[FilterSortParams] = None
    ) -> RetrievalOutcome:
        """Like :meth:`find_similar_cases` but reports upstream failures instead of raising.

        Invalid input still raises :class:`InvalidInput`.
        """

        try:
            results = self.find_similar_cases(query, filters)
        except InvalidInput:
            raise
        except SimilarCasesError as exc:
            LOGGER.warning("%s: %s", UNAVAILABLE_MESSAGE, exc)
            return RetrievalOutcome(available=False, message=UNAVAILABLE_MESSAGE)
        return RetrievalOutcome(available=True, results=results)

    def get_case_details(self, case_id: str) -> Optional[dict]:
        if not isinstance(case_id, str) or not case_id.strip():
            raise InvalidInput(details=[{"path": "id", "message": "Case ID is required."}])
        return self.index.get_case(case_id.strip())


__all__ = ["RetrievalOutcome", "SimilarCaseRetriever", "UNAVAILABLE_MESSAGE"]
