from __future__ import annotations

import sys
import threading
import time
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from healthtrack.similar_cases.config import RetrievalConfig
from healthtrack.similar_cases.core.cache import CacheStore, MemoryCacheStore, SQLiteCacheStore
from healthtrack.similar_cases.core.index import CaseIndex, IndexConfig
from healthtrack.similar_cases.core.models import CaseRecord, FilterSortParams, Query
from healthtrack.similar_cases.errors import (
    CacheUnavailable,
    EmbeddingUnavailable,
    IndexUnavailable,
    InternalError,
    InvalidInput,
)
from healthtrack.similar_cases.services.retrieval import UNAVAILABLE_MESSAGE, SimilarCaseRetriever
from healthtrack.similar_cases.testing import HashingEmbeddingProvider

NOTES = {
    "c1": ("crushing chest pain radiating to left arm with diaphoresis", 65, "M"),
    "c2": ("productive cough fever and right lower lobe crackles", 30, "F"),
    "c3": ("sudden severe headache with neck stiffness and photophobia", 45, "F"),
}


def _index(dim: int = 64) -> CaseIndex:
    corpus_provider = HashingEmbeddingProvider(dim=dim)
    records = [
        CaseRecord(cid, corpus_provider.embed([note])[0], note=note, age=age, sex=sex)
        for cid, (note, age, sex) in NOTES.items()
    ]
    return CaseIndex(IndexConfig(type="flat")).build(records)


def _cfg(**embedding) -> RetrievalConfig:
    cfg = RetrievalConfig()
    cfg.search.num_candidates = 150
    cfg.search.limit = 10
    cfg.embedding.retry_max = 3
    cfg.embedding.retry_backoff = 0.5
    cfg.cache.ttl_ms = 60_000
    cfg.coalesce_identical = True
    for key, value in embedding.items():
        setattr(cfg.embedding, key, value)
    return cfg


class _Sleeps(list):
    def __call__(self, seconds: float) -> None:
        self.append(seconds)


class _BrokenCache(CacheStore):
    def __init__(self) -> None:
        super().__init__()
        self.reads = 0
        self.writes = 0

    def get_entry(self, key):
        self.reads += 1
        raise CacheUnavailable("disk gone")

    def set(self, key, operation, params, value, ttl_ms):
        self.writes += 1
        raise CacheUnavailable("disk gone")


def _query(case_id: str = "c1") -> Query:
    return Query(note_text=NOTES[case_id][0])


def test_second_identical_request_is_served_from_cache(tmp_path: Path):
    provider = HashingEmbeddingProvider(dim=64)
    cache = SQLiteCacheStore(tmp_path / "cache.sqlite")
    retriever = SimilarCaseRetriever(provider, _index(), cache, _cfg())

    first = retriever.find_similar_cases(_query())
    second = retriever.find_similar_cases(_query())

    assert len(provider.calls) == 1
    assert first == second
    assert first[0].case_id == "c1"
    assert first[0].similarity == pytest.approx(1.0, abs=1e-5)
    assert retriever.stats["cache_hits"] == 1
    assert retriever.stats["cache_misses"] == 1


def test_results_are_ranked_and_bounded():
    retriever = SimilarCaseRetriever(HashingEmbeddingProvider(dim=64), _index(), MemoryCacheStore(), _cfg())

    results = retriever.find_similar_cases(_query("c3"))

    assert results[0].case_id == "c3"
    assert len(results) <= 10
    scores = [r.similarity for r in results]
    assert scores == sorted(scores, reverse=True)
    assert all("embedding" not in r.to_dict() for r in results)


def test_different_filters_use_different_cache_entries():
    provider = HashingEmbeddingProvider(dim=64)
    retriever = SimilarCaseRetriever(provider, _index(), MemoryCacheStore(), _cfg())

    everyone = retriever.find_similar_cases(_query())
    women = retriever.find_similar_cases(_query(), FilterSortParams(sex="f"))

    assert len(provider.calls) == 2
    assert {r.case_id for r in women} == {"c2", "c3"}
    assert len(everyone) == 3


def test_filters_that_exclude_everything_return_empty_list():
    retriever = SimilarCaseRetriever(HashingEmbeddingProvider(dim=64), _index(), MemoryCacheStore(), _cfg())

    assert retriever.find_similar_cases(_query(), FilterSortParams(min_age=90)) == []


def test_limit_zero_returns_empty_list():
    retriever = SimilarCaseRetriever(HashingEmbeddingProvider(dim=64), _index(), None, _cfg())

    assert retriever.find_similar_cases(_query(), limit=0) == []


def test_broken_cache_degrades_to_uncached_search():
    cache = _BrokenCache()
    retriever = SimilarCaseRetriever(HashingEmbeddingProvider(dim=64), _index(), cache, _cfg())

    results = retriever.find_similar_cases(_query())

    assert results[0].case_id == "c1"
    assert cache.writes == 1
    assert retriever.stats["cache_errors"] >= 2


def test_transient_embedding_failures_are_retried_with_backoff():
    provider = HashingEmbeddingProvider(dim=64, fail_first=2)
    sleeps = _Sleeps()
    retriever = SimilarCaseRetriever(provider, _index(), None, _cfg(), sleep=sleeps)

    results = retriever.find_similar_cases(_query())

    assert results[0].case_id == "c1"
    assert len(provider.calls) == 3
    assert sleeps == [0.5, 1.0]
    assert retriever.stats["embed_retries"] == 2


def test_exhausted_retries_raise_embedding_unavailable():
    provider = HashingEmbeddingProvider(dim=64, fail_first=10)
    sleeps = _Sleeps()
    retriever = SimilarCaseRetriever(provider, _index(), None, _cfg(), sleep=sleeps)

    with pytest.raises(EmbeddingUnavailable):
        retriever.find_similar_cases(_query())

    assert len(provider.calls) == 3
    assert len(sleeps) == 2


def test_empty_note_is_rejected_without_embedding():
    provider = HashingEmbeddingProvider(dim=64)
    retriever = SimilarCaseRetriever(provider, _index(), MemoryCacheStore(), _cfg())

    with pytest.raises(InvalidInput):
        retriever.find_similar_cases(Query(note_text="   "))

    assert provider.calls == []


def test_missing_index_propagates_index_unavailable():
    retriever = SimilarCaseRetriever(HashingEmbeddingProvider(dim=64), CaseIndex(), None, _cfg())

    with pytest.raises(IndexUnavailable):
        retriever.find_similar_cases(_query())


def test_unexpected_failure_is_wrapped_as_internal_error():
    class _ExplodingIndex(CaseIndex):
        def search(self, query_vector, num_candidates=150, limit=10):
            raise RuntimeError("segfault-ish")

    retriever = SimilarCaseRetriever(HashingEmbeddingProvider(dim=64), _ExplodingIndex(), None, _cfg())

    with pytest.raises(InternalError) as exc_info:
        retriever.find_similar_cases(_query())

    assert "segfault" not in str(exc_info.value)
    assert isinstance(exc_info.value.__cause__, RuntimeError)


def test_or_unavailable_reports_instead_of_raising():
    provider = HashingEmbeddingProvider(dim=64, fail_first=10)
    retriever = SimilarCaseRetriever(provider, _index(), None, _cfg(), sleep=_Sleeps())

    outcome = retriever.find_similar_cases_or_unavailable(_query())

    assert outcome.available is False
    assert outcome.results == []
    assert outcome.message == UNAVAILABLE_MESSAGE


def test_or_unavailable_passes_results_through():
    retriever = SimilarCaseRetriever(HashingEmbeddingProvider(dim=64), _index(), None, _cfg())

    outcome = retriever.find_similar_cases_or_unavailable(_query("c2"))

    assert outcome.available is True
    assert outcome.results[0].case_id == "c2"


def test_concurrent_identical_misses_share_one_embedding():
    class _SlowProvider(HashingEmbeddingProvider):
        def _embed_batch(self, texts):
            time.sleep(0.3)
            return super()._embed_batch(texts)

    provider = _SlowProvider(dim=64)
    retriever = SimilarCaseRetriever(provider, _index(), None, _cfg())
    results: list = []
    start = threading.Barrier(4)

    def worker():
        start.wait()
        results.append(retriever.find_similar_cases(_query()))

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(provider.calls) == 1
    assert retriever.stats["coalesced"] == 3
    assert all(r == results[0] for r in results)


def test_get_case_details():
    retriever = SimilarCaseRetriever(HashingEmbeddingProvider(dim=64), _index(), None, _cfg())

    details = retriever.get_case_details("c2")

    assert details["case_id"] == "c2"
    assert "embedding" not in details
    assert retriever.get_case_details("nope") is None
    with pytest.raises(InvalidInput):
        retriever.get_case_details("  ")


def test_changing_a_cached_result_does_not_leak_into_later_hits():
    provider = HashingEmbeddingProvider(dim=64)
    index = CaseIndex(IndexConfig(type="flat")).build(
        [CaseRecord("c1", provider.embed([NOTES["c1"][0]])[0], note=NOTES["c1"][0], vitals={"hr": 110})]
    )
    retriever = SimilarCaseRetriever(provider, index, MemoryCacheStore(), _cfg())

    retriever.find_similar_cases(_query())
    hit = retriever.find_similar_cases(_query())
    hit[0].vitals["hr"] = 999

    assert retriever.find_similar_cases(_query())[0].vitals == {"hr": 110}
    assert index.get_case("c1")["vitals"] == {"hr": 110}
    assert retriever.stats["cache_hits"] == 2
