from __future__ import annotations

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from healthtrack.similar_cases.core.cache import MemoryCacheStore, SQLiteCacheStore
from healthtrack.similar_cases.errors import CacheUnavailable
from healthtrack.similar_cases.utils.hashing import canonical_json, make_cache_key


class _Clock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture(params=["memory", "sqlite"])
def store_and_clock(request, tmp_path: Path):
    clock = _Clock()
    if request.param == "memory":
        return MemoryCacheStore(clock=clock), clock
    return SQLiteCacheStore(tmp_path / "cache.sqlite", clock=clock), clock


def test_cache_key_ignores_key_order():
    a = make_cache_key("similar-cases", {"query": {"note": "x", "age": 3}, "limit": 10})
    b = make_cache_key("similar-cases", {"limit": 10, "query": {"age": 3, "note": "x"}})

    assert a == b
    assert len(a) == 64


def test_cache_key_depends_on_operation_and_params():
    base = make_cache_key("similar-cases", {"note": "x"})

    assert make_cache_key("other-op", {"note": "x"}) != base
    assert make_cache_key("similar-cases", {"note": "y"}) != base


def test_canonical_json_is_compact_and_sorted():
    assert canonical_json({"b": 1, "a": [1, 2]}) == '{"a":[1,2],"b":1}'


def test_set_then_get_returns_value(store_and_clock):
    store, _ = store_and_clock
    value = [{"case_id": "c1", "similarity": 0.9}]

    entry = store.set("k1", "similar-cases", {"note": "x"}, value, ttl_ms=60_000)

    assert store.get("k1") == value
    assert entry.expires_at > entry.created_at
    assert store.get("missing") is None


def test_entries_expire_at_ttl(store_and_clock):
    store, clock = store_and_clock
    store.set("k1", "similar-cases", {}, {"v": 1}, ttl_ms=1_000)

    clock.now += 0.5
    assert store.get("k1") == {"v": 1}

    clock.now += 0.5
    assert store.get("k1") is None


def test_same_key_overwrites(store_and_clock):
    store, _ = store_and_clock
    store.set("k1", "similar-cases", {}, {"v": 1}, ttl_ms=1_000)
    store.set("k1", "similar-cases", {}, {"v": 2}, ttl_ms=1_000)

    assert store.get("k1") == {"v": 2}


@pytest.mark.parametrize("ttl", [0, -5])
def test_non_positive_ttl_is_rejected(store_and_clock, ttl):
    store, _ = store_and_clock

    with pytest.raises(ValueError):
        store.set("k1", "similar-cases", {}, {"v": 1}, ttl_ms=ttl)


def test_purge_expired_removes_only_stale_entries(store_and_clock):
    store, clock = store_and_clock
    store.set("old", "similar-cases", {}, 1, ttl_ms=1_000)
    store.set("new", "similar-cases", {}, 2, ttl_ms=10_000)

    clock.now += 2

    assert store.purge_expired() == 1
    assert store.get("new") == 2
    assert store.get("old") is None


def test_memory_store_returns_copies():
    store = MemoryCacheStore()
    value = {"items": [1, 2]}
    store.set("k", "op", {}, value, ttl_ms=1_000)

    value["items"].append(3)

    assert store.get("k") == {"items": [1, 2]}

    store.get("k")["items"].append(4)

    assert store.get("k") == {"items": [1, 2]}


def test_sqlite_store_persists_across_instances(tmp_path: Path):
    path = tmp_path / "nested" / "cache.sqlite"
    SQLiteCacheStore(path).set("k", "similar-cases", {"a": 1}, ["x"], ttl_ms=60_000)

    reopened = SQLiteCacheStore(path)
    entry = reopened.get_entry("k")

    assert entry is not None
    assert entry.value == ["x"]
    assert entry.operation == "similar-cases"


def test_sqlite_store_unusable_path_raises_cache_unavailable(tmp_path: Path):
    with pytest.raises(CacheUnavailable):
        SQLiteCacheStore(tmp_path)


def test_sqlite_rejects_unserialisable_values(tmp_path: Path):
    store = SQLiteCacheStore(tmp_path / "cache.sqlite")

    with pytest.raises(CacheUnavailable):
        store.set("k", "op", {}, object(), ttl_ms=1_000)
