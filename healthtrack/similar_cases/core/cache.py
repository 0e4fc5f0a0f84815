"""Content-addressed result cache with explicit expiry.

Keys are produced by :func:`~..utils.hashing.make_cache_key` over the operation
name and a canonical JSON rendering of the request, so logically identical
requests map to the same entry. Entries past ``expires_at`` read as absent even
when the row still exists; :meth:`CacheStore.purge_expired` evicts them eagerly.
Writes with an existing key replace the entry.
"""

from __future__ import annotations

import contextlib
import copy
import json
import sqlite3
import threading
import time
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

from cachetools import LRUCache

from ..errors import CacheUnavailable
from ..utils.hashing import canonical_json, stable_hash_str
from .models import CacheEntry


def _params_digest(params: Any) -> str:
    return stable_hash_str(canonical_json(params), digest_size=16)


class CacheStore:
    """Interface for key/value stores with TTL."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def get_entry(self, key: str) -> Optional[CacheEntry]:
        raise NotImplementedError

    def get(self, key: str) -> Any:
        entry = self.get_entry(key)
        return None if entry is None else entry.value

    def set(self, key: str, operation: str, params: Any, value: Any, ttl_ms: int) -> CacheEntry:
        raise NotImplementedError

    def purge_expired(self) -> int:
        raise NotImplementedError

    def close(self) -> None:  # pragma: no cover - hook for stores with resources
        return None

    def _new_entry(self, key: str, operation: str, params: Any, value: Any, ttl_ms: int) -> CacheEntry:
        if int(ttl_ms) <= 0:
            raise ValueError("ttl_ms must be positive")
        created = self._now_ms()
        return CacheEntry(
            key=key,
            operation=str(operation),
            params_digest=_params_digest(params),
            value=value,
            created_at=created / 1000.0,
            expires_at=(created + int(ttl_ms)) / 1000.0,
        )


class MemoryCacheStore(CacheStore):
    """Process-local store; useful for tests and single-process deployments."""

    def __init__(self, maxsize: int = 10000, clock: Callable[[], float] = time.time):
        super().__init__(clock)
        self._entries: LRUCache = LRUCache(maxsize=int(maxsize))
        self._lock = threading.Lock()

    def get_entry(self, key: str) -> Optional[CacheEntry]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
        if entry is None or entry.is_expired(now):
            return None
        return replace(entry, value=copy.deepcopy(entry.value))

    def set(self, key: str, operation: str, params: Any, value: Any, ttl_ms: int) -> CacheEntry:
        # Stored values are JSON copies, detached from the caller's objects.
        try:
            frozen = json.loads(json.dumps(value))
        except (TypeError, ValueError) as exc:
            raise CacheUnavailable(f"value is not JSON serializable: {exc}") from exc
        entry = self._new_entry(key, operation, params, frozen, ttl_ms)
        with self._lock:
            self._entries[key] = entry
        return entry

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            stale = [k for k, e in self._entries.items() if e.is_expired(now)]
            for k in stale:
                self._entries.pop(k, None)
        return len(stale)


_SCHEMA = """
CREATE TABLE IF NOT EXISTS ai_cache (
    key           TEXT PRIMARY KEY,
    operation     TEXT NOT NULL,
    params_digest TEXT NOT NULL,
    params_json   TEXT NOT NULL,
    value_json    TEXT NOT NULL,
    created_at    INTEGER NOT NULL,
    expires_at    INTEGER NOT NULL
)
"""


class SQLiteCacheStore(CacheStore):
    """Persistent store in a SQLite file.

    Each operation opens its own connection, so the store can be shared across
    threads. WAL journaling lets readers proceed while a writer commits, and
    ``INSERT OR REPLACE`` makes a write atomic at the key level. ``timeout`` is
    SQLite's busy timeout; when it elapses the call raises
    :class:`~..errors.CacheUnavailable`.
    """

    def __init__(self, path: Path | str, *, timeout: float = 5.0, clock: Callable[[], float] = time.time):
        super().__init__(clock)
        self.path = Path(path)
        self.timeout = float(timeout)
        try:
            if not self.path.parent.exists():
                self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.transaction() as conn:
                conn.execute(_SCHEMA)
                conn.execute("CREATE INDEX IF NOT EXISTS ai_cache_expires_idx ON ai_cache (expires_at)")
        except OSError as exc:
            raise CacheUnavailable(f"cannot open cache at {self.path}: {exc}") from exc

    def _apply_pragmas(self, conn: sqlite3.Connection) -> None:
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, timeout=self.timeout)
        self._apply_pragmas(conn)
        return conn

    @contextlib.contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = self.connect()
        except sqlite3.Error as exc:
            raise CacheUnavailable(f"cannot connect to cache at {self.path}: {exc}") from exc
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise CacheUnavailable(f"cache operation failed: {exc}") from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def get_entry(self, key: str) -> Optional[CacheEntry]:
        now_ms = self._now_ms()
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT key, operation, params_digest, value_json, created_at, expires_at "
                "FROM ai_cache WHERE key = ?",
                (key,),
            ).fetchone()
        if row is None or int(row["expires_at"]) <= now_ms:
            return None
        try:
            value = json.loads(row["value_json"])
        except ValueError as exc:
            raise CacheUnavailable(f"corrupt cache entry for key {key}") from exc
        return CacheEntry(
            key=row["key"],
            operation=row["operation"],
            params_digest=row["params_digest"],
            value=value,
            created_at=int(row["created_at"]) / 1000.0,
            expires_at=int(row["expires_at"]) / 1000.0,
        )

    def set(self, key: str, operation: str, params: Any, value: Any, ttl_ms: int) -> CacheEntry:
        entry = self._new_entry(key, operation, params, value, ttl_ms)
        try:
            value_json = json.dumps(value, ensure_ascii=False)
            params_json = canonical_json(params)
        except (TypeError, ValueError) as exc:
            raise CacheUnavailable(f"value is not JSON serializable: {exc}") from exc
        with self.transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO ai_cache "
                "(key, operation, params_digest, params_json, value_json, created_at, expires_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    entry.key,
                    entry.operation,
                    entry.params_digest,
                    params_json,
                    value_json,
                    int(round(entry.created_at * 1000)),
                    int(round(entry.expires_at * 1000)),
                ),
            )
        return entry

    def purge_expired(self) -> int:
        with self.transaction() as conn:
            cur = conn.execute("DELETE FROM ai_cache WHERE expires_at <= ?", (self._now_ms(),))
            return int(cur.rowcount or 0)


__all__ = ["CacheStore", "MemoryCacheStore", "SQLiteCacheStore"]
