"""Stable hashing utilities for content-addressed keys."""

from __future__ import annotations

import hashlib
import json
from typing import Any


def canonical_json(payload: Any) -> str:
    """Serialize with sorted keys and fixed separators so key order never matters."""

    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def stable_hash_str(s: str, digest_size: int = 8) -> str:
    if s is None:
        s = ""
    return hashlib.blake2b(str(s).encode("utf-8"), digest_size=digest_size).hexdigest()


def make_cache_key(operation: str, params: Any) -> str:
    digest = hashlib.sha256()
    digest.update(str(operation or "").encode("utf-8"))
    digest.update(b":")
    digest.update(canonical_json(params).encode("utf-8"))
    return digest.hexdigest()


__all__ = [
    "canonical_json",
    "make_cache_key",
    "stable_hash_str",
]
