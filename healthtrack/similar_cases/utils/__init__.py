"""Utility helpers shared across the retrieval subsystem."""

from .hashing import canonical_json, make_cache_key, stable_hash_str
from .io import atomic_write_bytes, read_table
from .runtime import JsonFormatter, iter_with_bar, setup_logging

__all__ = [
    "JsonFormatter",
    "atomic_write_bytes",
    "canonical_json",
    "iter_with_bar",
    "make_cache_key",
    "read_table",
    "setup_logging",
    "stable_hash_str",
]
