"""Lightweight I/O helpers for corpus tables and cache artifacts."""

from __future__ import annotations

import os

import pandas as pd


def read_table(path: str) -> pd.DataFrame:
    ext = str(path).lower().split(".")[-1]
    if ext == "csv":
        return pd.read_csv(path)
    if ext == "tsv":
        return pd.read_csv(path, sep="\t")
    if ext in ("parquet", "pq"):
        return pd.read_parquet(path)
    if ext == "jsonl":
        return pd.read_json(path, lines=True)
    if ext == "json":
        return pd.read_json(path, orient="records")
    raise ValueError(f"Unsupported table extension: {path}")


def atomic_write_bytes(path: str, data: bytes):
    tmp = path + ".tmp"
    with open(tmp, "wb") as f:
        f.write(data)
    os.replace(tmp, path)


__all__ = ["atomic_write_bytes", "read_table"]
