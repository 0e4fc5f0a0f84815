"""Vector index over reference cases and nearest-neighbour search."""

from __future__ import annotations

import copy
import gzip
import hashlib
import json
import logging
import os
import time
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence

import numpy as np

from ..errors import EmptyQueryVector, IndexUnavailable, InvalidInput
from ..utils.io import atomic_write_bytes
from .models import RESULT_FIELDS, CaseRecord, SearchResult

try:
    import faiss  # type: ignore
except Exception:
    faiss = None

LOGGER = logging.getLogger(__name__)


@dataclass
class IndexConfig:
    type: str = "hnsw"    # flat | hnsw | ivf
    dim: Optional[int] = None
    nlist: int = 256      # IVF lists
    nprobe: int = 16      # IVF search probes
    hnsw_M: int = 32      # HNSW graph degree
    hnsw_efSearch: int = 64
    hnsw_efConstruction: int = 80
    persist: bool = True


def _normalize_rows(X: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(X, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return (X / norms).astype(np.float32)


def _to_similarity(cosine: np.ndarray) -> np.ndarray:
    # Same scale Atlas vector search reports for cosine indexes.
    return np.clip((1.0 + cosine) / 2.0, 0.0, 1.0)


def validate_search_params(num_candidates: int, limit: int) -> None:
    problems = []
    if int(limit) < 0:
        problems.append({"path": "limit", "message": "Must be 0 or greater."})
    if int(num_candidates) < 1:
        problems.append({"path": "numCandidates", "message": "Must be at least 1."})
    elif int(limit) > int(num_candidates):
        problems.append({"path": "limit", "message": "Cannot exceed numCandidates."})
    if problems:
        raise InvalidInput(details=problems)


def _record_meta(record: CaseRecord) -> dict:
    meta = {"case_id": str(record.case_id)}
    for name in RESULT_FIELDS:
        value = getattr(record, name, None)
        if name in ("icd_codes", "icd_labels"):
            value = [str(v) for v in (value or [])]
        meta[name] = value
    return meta


class CaseIndex:
    """FAISS index of case vectors plus the metadata returned with each hit.

    Vectors are L2-normalised on ingestion so inner product equals cosine.
    ``search`` asks FAISS for a candidate pool of ``num_candidates`` neighbours,
    re-scores the pool exactly against the stored vectors and keeps the best
    ``limit``. Returned results are built from an explicit field list and never
    include the stored vector.
    """

    def __init__(self, cfg: Optional[IndexConfig] = None):
        self.cfg = cfg or IndexConfig()
        self.dim: Optional[int] = int(self.cfg.dim) if self.cfg.dim else None
        self.faiss_index = None
        self.X: Optional[np.ndarray] = None
        self.case_meta: List[dict] = []
        self._id_to_row: Dict[str, int] = {}
        self.rejected_ids: List[str] = []
        self.fingerprint: Optional[str] = None

    def __len__(self) -> int:
        return len(self.case_meta)

    @property
    def is_ready(self) -> bool:
        return self.faiss_index is not None and self.X is not None and self.dim is not None

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def build(self, records: Iterable[CaseRecord]) -> "CaseIndex":
        """Ingest records, rejecting any whose vector has the wrong dimension."""

        if faiss is None:
            raise ImportError("faiss-cpu is required")
        vectors: List[np.ndarray] = []
        metas: List[dict] = []
        rejected: List[str] = []
        seen: set[str] = set()
        dim = self.dim
        for record in records:
            vec = np.asarray(record.embedding if record.embedding is not None else [], dtype=np.float32).ravel()
            if dim is None and vec.size:
                dim = int(vec.size)
            if vec.size == 0 or vec.size != dim:
                rejected.append(str(record.case_id))
                continue
            if str(record.case_id) in seen:
                LOGGER.warning("Duplicate case id %s; keeping the first occurrence", record.case_id)
                continue
            seen.add(str(record.case_id))
            vectors.append(vec)
            metas.append(_record_meta(record))

        if rejected:
            LOGGER.warning(
                "Rejected %d case(s) whose embedding does not match dimension %s",
                len(rejected),
                dim,
                extra={"rejected_ids": rejected[:20]},
            )
        self.rejected_ids = rejected
        if dim is None:
            raise InvalidInput("Cannot build an index without at least one case vector.")

        self.dim = int(dim)
        X = np.vstack(vectors) if vectors else np.zeros((0, self.dim), dtype=np.float32)
        self._bind(metas, _normalize_rows(X))
        self.faiss_index = self._build_faiss_index(self.X)
        self.fingerprint = self._compute_fingerprint()
        return self

    def _bind(self, metas: List[dict], X: np.ndarray) -> None:
        self.case_meta = metas
        self.X = X.astype(np.float32) if X.dtype != np.float32 else X
        self._id_to_row = {str(m["case_id"]): i for i, m in enumerate(metas)}

    def _build_faiss_index(self, X: np.ndarray):
        d = int(X.shape[1])
        n = int(X.shape[0])
        kind = (self.cfg.type or "flat").lower()
        if kind == "flat" or n == 0:
            idx = faiss.IndexFlatIP(d)
            idx.add(X)
            return idx
        if kind == "hnsw":
            idx = faiss.IndexHNSWFlat(d, int(self.cfg.hnsw_M), faiss.METRIC_INNER_PRODUCT)
            idx.hnsw.efConstruction = int(self.cfg.hnsw_efConstruction)
            idx.hnsw.efSearch = int(self.cfg.hnsw_efSearch)
            idx.add(X)
            return idx
        if kind == "ivf":
            nlist = max(1, min(int(self.cfg.nlist), n))
            quant = faiss.IndexFlatIP(d)
            idx = faiss.IndexIVFFlat(quant, d, nlist, faiss.METRIC_INNER_PRODUCT)
            idx.train(X)
            idx.add(X)
            idx.nprobe = min(int(self.cfg.nprobe), nlist)
            return idx
        raise ValueError(f"Unknown index type: {self.cfg.type}")

    def _compute_fingerprint(self) -> str:
        h = hashlib.blake2b(digest_size=16)
        h.update(f"type={self.cfg.type},dim={self.dim}".encode("utf-8"))
        for meta in self.case_meta:
            h.update(f"|{meta['case_id']}".encode("utf-8"))
        if self.X is not None and self.X.size:
            h.update(np.ascontiguousarray(self.X).tobytes())
        return h.hexdigest()

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search(self, query_vector: Sequence[float], num_candidates: int = 150, limit: int = 10) -> List[SearchResult]:
        if query_vector is None or len(query_vector) == 0:
            raise EmptyQueryVector("Query embedding cannot be empty for vector search.")
        validate_search_params(num_candidates, limit)
        if not self.is_ready:
            raise IndexUnavailable("Case index has not been built or loaded.")

        q = np.asarray(query_vector, dtype=np.float32).ravel()
        if q.size != self.dim:
            raise IndexUnavailable(f"Query dimension {q.size} does not match index dimension {self.dim}.")
        if int(limit) == 0 or len(self.case_meta) == 0:
            return []

        norm = float(np.linalg.norm(q))
        if norm > 0:
            q = q / norm
        k = min(int(num_candidates), len(self.case_meta))
        self._apply_search_params(k)
        try:
            _, idxs = self.faiss_index.search(q.reshape(1, -1), k)
        except Exception as exc:  # noqa: BLE001 - surface as an index failure
            raise IndexUnavailable(f"Vector search failed: {exc}") from exc

        candidates = [int(i) for i in idxs[0] if int(i) >= 0]
        if not candidates:
            return []
        cosine = self.X[candidates] @ q
        scores = _to_similarity(cosine)
        # Stable descending rank: ties keep the candidate order FAISS returned.
        order = sorted(range(len(candidates)), key=lambda j: -float(scores[j]))
        results: List[SearchResult] = []
        for j in order[: int(limit)]:
            meta = self.case_meta[candidates[j]]
            results.append(SearchResult.from_meta(meta, float(scores[j])))
        return results

    def _apply_search_params(self, k: int) -> None:
        try:
            if hasattr(self.faiss_index, "hnsw"):
                self.faiss_index.hnsw.efSearch = max(int(self.cfg.hnsw_efSearch), int(k))
            if hasattr(self.faiss_index, "nprobe"):
                self.faiss_index.nprobe = max(1, min(int(self.cfg.nprobe), int(getattr(self.faiss_index, "nlist", 1))))
        except Exception:  # noqa: BLE001 - search params are best-effort tuning
            LOGGER.debug("Could not apply search parameters", exc_info=True)

    def get_case(self, case_id: str) -> Optional[dict]:
        row = self._id_to_row.get(str(case_id))
        if row is None:
            return None
        return copy.deepcopy(self.case_meta[row])

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _paths(self, index_dir: str) -> dict:
        return {
            "manifest": os.path.join(index_dir, "manifest.json"),
            "meta": os.path.join(index_dir, "case_meta.json.gz"),
            "emb": os.path.join(index_dir, "case_embeddings.npz"),
            "faiss": os.path.join(index_dir, f"faiss_{(self.cfg.type or 'flat').lower()}.index"),
        }

    def save(self, index_dir: str) -> None:
        if not self.is_ready:
            raise IndexUnavailable("Nothing to save; build the index first.")
        os.makedirs(index_dir, exist_ok=True)
        paths = self._paths(index_dir)

        tmp = paths["meta"] + ".tmp"
        with gzip.open(tmp, "wt", encoding="utf-8", compresslevel=5) as f:
            json.dump(self.case_meta, f, ensure_ascii=False)
        os.replace(tmp, paths["meta"])

        emb_tmp = paths["emb"] + ".tmp.npz"
        np.savez_compressed(emb_tmp, embeddings=self.X)
        os.replace(emb_tmp, paths["emb"])

        if self.cfg.persist:
            try:
                faiss.write_index(self.faiss_index, paths["faiss"])
            except Exception:  # noqa: BLE001 - index is rebuilt from vectors on load
                LOGGER.warning("Failed to persist FAISS index to %s", paths["faiss"], exc_info=True)

        manifest = {
            "n_cases": len(self.case_meta),
            "dim": int(self.dim),
            "index_type": self.cfg.type,
            "fingerprint": self.fingerprint,
            "rejected": len(self.rejected_ids),
            "version": "v1",
            "saved_at": time.time(),
        }
        atomic_write_bytes(paths["manifest"], json.dumps(manifest, ensure_ascii=False, indent=2).encode("utf-8"))

    @classmethod
    def load(cls, index_dir: str, cfg: Optional[IndexConfig] = None) -> "CaseIndex":
        if faiss is None:
            raise ImportError("faiss-cpu is required")
        store = cls(cfg)
        paths = store._paths(index_dir)
        try:
            with open(paths["manifest"], "r", encoding="utf-8") as f:
                manifest = json.load(f)
            with gzip.open(paths["meta"], "rt", encoding="utf-8") as f:
                meta = json.load(f)
            with np.load(paths["emb"]) as data:
                X = np.asarray(data["embeddings"], dtype=np.float32)
        except (OSError, ValueError, KeyError) as exc:
            raise IndexUnavailable(f"Cannot load case index from {index_dir}: {exc}") from exc

        n = int(manifest.get("n_cases", -1))
        d = int(manifest.get("dim", -1))
        if n != len(meta) or (X.size and d != int(X.shape[1])) or X.shape[0] != len(meta):
            raise IndexUnavailable(f"Case index at {index_dir} is inconsistent with its manifest.")
        if store.dim is not None and store.dim != d:
            raise IndexUnavailable(f"Case index at {index_dir} has dimension {d}, expected {store.dim}.")

        store.dim = d
        store._bind(meta, X.reshape(len(meta), d))
        idx = None
        if store.cfg.persist and os.path.exists(paths["faiss"]):
            try:
                idx = faiss.read_index(paths["faiss"])
                if getattr(idx, "ntotal", None) != len(meta):
                    idx = None
            except Exception:  # noqa: BLE001 - fall back to rebuilding
                idx = None
        store.faiss_index = idx if idx is not None else store._build_faiss_index(store.X)
        store.fingerprint = manifest.get("fingerprint") or store._compute_fingerprint()
        return store


__all__ = ["CaseIndex", "IndexConfig", "validate_search_params"]
