"""Load reference cases from a corpus table into :class:`CaseRecord` objects."""

from __future__ import annotations

import logging
from typing import List, Optional, Union

import numpy as np
import pandas as pd

from ..utils.io import read_table
from ..utils.jsonish import _as_str_list, _is_missing, _maybe_parse_jsonish
from ..utils.runtime import iter_with_bar
from .canonical import normalize_text
from .embeddings import EmbeddingProvider
from .models import CaseRecord

LOGGER = logging.getLogger(__name__)

# Accepted column names per field, first match wins.
COLUMN_ALIASES = {
    "case_id": ("case_id", "_id", "id"),
    "embedding": ("embedding", "vector"),
    "note": ("note", "note_text", "text"),
    "age": ("age",),
    "sex": ("sex",),
    "admission_id": ("admission_id", "hadm_id"),
    "subject_id": ("subject_id",),
    "icd_codes": ("icd_codes", "icd"),
    "icd_labels": ("icd_labels", "icd_label"),
    "vitals": ("vitals",),
    "outcomes": ("outcomes",),
    "treatments": ("treatments",),
    "diagnostics": ("diagnostics",),
    "metadata": ("metadata", "metadata_json"),
}

_JSON_FIELDS = ("vitals", "outcomes", "treatments", "diagnostics", "metadata")


def _resolve_columns(df: pd.DataFrame) -> dict:
    cols = {}
    for name, aliases in COLUMN_ALIASES.items():
        for alias in aliases:
            if alias in df.columns:
                cols[name] = alias
                break
    if "case_id" not in cols:
        raise ValueError(f"Corpus table needs one of the columns {COLUMN_ALIASES['case_id']}")
    if "embedding" not in cols and "note" not in cols:
        raise ValueError("Corpus table needs an embedding column or a note column to embed")
    return cols


def _as_vector(value) -> Optional[List[float]]:
    parsed = value if isinstance(value, (list, tuple, np.ndarray)) else _maybe_parse_jsonish(value)
    if parsed is None:
        return None
    try:
        arr = np.asarray(parsed, dtype=np.float32).ravel()
    except (TypeError, ValueError):
        return None
    return arr.tolist() if arr.size else None


def _as_int(value) -> Optional[int]:
    if _is_missing(value):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _as_opt_str(value) -> Optional[str]:
    if _is_missing(value):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    text = str(value).strip()
    return text or None


def _as_mapping(value) -> Optional[dict]:
    parsed = _maybe_parse_jsonish(value)
    return parsed if isinstance(parsed, dict) else None


def records_from_frame(df: pd.DataFrame) -> List[CaseRecord]:
    cols = _resolve_columns(df)
    records: List[CaseRecord] = []
    for row in df.to_dict(orient="records"):
        def get(name):
            col = cols.get(name)
            return row.get(col) if col else None

        note = get("note")
        records.append(
            CaseRecord(
                case_id=str(get("case_id")),
                embedding=_as_vector(get("embedding")) or [],
                note=normalize_text(note) if isinstance(note, str) else "",
                age=_as_int(get("age")),
                sex=_as_opt_str(get("sex")),
                admission_id=_as_opt_str(get("admission_id")),
                subject_id=_as_opt_str(get("subject_id")),
                icd_codes=_as_str_list(get("icd_codes")),
                icd_labels=_as_str_list(get("icd_labels")),
                **{name: _as_mapping(get(name)) for name in _JSON_FIELDS},
            )
        )
    return records


def embed_missing(
    records: List[CaseRecord],
    provider: EmbeddingProvider,
    *,
    batch_size: int = 32,
) -> int:
    """Fill in vectors for records that have a note but no embedding. Returns the count embedded."""

    pending = [r for r in records if not len(r.embedding) and r.note]
    if not pending:
        return 0
    batches = [pending[i : i + batch_size] for i in range(0, len(pending), max(1, int(batch_size)))]
    for batch in iter_with_bar("Embedding cases", batches, total=len(batches)):
        vectors = provider.embed([r.note for r in batch])
        for record, vec in zip(batch, vectors):
            record.embedding = vec
    LOGGER.info("Embedded %d case notes", len(pending), extra={"provider": provider.signature})
    return len(pending)


def load_case_records(
    source: Union[str, pd.DataFrame],
    provider: Optional[EmbeddingProvider] = None,
    *,
    batch_size: int = 32,
) -> List[CaseRecord]:
    """Read a corpus table (path or DataFrame); embed rows lacking vectors when a provider is given."""

    df = read_table(source) if isinstance(source, str) else source
    records = records_from_frame(df)
    if provider is not None:
        embed_missing(records, provider, batch_size=batch_size)
    missing = sum(1 for r in records if not len(r.embedding))
    if missing:
        LOGGER.warning("%d case(s) have no embedding and will be rejected by the index", missing)
    return records


__all__ = ["COLUMN_ALIASES", "embed_missing", "load_case_records", "records_from_frame"]
