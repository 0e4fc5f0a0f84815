"""Data model for similar-case retrieval and boundary validation of request payloads."""

from __future__ import annotations

import copy
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from ..errors import InvalidInput

SORT_FIELDS = ("similarity", "age")
SORT_ORDERS = ("asc", "desc")


def _pick(payload: Mapping[str, Any], *names: str) -> Any:
    for name in names:
        if name in payload and payload[name] is not None:
            return payload[name]
    return None


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return not (isinstance(value, float) and math.isnan(value))


def _positive_int(value: Any, path: str, problems: List[dict]) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, bool) or not isinstance(value, int):
        problems.append({"path": path, "message": "Expected an integer."})
        return None
    if value <= 0:
        problems.append({"path": path, "message": "Must be greater than 0."})
        return None
    return value


def _positive_number(value: Any, path: str, problems: List[dict]) -> Optional[float]:
    if value is None:
        return None
    if not _is_number(value):
        problems.append({"path": path, "message": "Expected a number."})
        return None
    if value <= 0:
        problems.append({"path": path, "message": "Must be greater than 0."})
        return None
    return value


def _optional_number(value: Any, path: str, problems: List[dict]) -> Optional[float]:
    if value is None:
        return None
    if not _is_number(value):
        problems.append({"path": path, "message": "Expected a number."})
        return None
    return value


def _optional_str(value: Any, path: str, problems: List[dict]) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        problems.append({"path": path, "message": "Expected a string."})
        return None
    value = value.strip()
    return value or None


@dataclass(frozen=True)
class Vitals:
    bp: Optional[str] = None
    hr: Optional[int] = None
    rr: Optional[int] = None
    spo2: Optional[int] = None
    temp: Optional[float] = None

    def is_empty(self) -> bool:
        return all(v is None for v in (self.bp, self.hr, self.rr, self.spo2, self.temp))

    def to_dict(self) -> Dict[str, Any]:
        out = {"bp": self.bp, "hr": self.hr, "rr": self.rr, "spo2": self.spo2, "temp": self.temp}
        return {k: v for k, v in out.items() if v is not None}

    @classmethod
    def from_payload(cls, payload: Any, problems: List[dict], path: str = "vitals") -> Optional["Vitals"]:
        if payload is None:
            return None
        if not isinstance(payload, Mapping):
            problems.append({"path": path, "message": "Expected an object."})
            return None
        vitals = cls(
            bp=_optional_str(payload.get("bp"), f"{path}.bp", problems),
            hr=_positive_int(payload.get("hr"), f"{path}.hr", problems),
            rr=_positive_int(payload.get("rr"), f"{path}.rr", problems),
            spo2=_positive_int(payload.get("spo2"), f"{path}.spo2", problems),
            temp=_positive_number(payload.get("temp"), f"{path}.temp", problems),
        )
        return None if vitals.is_empty() else vitals


@dataclass(frozen=True)
class Query:
    """Free-text clinical note plus optional structured attributes."""

    note_text: str
    age: Optional[int] = None
    sex: Optional[str] = None
    vitals: Optional[Vitals] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"note": self.note_text}
        if self.age is not None:
            out["age"] = self.age
        if self.sex is not None:
            out["sex"] = self.sex
        if self.vitals is not None and not self.vitals.is_empty():
            out["vitals"] = self.vitals.to_dict()
        return out

    def validate(self) -> None:
        if not isinstance(self.note_text, str) or not self.note_text.strip():
            raise InvalidInput(details=[{"path": "note", "message": "Note cannot be empty."}])

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Query":
        problems: List[dict] = []
        query = cls._parse(payload, problems)
        if problems or query is None:
            raise InvalidInput(details=problems)
        return query

    @classmethod
    def _parse(cls, payload: Any, problems: List[dict]) -> Optional["Query"]:
        if not isinstance(payload, Mapping):
            problems.append({"path": "", "message": "Expected a JSON object."})
            return None
        note = _pick(payload, "note", "noteText", "note_text")
        if not isinstance(note, str) or not note.strip():
            problems.append({"path": "note", "message": "Note cannot be empty."})
            note = None
        age = _positive_int(payload.get("age"), "age", problems)
        sex = _optional_str(payload.get("sex"), "sex", problems)
        vitals = Vitals.from_payload(payload.get("vitals"), problems)
        if note is None:
            return None
        return cls(note_text=note, age=age, sex=sex, vitals=vitals)


@dataclass(frozen=True)
class FilterSortParams:
    min_age: Optional[float] = None
    max_age: Optional[float] = None
    sex: Optional[str] = None
    icd_codes: Optional[tuple] = None
    min_confidence: Optional[float] = None
    sort_by: str = "similarity"
    sort_order: str = "desc"

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"sortBy": self.sort_by, "sortOrder": self.sort_order}
        if self.min_age is not None:
            out["minAge"] = self.min_age
        if self.max_age is not None:
            out["maxAge"] = self.max_age
        if self.sex is not None:
            out["sex"] = self.sex
        if self.icd_codes:
            out["icdCodes"] = list(self.icd_codes)
        if self.min_confidence is not None:
            out["minConfidence"] = self.min_confidence
        return out

    @classmethod
    def from_payload(cls, payload: Optional[Mapping[str, Any]]) -> "FilterSortParams":
        problems: List[dict] = []
        params = cls._parse(payload or {}, problems)
        if problems:
            raise InvalidInput(details=problems)
        return params

    @classmethod
    def _parse(
        cls,
        payload: Mapping[str, Any],
        problems: List[dict],
        origins: Optional[Mapping[str, str]] = None,
    ) -> "FilterSortParams":
        origins = origins or {}

        def where(*names: str) -> str:
            # Report the key the caller actually sent, e.g. ``filters.minAge`` or ``sexFilter``.
            for name in names:
                if name in payload and name in origins:
                    return origins[name]
            return names[0]

        min_age = _optional_number(_pick(payload, "minAge", "min_age"), where("minAge", "min_age"), problems)
        max_age = _optional_number(_pick(payload, "maxAge", "max_age"), where("maxAge", "max_age"), problems)
        if min_age is not None and max_age is not None and min_age > max_age:
            problems.append({"path": where("minAge", "min_age"), "message": "minAge cannot exceed maxAge."})
        sex = _optional_str(payload.get("sex"), where("sex"), problems)

        raw_codes = _pick(payload, "icdCodes", "icd_codes")
        icd_codes = None
        if raw_codes is not None:
            if isinstance(raw_codes, str) or not isinstance(raw_codes, Sequence):
                problems.append({"path": where("icdCodes", "icd_codes"), "message": "Expected a list of strings."})
            elif not all(isinstance(c, str) for c in raw_codes):
                problems.append({"path": where("icdCodes", "icd_codes"), "message": "Expected a list of strings."})
            else:
                cleaned = tuple(c.strip() for c in raw_codes if c.strip())
                icd_codes = cleaned or None

        min_confidence = _optional_number(
            _pick(payload, "minConfidence", "min_confidence"), where("minConfidence", "min_confidence"), problems
        )

        sort_by = _pick(payload, "sortBy", "sort_by") or "similarity"
        if sort_by not in SORT_FIELDS:
            problems.append({"path": where("sortBy", "sort_by"), "message": f"Expected one of {list(SORT_FIELDS)}."})
            sort_by = "similarity"
        sort_order = _pick(payload, "sortOrder", "sort_order") or "desc"
        if sort_order not in SORT_ORDERS:
            problems.append({"path": where("sortOrder", "sort_order"), "message": f"Expected one of {list(SORT_ORDERS)}."})
            sort_order = "desc"

        return cls(
            min_age=min_age,
            max_age=max_age,
            sex=sex,
            icd_codes=icd_codes,
            min_confidence=min_confidence,
            sort_by=sort_by,
            sort_order=sort_order,
        )


@dataclass(frozen=True)
class SimilarCasesRequest:
    query: Query
    filters: FilterSortParams = field(default_factory=FilterSortParams)

    @classmethod
    def from_payload(cls, payload: Any) -> "SimilarCasesRequest":
        """
        Parse one request body into a query and its filters.

        Top-level ``sex`` describes the patient being queried. The sex *filter*
        comes from ``filters.sex`` or the top-level ``sexFilter`` key; other
        filter keys may sit at the top level or inside ``filters``.
        """

        problems: List[dict] = []
        query = Query._parse(payload, problems)
        filters = FilterSortParams()
        if isinstance(payload, Mapping):
            nested = payload.get("filters")
            if nested is not None and not isinstance(nested, Mapping):
                problems.append({"path": "filters", "message": "Expected an object."})
                nested = None
            merged: Dict[str, Any] = {
                k: v
                for k, v in payload.items()
                if k not in {"note", "noteText", "note_text", "age", "sex", "vitals", "filters"}
            }
            origins = {k: k for k in merged}
            if "sexFilter" in merged:
                merged["sex"] = merged.pop("sexFilter")
                origins["sex"] = origins.pop("sexFilter")
            for k, v in dict(nested or {}).items():
                merged[k] = v
                origins[k] = f"filters.{k}"
            filters = FilterSortParams._parse(merged, problems, origins)
        if problems or query is None:
            raise InvalidInput(details=problems)
        return cls(query=query, filters=filters)


@dataclass
class CaseRecord:
    """A reference case in the corpus; read-only to the retrieval subsystem."""

    case_id: str
    embedding: Sequence[float]
    note: str = ""
    age: Optional[int] = None
    sex: Optional[str] = None
    admission_id: Optional[str] = None
    subject_id: Optional[str] = None
    icd_codes: List[str] = field(default_factory=list)
    icd_labels: List[str] = field(default_factory=list)
    vitals: Optional[Dict[str, Any]] = None
    outcomes: Optional[Dict[str, Any]] = None
    treatments: Optional[Dict[str, Any]] = None
    diagnostics: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None


# Fields copied from a CaseRecord into results; ``embedding`` is never one of them.
RESULT_FIELDS = (
    "age",
    "sex",
    "admission_id",
    "subject_id",
    "icd_codes",
    "icd_labels",
    "note",
    "vitals",
    "outcomes",
    "treatments",
    "diagnostics",
    "metadata",
)


@dataclass(frozen=True)
class SearchResult:
    case_id: str
    similarity: float
    age: Optional[int] = None
    sex: Optional[str] = None
    admission_id: Optional[str] = None
    subject_id: Optional[str] = None
    icd_codes: tuple = ()
    icd_labels: tuple = ()
    note: str = ""
    vitals: Optional[Dict[str, Any]] = None
    outcomes: Optional[Dict[str, Any]] = None
    treatments: Optional[Dict[str, Any]] = None
    diagnostics: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None

    @classmethod
    def from_meta(cls, meta: Mapping[str, Any], similarity: float) -> "SearchResult":
        fields_ = {name: meta.get(name) for name in RESULT_FIELDS}
        fields_["icd_codes"] = tuple(fields_.get("icd_codes") or ())
        fields_["icd_labels"] = tuple(fields_.get("icd_labels") or ())
        fields_["note"] = fields_.get("note") or ""
        for name in ("vitals", "outcomes", "treatments", "diagnostics", "metadata"):
            fields_[name] = copy.deepcopy(fields_[name])
        return cls(case_id=str(meta["case_id"]), similarity=float(similarity), **fields_)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"case_id": self.case_id, "similarity": self.similarity}
        for name in RESULT_FIELDS:
            value = getattr(self, name)
            if name in ("icd_codes", "icd_labels"):
                value = list(value)
            if value is None:
                continue
            out[name] = value
        return out

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SearchResult":
        return cls.from_meta(data, float(data.get("similarity", 0.0)))


@dataclass(frozen=True)
class CacheEntry:
    key: str
    operation: str
    params_digest: str
    value: Any
    created_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


__all__ = [
    "CacheEntry",
    "CaseRecord",
    "FilterSortParams",
    "Query",
    "RESULT_FIELDS",
    "SearchResult",
    "SimilarCasesRequest",
    "Vitals",
]
