"""Build the single embedding text for a query."""

from __future__ import annotations

import re
from typing import List

from ..errors import InvalidInput
from .models import Query

_WS = re.compile(r"\s+")


def normalize_text(s: str) -> str:
    if not isinstance(s, str):
        return ""
    return _WS.sub(" ", s).strip()


def _fmt_number(value) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def structured_tokens(query: Query) -> List[str]:
    """Compact ``Key:Value`` tokens for the present structured fields, in fixed order."""

    parts: List[str] = []
    if query.age:
        parts.append(f"A:{_fmt_number(query.age)}")
    if query.sex:
        parts.append(f"S:{query.sex.strip()[:1]}")

    vitals = query.vitals
    if vitals is not None:
        summary: List[str] = []
        if vitals.temp is not None:
            summary.append(f"T:{_fmt_number(vitals.temp)}")
        if vitals.bp:
            summary.append(f"BP:{vitals.bp}")
        if vitals.hr is not None:
            summary.append(f"HR:{_fmt_number(vitals.hr)}")
        if vitals.spo2 is not None:
            summary.append(f"O2:{_fmt_number(vitals.spo2)}")
        if vitals.rr is not None:
            summary.append(f"RR:{_fmt_number(vitals.rr)}")
        if summary:
            parts.append(f"Vitals[{','.join(summary)}]")
    return parts


def canonicalize(query: Query) -> str:
    query.validate()
    parts = structured_tokens(query)
    combined = f"{query.note_text} ({' '.join(parts)})" if parts else query.note_text
    text = normalize_text(combined)
    if not text:
        raise InvalidInput(details=[{"path": "note", "message": "Note cannot be empty."}])
    return text


__all__ = ["canonicalize", "normalize_text", "structured_tokens"]
