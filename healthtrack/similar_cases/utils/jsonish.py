"""Helpers for tolerant parsing of JSON-ish corpus columns."""

from __future__ import annotations

import json
import math


def _is_missing(value) -> bool:
    return value is None or (isinstance(value, float) and math.isnan(value))


def _maybe_parse_jsonish(value):
    """Best-effort JSON (or literal) parser that tolerates legacy metadata strings."""

    if _is_missing(value):
        return None
    if isinstance(value, (dict, list)):
        return value
    if isinstance(value, str):
        txt = value.strip()
        if not txt:
            return None
        try:
            return json.loads(txt)
        except Exception:  # noqa: BLE001
            try:
                import ast

                return ast.literal_eval(txt)
            except Exception:  # noqa: BLE001
                return None
    tolist = getattr(value, "tolist", None)
    if callable(tolist):
        return tolist()
    return None


def _as_str_list(value) -> list[str]:
    """Coerce a list-ish column value (list, JSON string, scalar) to a list of strings."""

    parsed = _maybe_parse_jsonish(value) if not isinstance(value, (list, tuple)) else list(value)
    if parsed is None:
        if isinstance(value, str) and value.strip():
            return [value.strip()]
        return []
    if isinstance(parsed, (list, tuple)):
        return [str(v).strip() for v in parsed if not _is_missing(v) and str(v).strip()]
    return [str(parsed).strip()]


__all__ = ["_as_str_list", "_is_missing", "_maybe_parse_jsonish"]
