"""Filter and order search results."""

from __future__ import annotations

from typing import Iterable, List, Optional

from ..core.models import FilterSortParams, SearchResult


def _norm(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def _keep(result: SearchResult, params: FilterSortParams, wanted_codes: Optional[set]) -> bool:
    if params.min_age is not None or params.max_age is not None:
        if result.age is None:
            return False
        if params.min_age is not None and result.age < params.min_age:
            return False
        if params.max_age is not None and result.age > params.max_age:
            return False
    if params.sex and _norm(result.sex) != _norm(params.sex):
        return False
    if wanted_codes and not any(_norm(code) in wanted_codes for code in result.icd_codes):
        return False
    if params.min_confidence is not None and result.similarity < params.min_confidence:
        return False
    return True


def apply_filters(results: Iterable[SearchResult], params: Optional[FilterSortParams] = None) -> List[SearchResult]:
    """
    Keep results satisfying every given filter, then sort them.

    Age bounds are inclusive and a result without an age fails any age bound.
    Sex and ICD matching ignore case and surrounding whitespace; ICD is any-of.
    Sorting is stable, and results without an age sort after those with one
    regardless of direction.
    """

    params = params or FilterSortParams()
    wanted_codes = {_norm(c) for c in params.icd_codes or () if _norm(c)} or None
    kept = [r for r in results if _keep(r, params, wanted_codes)]
    if not kept:
        return []

    descending = params.sort_order == "desc"
    if params.sort_by == "age":
        with_age = [r for r in kept if r.age is not None]
        without_age = [r for r in kept if r.age is None]
        with_age.sort(key=lambda r: r.age, reverse=descending)
        return with_age + without_age
    # sorted() with reverse=True keeps equal elements in their original order.
    return sorted(kept, key=lambda r: r.similarity, reverse=descending)


__all__ = ["apply_filters"]
