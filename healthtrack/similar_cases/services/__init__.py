"""Service layer composed from core primitives."""

from .postprocess import apply_filters
from .retrieval import RetrievalOutcome, SimilarCaseRetriever

__all__ = ["RetrievalOutcome", "SimilarCaseRetriever", "apply_filters"]
