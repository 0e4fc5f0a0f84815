"""Transport-agnostic request handlers.

Each handler takes already-decoded input and returns ``(status, body)`` where
``body`` is JSON-serialisable, so any web framework can mount them.
"""

from __future__ import annotations

import logging
from typing import Any, Tuple

from .core.models import SimilarCasesRequest
from .errors import InvalidInput, SimilarCasesError, status_for
from .services.retrieval import SimilarCaseRetriever

LOGGER = logging.getLogger(__name__)

GENERIC_ERROR_MESSAGE = "An unexpected error occurred while processing your request."
POST_ONLY_MESSAGE = (
    "This endpoint expects a POST request with case data to find similar cases. "
    "Please refer to API documentation."
)

Response = Tuple[int, Any]


def _error_body(exc: SimilarCasesError) -> dict:
    body: dict = {"message": exc.public_message}
    if isinstance(exc, InvalidInput):
        body["errors"] = list(exc.details)
    return body


def handle_similar_cases(retriever: SimilarCaseRetriever, payload: Any) -> Response:
    """POST body in, ranked result list out."""

    try:
        request = SimilarCasesRequest.from_payload(payload)
        results = retriever.find_similar_cases(request.query, request.filters)
    except SimilarCasesError as exc:
        if not isinstance(exc, InvalidInput):
            LOGGER.error("Similar-case request failed: %s", exc, extra={"status": status_for(exc)})
        return status_for(exc), _error_body(exc)
    except Exception:  # noqa: BLE001 - last-resort boundary
        LOGGER.exception("Unhandled error in similar-case request")
        return 500, {"message": GENERIC_ERROR_MESSAGE}
    return 200, [r.to_dict() for r in results]


def handle_case_details(retriever: SimilarCaseRetriever, case_id: Any) -> Response:
    if not isinstance(case_id, str) or not case_id.strip():
        return 400, {"message": "Case ID is required."}
    try:
        case = retriever.get_case_details(case_id)
    except SimilarCasesError as exc:
        return status_for(exc), _error_body(exc)
    except Exception:  # noqa: BLE001 - last-resort boundary
        LOGGER.exception("Unhandled error fetching case %s", case_id)
        return 500, {"message": "Failed to fetch case details"}
    if case is None:
        return 404, {"message": "Case not found"}
    return 200, case


def handle_method_not_allowed() -> Response:
    return 405, {"message": POST_ONLY_MESSAGE}


__all__ = ["handle_case_details", "handle_method_not_allowed", "handle_similar_cases"]
